"""Immunization -> drug_exposure."""

import logging

from fhir_to_omop.domain.constants import (
    CONCEPT_EHR,
    FHIR_RESOURCE_ACCEPTABLE_EVENT_STATUS_LIST,
    FHIR_RESOURCE_IMMUNIZATION,
    VOCABULARY_ATC,
    VOCABULARY_SNOMED,
)
from fhir_to_omop.domain.mappers import fhir
from fhir_to_omop.domain.mappers.base import SkipResource
from fhir_to_omop.domain.mappers.medication import DrugExposureMapper
from fhir_to_omop.domain.models import DrugExposure, OmopRecord
from fhir_to_omop.domain.ports import SKIP_INVALID_RESOURCE, SKIP_NO_VALID_CONCEPT

logger = logging.getLogger(__name__)


class ImmunizationMapper(DrugExposureMapper):
    """Maps a vaccination to drug_exposure rows.

    ATC vaccine codes use the ATC to standard lookup, SNOMED vaccine codes the
    vaccine to standard lookup; ATC wins when both are present.
    """

    resource_type = FHIR_RESOURCE_IMMUNIZATION
    drug_type_concept_id = CONCEPT_EHR

    def transform(self, data, logical_id, identifier) -> list[OmopRecord]:
        resource_id = self.resource_label(logical_id, identifier)

        status = data.get("status")
        if not status or status not in FHIR_RESOURCE_ACCEPTABLE_EVENT_STATUS_LIST:
            logger.error(
                f"The [status]: {status} of {resource_id} is not acceptable for writing into OMOP CDM. "
                f"Skip resource."
            )
            raise SkipResource(f"Status {status} is not acceptable", SKIP_INVALID_RESOURCE)

        person_id = self.person_id(data, resource_id)
        start = fhir.parse_datetime(data.get("occurrenceDateTime"))
        start = self.require(start, "Date", resource_id)

        registry = self.context.registry
        coding = fhir.first_coding(data.get("vaccineCode"), registry.urls_for(VOCABULARY_ATC))
        if coding is None:
            coding = fhir.first_coding(data.get("vaccineCode"), registry.urls_for(VOCABULARY_SNOMED))
        if coding is None:
            logger.error(f"No [vaccine code] found for [Immunization]: {resource_id}. Skip resource.")
            raise SkipResource("No vaccine code found")

        visit_occurrence_id = self.visit_occurrence_id(data, resource_id)
        route_code, route_concept_id = self.route(data, resource_id)
        dose = data.get("doseQuantity")

        records: list[OmopRecord] = []
        for concept_id, source_concept_id in self.vaccine_concepts(coding, start, resource_id):
            records.append(
                DrugExposure(
                    person_id=person_id,
                    visit_occurrence_id=visit_occurrence_id,
                    drug_concept_id=concept_id,
                    drug_source_concept_id=source_concept_id,
                    drug_source_value=coding.get("code"),
                    drug_exposure_start_date=start.date(),
                    drug_exposure_start_datetime=start,
                    drug_exposure_end_date=start.date(),
                    drug_type_concept_id=self.drug_type_concept_id,
                    quantity=fhir.quantity_value(dose),
                    dose_unit_source_value=(dose or {}).get("unit"),
                    route_concept_id=route_concept_id,
                    route_source_value=route_code,
                    fhir_logical_id=logical_id,
                    fhir_identifier=identifier,
                )
            )
        return records

    def vaccine_concepts(self, coding, start, resource_id) -> list[tuple[int, int]]:
        if self.context.registry.is_system(coding.get("system"), VOCABULARY_ATC):
            return self.drug_concepts(coding, start, resource_id)

        rows = self.concepts.resolve_vaccine_to_standard(
            coding.get("system"), coding.get("code"), coding.get("version"), start.date(), resource_id
        )
        if not rows:
            raise SkipResource(f"Vaccine code {coding.get('code')} is not valid", SKIP_NO_VALID_CONCEPT)
        return [(row.target_concept_id, row.source_concept_id) for row in rows]
