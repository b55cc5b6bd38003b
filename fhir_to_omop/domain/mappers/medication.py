"""Medication, MedicationAdministration and MedicationStatement mappers.

Medication resources only feed medication_id_map (the link from a Medication to its
ATC code). Administrations and statements become drug_exposure rows; their drug code
comes from the inline medicationCodeableConcept or, failing that, from the
referenced Medication.
"""

import logging
from datetime import datetime
from typing import Optional

from fhir_to_omop.domain.constants import (
    CONCEPT_EHR_ADMINISTRATION_RECORD,
    CONCEPT_EHR_MEDICATION_LIST,
    CONCEPT_NO_MATCHING_CONCEPT,
    FHIR_RESOURCE_MEDICATION,
    FHIR_RESOURCE_MEDICATION_ACCEPTABLE_STATUS_LIST,
    FHIR_RESOURCE_MEDICATION_ADMINISTRATION,
    FHIR_RESOURCE_MEDICATION_STATEMENT,
    FHIR_RESOURCE_MEDICATION_STATEMENT_ACCEPTABLE_STATUS_LIST,
    NO_MEDICATION_CODE_SYSTEM,
    OMOP_DOMAIN_DRUG,
    SOURCE_VOCABULARY_ROUTE,
    VOCABULARY_ATC,
)
from fhir_to_omop.domain.mappers import fhir
from fhir_to_omop.domain.mappers.base import ResourceMapper, SkipResource
from fhir_to_omop.domain.models import DrugExposure, IdentityKind, MappingKind, MedicationIdMap, OmopRecord
from fhir_to_omop.domain.ports import SKIP_NO_VALID_CONCEPT

logger = logging.getLogger(__name__)


class MedicationMapper(ResourceMapper):
    """Maps a Medication to its medication_id_map row."""

    resource_type = FHIR_RESOURCE_MEDICATION
    tables = ("medication_id_map",)

    def transform(self, data, logical_id, identifier) -> list[OmopRecord]:
        resource_id = self.resource_label(logical_id, identifier)
        self.check_status(data.get("status"), FHIR_RESOURCE_MEDICATION_ACCEPTABLE_STATUS_LIST, resource_id)

        atc_coding = fhir.first_coding(data.get("code"), self.context.registry.urls_for(VOCABULARY_ATC))
        atc_code = self.require(atc_coding.get("code") if atc_coding else None, "ATC", resource_id)

        if self.context.bulk:
            fhir_omop_id = self.context.id_mappings.medications.get_or_create(f"{identifier}:{logical_id}")
        else:
            fhir_omop_id = self.references.find_existing_id(IdentityKind.MEDICATION, identifier, logical_id)

        return [
            MedicationIdMap(
                fhir_omop_id=fhir_omop_id,
                type=FHIR_RESOURCE_MEDICATION,
                atc=atc_code,
                fhir_logical_id=logical_id,
                fhir_identifier=identifier,
            )
        ]


class DrugExposureMapper(ResourceMapper):
    """Shared drug_exposure logic of administrations and statements."""

    tables = ("drug_exposure",)
    drug_type_concept_id: int = CONCEPT_NO_MATCHING_CONCEPT

    def transform(self, data, logical_id, identifier) -> list[OmopRecord]:
        resource_id = self.resource_label(logical_id, identifier)
        self.check_drug_status(data, resource_id)
        person_id = self.person_id(data, resource_id)

        start = fhir.effective_datetime(data, "effective")
        if start is None:
            logger.warning(f"Unable to determine the [datetime] for {resource_id}. Skip resource")
            raise SkipResource("No start date found")
        end = fhir.period_end(data, "effectivePeriod")

        coding = self.medication_coding(data, resource_id)
        visit_occurrence_id = self.visit_occurrence_id(data, resource_id, element="context")
        dosage = self.dosage(data)
        quantity = dosage.get("dose") if dosage else None
        route_code, route_concept_id = self.route(dosage, resource_id)

        records: list[OmopRecord] = []
        for concept_id, source_concept_id in self.drug_concepts(coding, start, resource_id):
            records.append(
                DrugExposure(
                    person_id=person_id,
                    visit_occurrence_id=visit_occurrence_id,
                    drug_concept_id=concept_id,
                    drug_source_concept_id=source_concept_id,
                    drug_source_value=coding.get("code"),
                    drug_exposure_start_date=start.date(),
                    drug_exposure_start_datetime=start,
                    drug_exposure_end_date=end.date() if end else start.date(),
                    drug_exposure_end_datetime=end,
                    drug_type_concept_id=self.drug_type_concept_id,
                    quantity=fhir.quantity_value(quantity),
                    dose_unit_source_value=(quantity or {}).get("unit"),
                    route_concept_id=route_concept_id,
                    route_source_value=route_code,
                    fhir_logical_id=logical_id,
                    fhir_identifier=identifier,
                )
            )
        return records

    def check_drug_status(self, data: dict, resource_id: str) -> None:
        pass

    def dosage(self, data: dict) -> Optional[dict]:
        """Dosage element holding ``route`` and ``dose``."""
        raise NotImplementedError

    def medication_coding(self, data: dict, resource_id: str) -> dict:
        atc_urls = self.context.registry.urls_for(VOCABULARY_ATC)
        coding = fhir.first_coding(data.get("medicationCodeableConcept"), atc_urls)
        if coding is not None:
            return coding

        identifier = fhir.medication_reference_identifier(data)
        logical_id = fhir.medication_reference_logical_id(data)
        medication = self.references.resolve_medication(identifier, logical_id)
        if medication is not None and medication.atc:
            return {"system": atc_urls[0] if atc_urls else None, "code": medication.atc}

        if not self.context.bulk and (logical_id or identifier):
            return {"system": NO_MEDICATION_CODE_SYSTEM, "code": logical_id or identifier}

        logger.warning(f"Unable to determine the [referenced medication code] for {resource_id}. Skip resource")
        raise SkipResource("No medication code found")

    def drug_concepts(self, coding: dict, start: datetime, resource_id: str) -> list[tuple[int, int]]:
        """(drug_concept_id, drug_source_concept_id) pairs; one drug_exposure row each."""
        system, code, version = coding.get("system"), coding.get("code"), coding.get("version")
        if self.context.registry.is_system(system, VOCABULARY_ATC):
            rows = self.concepts.resolve_standard(
                MappingKind.ATC_STANDARD, system, code, version, start.date(), resource_id
            )
            if not rows:
                raise SkipResource(f"ATC code {code} is not valid on {start.date()}", SKIP_NO_VALID_CONCEPT)
            return [(row.target_concept_id, row.source_concept_id) for row in rows]

        concept = self.concepts.resolve(
            system, code, version, start.date(), resource_id, default_domain=OMOP_DOMAIN_DRUG
        )
        return [(concept.concept_id, concept.concept_id)]

    def route(self, dosage: Optional[dict], resource_id: str) -> tuple[Optional[str], Optional[int]]:
        route_urls = self.context.registry.urls_for(SOURCE_VOCABULARY_ROUTE)
        coding = fhir.first_coding((dosage or {}).get("route"), route_urls)
        if coding is None:
            logger.debug(f"Unable to determine the [route value] for {resource_id}.")
            return None, None

        entry = self.concepts.resolve_custom(SOURCE_VOCABULARY_ROUTE, coding.get("code"))
        concept_id = entry.target_concept_id
        return coding.get("code"), None if concept_id == CONCEPT_NO_MATCHING_CONCEPT else concept_id


class MedicationAdministrationMapper(DrugExposureMapper):
    resource_type = FHIR_RESOURCE_MEDICATION_ADMINISTRATION
    drug_type_concept_id = CONCEPT_EHR_ADMINISTRATION_RECORD

    def dosage(self, data):
        return data.get("dosage")


class MedicationStatementMapper(DrugExposureMapper):
    resource_type = FHIR_RESOURCE_MEDICATION_STATEMENT
    drug_type_concept_id = CONCEPT_EHR_MEDICATION_LIST

    def check_drug_status(self, data, resource_id):
        status = data.get("status")
        if not status or status not in FHIR_RESOURCE_MEDICATION_STATEMENT_ACCEPTABLE_STATUS_LIST:
            logger.error(f"The [status] of {resource_id} is not acceptable for writing into OMOP CDM. Skip resource.")
            raise SkipResource(f"Status {status} is not acceptable")

    def dosage(self, data):
        dosages = data.get("dosage") or []
        if not dosages:
            return None
        dosage = dict(dosages[0])
        dose_and_rate = dosage.get("doseAndRate") or []
        if dose_and_rate:
            dosage["dose"] = dose_and_rate[0].get("doseQuantity")
        return dosage
