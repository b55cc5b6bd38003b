"""Observation -> measurement / observation (by the domain of the standard concept)."""

import logging
from datetime import datetime
from typing import Optional

from fhir_to_omop.domain.constants import (
    CONCEPT_EHR,
    FHIR_RESOURCE_OBSERVATION,
    FHIR_RESOURCE_OBSERVATION_ACCEPTABLE_STATUS_LIST,
    SOURCE_VOCABULARY_ID_OBSERVATION_CATEGORY,
    VOCABULARY_LOINC,
    VOCABULARY_SNOMED,
    VOCABULARY_UCUM,
)
from fhir_to_omop.domain.mappers import fhir
from fhir_to_omop.domain.mappers.base import ResourceMapper, SkipResource, domain_record
from fhir_to_omop.domain.models import MappingKind, OmopRecord
from fhir_to_omop.domain.ports import SKIP_INVALID_RESOURCE, SKIP_NO_VALID_CONCEPT

logger = logging.getLogger(__name__)


class ObservationMapper(ResourceMapper):
    """Maps laboratory and clinical observations.

    LOINC codes resolve through the LOINC to standard lookup (one row per standard
    concept), other codes directly. The category decides the type concept.
    """

    resource_type = FHIR_RESOURCE_OBSERVATION
    tables = ("measurement", "observation", "procedure_occurrence")

    def transform(self, data, logical_id, identifier) -> list[OmopRecord]:
        resource_id = self.resource_label(logical_id, identifier)

        status = data.get("status")
        if not status or status not in FHIR_RESOURCE_OBSERVATION_ACCEPTABLE_STATUS_LIST:
            logger.error(
                f"The [status]: {status} of {resource_id} is not acceptable for writing into OMOP CDM. "
                f"Skip resource."
            )
            raise SkipResource(f"Status {status} is not acceptable", SKIP_INVALID_RESOURCE)

        person_id = self.person_id(data, resource_id)

        urls = self.context.registry.urls_for(VOCABULARY_LOINC) + self.context.registry.urls_for(VOCABULARY_SNOMED)
        coding = self.require(fhir.first_coding(data.get("code"), urls), "Code", resource_id)
        start = self.require(self.effective(data), "EffectiveDateTime", resource_id)
        visit_occurrence_id = self.visit_occurrence_id(data, resource_id)

        type_concept_id = self.type_concept_id(data, resource_id)
        quantity = data.get("valueQuantity")
        value = fhir.quantity_value(quantity)
        unit_concept_id, unit_source_value = self.unit(quantity, resource_id)

        records: list[OmopRecord] = []
        for concept_id, source_concept_id, domain_id in self.concepts_for(coding, start, resource_id):
            record = domain_record(
                domain_id,
                person_id=person_id,
                visit_occurrence_id=visit_occurrence_id,
                concept_id=concept_id,
                source_concept_id=source_concept_id,
                start=start,
                source_value=coding.get("code"),
                type_concept_id=type_concept_id,
                logical_id=logical_id,
                identifier=identifier,
                value_as_number=value,
                unit_concept_id=unit_concept_id,
                unit_source_value=unit_source_value,
            )
            if record is not None:
                records.append(record)
        return records

    @staticmethod
    def effective(data: dict) -> Optional[datetime]:
        start = fhir.parse_datetime(data.get("effectiveDateTime"))
        if start is None:
            start = fhir.parse_datetime(data.get("issued"))
        if start is None:
            start = fhir.period_start(data, "effectivePeriod")
        return start

    def concepts_for(self, coding: dict, start: datetime, resource_id: str) -> list[tuple]:
        system, code, version = coding.get("system"), coding.get("code"), coding.get("version")
        if self.context.registry.is_system(system, VOCABULARY_LOINC):
            rows = self.concepts.resolve_standard(
                MappingKind.LOINC_STANDARD, system, code, version, start.date(), resource_id
            )
            if not rows:
                raise SkipResource(f"LOINC code {code} is not valid on {start.date()}", SKIP_NO_VALID_CONCEPT)
            return [(row.target_concept_id, row.source_concept_id, row.target_domain_id) for row in rows]

        concept = self.concepts.resolve(system, code, version, start.date(), resource_id)
        return [(concept.concept_id, concept.concept_id, concept.domain_id)]

    def type_concept_id(self, data: dict, resource_id: str) -> int:
        category_urls = self.context.registry.urls_for(SOURCE_VOCABULARY_ID_OBSERVATION_CATEGORY)
        for category in data.get("category") or []:
            coding = fhir.first_coding(category, category_urls)
            if coding is not None:
                entry = self.concepts.resolve_custom(SOURCE_VOCABULARY_ID_OBSERVATION_CATEGORY, coding.get("code"))
                return entry.target_concept_id
        logger.warning(f"No [Category] found for [Observation]: {resource_id}. Invalid resource. Please Check.")
        return CONCEPT_EHR

    def unit(self, quantity: Optional[dict], resource_id: str) -> tuple[Optional[int], Optional[str]]:
        if not quantity or not quantity.get("code"):
            return None, (quantity or {}).get("unit")

        system = quantity.get("system")
        if not self.context.registry.is_system(system, VOCABULARY_UCUM):
            return None, quantity.get("unit") or quantity.get("code")
        concept = self.concepts.resolve(system, quantity["code"], resource_id=resource_id)
        return concept.concept_id, quantity.get("unit") or concept.concept_code
