"""Condition -> condition_occurrence (or the table of the mapped SNOMED concept's domain).

ICD-10-GM codes go through the ICD to SNOMED lookup; a code field carrying a primary
and a secondary code separated by a blank yields rows for both. ORPHA and SNOMED
codings are resolved directly.
"""

import logging
from datetime import datetime
from typing import Optional

from fhir_to_omop.domain.constants import (
    CONCEPT_EHR,
    FHIR_RESOURCE_CONDITION,
    FHIR_RESOURCE_CONDITION_ACCEPTABLE_STATUS_LIST,
    VOCABULARY_ICD10GM,
    VOCABULARY_ORPHA,
    VOCABULARY_SNOMED,
)
from fhir_to_omop.domain.mappers import fhir
from fhir_to_omop.domain.mappers.base import ResourceMapper, SkipResource, domain_record
from fhir_to_omop.domain.models import OmopRecord
from fhir_to_omop.domain.ports import SKIP_NO_VALID_CONCEPT

logger = logging.getLogger(__name__)

DIAGNOSIS_VOCABULARIES = (VOCABULARY_ICD10GM, VOCABULARY_ORPHA, VOCABULARY_SNOMED)


class ConditionMapper(ResourceMapper):
    resource_type = FHIR_RESOURCE_CONDITION
    tables = ("condition_occurrence", "observation", "measurement", "procedure_occurrence")

    def transform(self, data, logical_id, identifier) -> list[OmopRecord]:
        resource_id = self.resource_label(logical_id, identifier)

        verification = fhir.first_coding(data.get("verificationStatus"))
        self.check_status(
            verification.get("code") if verification else None,
            FHIR_RESOURCE_CONDITION_ACCEPTABLE_STATUS_LIST,
            resource_id,
        )

        diagnosis_codings = self.require(self.diagnosis_codings(data), "code", resource_id)
        person_id = self.person_id(data, resource_id)
        start = self.require(self.onset(data), "Date", resource_id)
        visit_occurrence_id = self.visit_occurrence_id(data, resource_id)

        icd_codings = [
            coding for coding in diagnosis_codings
            if self.context.registry.is_system(coding.get("system"), VOCABULARY_ICD10GM)
        ]
        if icd_codings:
            concepts = self.icd_concepts(icd_codings[0], start, resource_id)
        else:
            coding = diagnosis_codings[0]
            concept = self.concepts.resolve(
                coding.get("system"), coding.get("code"), coding.get("version"), start.date(), resource_id
            )
            concepts = [(coding.get("code"), concept.concept_id, concept.concept_id, concept.domain_id)]

        records: list[OmopRecord] = []
        for code, concept_id, source_concept_id, domain_id in concepts:
            record = domain_record(
                domain_id,
                person_id=person_id,
                visit_occurrence_id=visit_occurrence_id,
                concept_id=concept_id,
                source_concept_id=source_concept_id,
                start=start,
                source_value=code,
                type_concept_id=CONCEPT_EHR,
                logical_id=logical_id,
                identifier=identifier,
            )
            if record is not None:
                records.append(record)
        return records

    def diagnosis_codings(self, data: dict) -> list[dict]:
        registry = self.context.registry
        return [
            coding
            for coding in fhir.codings(data.get("code"))
            if registry.vocabulary_id(coding.get("system")) in DIAGNOSIS_VOCABULARIES
        ]

    @staticmethod
    def onset(data: dict) -> Optional[datetime]:
        start = fhir.parse_datetime(data.get("onsetDateTime"))
        if start is None:
            start = fhir.period_start(data, "onsetPeriod")
        if start is None:
            start = fhir.parse_datetime(data.get("recordedDate"))
        return start

    def icd_concepts(self, coding: dict, start: datetime, resource_id: str) -> list[tuple]:
        """(code, concept id, source concept id, domain) for the primary and secondary ICD code."""
        concepts = []
        for code in coding["code"].strip().split(" ", 1):
            code = code.strip()
            if not code:
                continue
            rows = self.concepts.resolve_icd_to_snomed(
                coding.get("system"), code, coding.get("version"), start.date(), resource_id
            )
            if not rows:
                logger.warning(f"ICD code [{code}] of {resource_id} is not valid in OMOP.")
                continue
            concepts.extend(
                (code, row.target_concept_id, row.source_concept_id, row.target_domain_id) for row in rows
            )

        if not concepts:
            raise SkipResource(f"No valid ICD code in {coding.get('code')}", SKIP_NO_VALID_CONCEPT)
        return concepts
