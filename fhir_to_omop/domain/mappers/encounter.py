"""Encounter -> visit_occurrence (institution contact) and visit_detail (department case).

Both steps read Encounter resources; each keeps the contact level it maps, recognized
by the code of the first type coding, and filters the rest.
"""

import logging
from datetime import datetime, time
from typing import Optional

from fhir_to_omop.domain.constants import (
    CONCEPT_EHR,
    CONCEPT_EMERGENCY_ROOM,
    CONCEPT_INPATIENT,
    CONCEPT_NO_MATCHING_CONCEPT,
    CONCEPT_OUTPATIENT,
    CONCEPT_STILL_PATIENT,
    ENCOUNTER_DEPARTMENT_CASE_CODE,
    ENCOUNTER_INSTITUTION_CONTACT_CODE,
    FHIR_RESOURCE_ENCOUNTER,
    FHIR_RESOURCE_ENCOUNTER_ACCEPTABLE_STATUS_LIST,
    MAX_SOURCE_VALUE_LENGTH,
    SOURCE_VOCABULARY_ID_VISIT_STATUS,
    SOURCE_VOCABULARY_ID_VISIT_TYPE,
)
from fhir_to_omop.domain.mappers import fhir
from fhir_to_omop.domain.mappers.base import ResourceMapper, SkipResource
from fhir_to_omop.domain.models import IdentityKind, OmopRecord, VisitDetail, VisitOccurrence
from fhir_to_omop.domain.ports import SKIP_FILTERED

logger = logging.getLogger(__name__)

_VISIT_CLASS_CONCEPTS = {
    "IMP": CONCEPT_INPATIENT,
    "STATION": CONCEPT_INPATIENT,
    "STATIONAER": CONCEPT_INPATIENT,
    "AMB": CONCEPT_OUTPATIENT,
    "EMER": CONCEPT_EMERGENCY_ROOM,
}


class _EncounterMapper(ResourceMapper):
    resource_type = FHIR_RESOURCE_ENCOUNTER
    contact_level: str = ""

    def check_contact_level(self, data: dict) -> None:
        types = data.get("type") or []
        codings = (types[0].get("coding") or []) if types else []
        code = codings[0].get("code") if codings else None
        if code != self.contact_level:
            raise SkipResource(f"Encounter is not a {self.contact_level}", SKIP_FILTERED)

    def check_encounter_status(self, data: dict, resource_id: str) -> str:
        status = data.get("status") or "finished"
        self.check_status(status, FHIR_RESOURCE_ENCOUNTER_ACCEPTABLE_STATUS_LIST, resource_id)
        return status

    def visit_concept_id(self, data: dict, resource_id: str) -> int:
        code = (data.get("class") or {}).get("code")
        if not code:
            logger.debug(f"No [class] found for [Encounter]: {resource_id}.")
            return CONCEPT_NO_MATCHING_CONCEPT
        concept_id = _VISIT_CLASS_CONCEPTS.get(code.upper())
        if concept_id is not None:
            return concept_id
        return self.concepts.resolve_custom(SOURCE_VOCABULARY_ID_VISIT_TYPE, code).target_concept_id

    def visit_type_concept_id(self, status: str, end: Optional[datetime]) -> int:
        if status == "unknown" and end is None:
            return CONCEPT_STILL_PATIENT
        entry = self.concepts.resolve_custom(SOURCE_VOCABULARY_ID_VISIT_STATUS, status)
        if entry.target_concept_id != CONCEPT_NO_MATCHING_CONCEPT:
            return entry.target_concept_id
        return CONCEPT_EHR

    def visit_end(self, type_concept_id: int, end: Optional[datetime], resource_id: str) -> datetime:
        if type_concept_id == CONCEPT_STILL_PATIENT:
            return datetime.now()
        if end is not None:
            return end
        logger.warning(f"Missing [end date] for terminated [Encounter]: {resource_id}, set to default. Please check.")
        return datetime.combine(datetime.now().date(), time.min)

    @staticmethod
    def source_value(identifier: Optional[str]) -> Optional[str]:
        if not identifier or not identifier.strip():
            return None
        return identifier[:MAX_SOURCE_VALUE_LENGTH][4:]


class EncounterInstitutionContactMapper(_EncounterMapper):
    """Maps an institution contact (administrative case) to visit_occurrence."""

    contact_level = ENCOUNTER_INSTITUTION_CONTACT_CODE
    tables = ("visit_occurrence",)

    def transform(self, data, logical_id, identifier) -> list[OmopRecord]:
        self.check_contact_level(data)
        resource_id = self.resource_label(logical_id, identifier)
        status = self.check_encounter_status(data, resource_id)
        person_id = self.person_id(data, resource_id)
        start = self.require(fhir.period_start(data), "start date", resource_id)

        type_concept_id = self.visit_type_concept_id(status, fhir.period_end(data))
        end = self.visit_end(type_concept_id, fhir.period_end(data), resource_id)

        visit = VisitOccurrence(
            person_id=person_id,
            visit_concept_id=self.visit_concept_id(data, resource_id),
            visit_start_date=start.date(),
            visit_start_datetime=start,
            visit_end_date=end.date(),
            visit_end_datetime=end,
            visit_type_concept_id=type_concept_id,
            visit_source_value=self.source_value(identifier),
            visit_occurrence_id=self.references.assign_id(IdentityKind.ENCOUNTER, identifier, logical_id),
            fhir_logical_id=logical_id,
            fhir_identifier=identifier,
        )
        return [visit]


class EncounterDepartmentCaseMapper(_EncounterMapper):
    """Maps a department case to visit_detail, linked to its institution contact via ``partOf``."""

    contact_level = ENCOUNTER_DEPARTMENT_CASE_CODE
    tables = ("visit_detail",)

    def transform(self, data, logical_id, identifier) -> list[OmopRecord]:
        self.check_contact_level(data)
        resource_id = self.resource_label(logical_id, identifier)
        status = self.check_encounter_status(data, resource_id)
        person_id = self.person_id(data, resource_id)
        visit_occurrence_id = self.visit_occurrence_id(data, resource_id, element="partOf", required=True)
        start = self.require(fhir.period_start(data), "start date", resource_id)

        type_concept_id = self.visit_type_concept_id(status, fhir.period_end(data))
        end = self.visit_end(type_concept_id, fhir.period_end(data), resource_id)

        visit_detail_id = None
        if self.context.bulk:
            visit_detail_id = self.context.id_mappings.visit_details.get_or_create(logical_id or identifier)

        return [
            VisitDetail(
                visit_detail_id=visit_detail_id,
                person_id=person_id,
                visit_occurrence_id=visit_occurrence_id,
                visit_detail_concept_id=self.visit_concept_id(data, resource_id),
                visit_detail_start_date=start.date(),
                visit_detail_start_datetime=start,
                visit_detail_end_date=end.date(),
                visit_detail_end_datetime=end,
                visit_detail_type_concept_id=type_concept_id,
                visit_detail_source_value=self.source_value(identifier),
                fhir_logical_id=logical_id,
                fhir_identifier=identifier,
            )
        ]
