"""DiagnosticReport -> measurement / observation / procedure_occurrence."""

import logging
from datetime import datetime
from typing import Optional

from fhir_to_omop.domain.constants import (
    CONCEPT_EHR,
    FHIR_RESOURCE_DIAGNOSTIC_REPORT,
    FHIR_RESOURCE_DIAGNOSTIC_REPORT_ACCEPTABLE_STATUS_LIST,
    SOURCE_VOCABULARY_ID_DIAGNOSTIC_REPORT_CATEGORY,
    VOCABULARY_LOINC,
    VOCABULARY_SNOMED,
)
from fhir_to_omop.domain.mappers import fhir
from fhir_to_omop.domain.mappers.base import ResourceMapper, SkipResource, domain_record
from fhir_to_omop.domain.models import OmopRecord

logger = logging.getLogger(__name__)


class DiagnosticReportMapper(ResourceMapper):
    """Maps a report to one row per SNOMED conclusion code.

    The LOINC report code gives the concept and the target table; each conclusion
    code becomes the source concept of its row. A report without conclusion codes
    yields a single row sourced from the report code.
    """

    resource_type = FHIR_RESOURCE_DIAGNOSTIC_REPORT
    tables = ("measurement", "observation", "procedure_occurrence")

    def transform(self, data, logical_id, identifier) -> list[OmopRecord]:
        resource_id = self.resource_label(logical_id, identifier)

        status = data.get("status")
        if not status or status not in FHIR_RESOURCE_DIAGNOSTIC_REPORT_ACCEPTABLE_STATUS_LIST:
            logger.error(f"[status] {status} from {resource_id} is not acceptible. Skip resource.")
            raise SkipResource(f"Status {status} is not acceptable")

        person_id = self.person_id(data, resource_id)
        start = self.require(self.effective(data), "Date", resource_id)

        registry = self.context.registry
        loinc_coding = self.require(
            fhir.first_coding(data.get("code"), registry.urls_for(VOCABULARY_LOINC)), "Loinc code", resource_id
        )
        visit_occurrence_id = self.visit_occurrence_id(data, resource_id)
        type_concept_id = self.type_concept_id(data)

        concept = self.concepts.resolve(
            loinc_coding.get("system"), loinc_coding.get("code"), loinc_coding.get("version"),
            start.date(), resource_id,
        )

        sources = [(loinc_coding.get("code"), concept.concept_id)]
        conclusions = [
            coding
            for coding in fhir.all_codings(data.get("conclusionCode"))
            if registry.is_system(coding.get("system"), VOCABULARY_SNOMED)
        ]
        if conclusions:
            sources = []
            for coding in conclusions:
                snomed = self.concepts.resolve(
                    coding.get("system"), coding.get("code"), coding.get("version"), start.date(), resource_id
                )
                sources.append((coding.get("code"), snomed.concept_id))

        records: list[OmopRecord] = []
        for source_value, source_concept_id in sources:
            record = domain_record(
                concept.domain_id,
                person_id=person_id,
                visit_occurrence_id=visit_occurrence_id,
                concept_id=concept.concept_id,
                source_concept_id=source_concept_id,
                start=start,
                source_value=source_value,
                type_concept_id=type_concept_id,
                logical_id=logical_id,
                identifier=identifier,
            )
            if record is not None:
                records.append(record)
        return records

    @staticmethod
    def effective(data: dict) -> Optional[datetime]:
        start = fhir.effective_datetime(data, "effective")
        if start is None:
            start = fhir.parse_datetime(data.get("issued"))
        return start

    def type_concept_id(self, data: dict) -> int:
        urls = self.context.registry.urls_for(SOURCE_VOCABULARY_ID_DIAGNOSTIC_REPORT_CATEGORY)
        for category in data.get("category") or []:
            coding = fhir.first_coding(category, urls)
            if coding is not None:
                return self.concepts.resolve_custom(
                    SOURCE_VOCABULARY_ID_DIAGNOSTIC_REPORT_CATEGORY, coding.get("code")
                ).target_concept_id
        return CONCEPT_EHR
