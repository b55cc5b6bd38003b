"""Procedure -> procedure_occurrence (or the table of the standard concept's domain)."""

import logging

from fhir_to_omop.domain.constants import (
    CONCEPT_EHR,
    FHIR_RESOURCE_ACCEPTABLE_EVENT_STATUS_LIST,
    FHIR_RESOURCE_PROCEDURE,
    VOCABULARY_OPS,
    VOCABULARY_SNOMED,
)
from fhir_to_omop.domain.mappers import fhir
from fhir_to_omop.domain.mappers.base import ResourceMapper, SkipResource, domain_record
from fhir_to_omop.domain.models import MappingKind, OmopRecord
from fhir_to_omop.domain.ports import SKIP_INVALID_RESOURCE, SKIP_NO_VALID_CONCEPT

logger = logging.getLogger(__name__)


class ProcedureMapper(ResourceMapper):
    """Maps OPS procedures through the OPS to standard lookup and SNOMED procedures directly."""

    resource_type = FHIR_RESOURCE_PROCEDURE
    tables = ("procedure_occurrence", "observation", "measurement")

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

        registry = self.context.registry
        coding = fhir.first_coding(data.get("code"), registry.urls_for(VOCABULARY_OPS))
        if coding is None:
            coding = fhir.first_coding(data.get("code"), registry.urls_for(VOCABULARY_SNOMED))
        coding = self.require(coding, "Code", resource_id)

        start = fhir.effective_datetime(data, "performed")
        if start is None:
            logger.warning(f"Unable to determine [Performed DateTime] for [Procedure]: {resource_id}. Skip resource")
            raise SkipResource("No performed date found")
        visit_occurrence_id = self.visit_occurrence_id(data, resource_id)

        system, code, version = coding.get("system"), coding.get("code"), coding.get("version")
        if registry.is_system(system, VOCABULARY_OPS):
            rows = self.concepts.resolve_standard(
                MappingKind.OPS_STANDARD, system, code, version, start.date(), resource_id
            )
            if not rows:
                raise SkipResource(f"OPS code {code} is not valid on {start.date()}", SKIP_NO_VALID_CONCEPT)
            concepts = [(row.target_concept_id, row.source_concept_id, row.target_domain_id) for row in rows]
        else:
            concept = self.concepts.resolve(system, code, version, start.date(), resource_id)
            concepts = [(concept.concept_id, concept.concept_id, concept.domain_id)]

        records: list[OmopRecord] = []
        for concept_id, source_concept_id, domain_id in concepts:
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
