"""Base class of the per-resource mappers.

A mapper turns one staged FHIR resource into OMOP target records. It consults the
ConceptResolver for codes and the ReferenceResolver for the person / encounter the
resource belongs to, and returns one Result per resource:

    - success: the target records (plus delete markers in incremental mode)
    - failure: a skip; ``error_type`` names the reason

Fatal conditions (identity conflicts, storage failures) are not caught here and
abort the stage.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import ClassVar, Iterable, Optional, Union

from fhir_to_omop.domain.constants import (
    OMOP_DOMAIN_CONDITION,
    OMOP_DOMAIN_DRUG,
    OMOP_DOMAIN_MEASUREMENT,
    OMOP_DOMAIN_OBSERVATION,
    OMOP_DOMAIN_PROCEDURE,
)
from fhir_to_omop.domain.mappers import fhir
from fhir_to_omop.domain.models import (
    ConditionOccurrence,
    DrugExposure,
    LoadMode,
    Measurement,
    OmopObservation,
    OmopRecord,
    ProcedureOccurrence,
    SourceResource,
    Tombstone,
)
from fhir_to_omop.domain.ports import (
    SKIP_DEFERRED,
    SKIP_INVALID_RESOURCE,
    SKIP_NO_REFERENCE,
    SKIP_NO_VALID_CONCEPT,
    SKIP_REFERENCE_NOT_FOUND,
    EtlError,
    NoReferenceError,
    NoValidConceptError,
    Result,
    TransformationError,
)
from fhir_to_omop.domain.services.concept_resolver import ConceptResolver
from fhir_to_omop.domain.services.identity_cache import IdMappings
from fhir_to_omop.domain.services.reference_resolver import ReferenceResolver
from fhir_to_omop.domain.services.vocabulary import DEFAULT_ETHNIC_GROUP_EXTENSION, DEFAULT_IDENTIFIER_TYPE_SYSTEM

logger = logging.getLogger(__name__)

MappedRecords = list[Union[OmopRecord, Tombstone]]


class SkipResource(EtlError):
    """Raised inside a mapper to skip the current resource.

    Attributes:
        reason: Skip reason reported as ``Result.error_type``
    """

    def __init__(self, message: str, reason: str = SKIP_INVALID_RESOURCE):
        super().__init__(message)
        self.reason = reason


@dataclass
class MappingContext:
    """Collaborators shared by all mappers of one run."""
    concept_resolver: ConceptResolver
    reference_resolver: ReferenceResolver
    id_mappings: IdMappings
    mode: LoadMode
    identifier_type_system: str = DEFAULT_IDENTIFIER_TYPE_SYSTEM
    identifier_systems: tuple[str, ...] = ()
    ethnic_group_extension: str = DEFAULT_ETHNIC_GROUP_EXTENSION

    @property
    def bulk(self) -> bool:
        return self.mode == LoadMode.BULK

    @property
    def registry(self):
        return self.concept_resolver.registry


class ResourceMapper(ABC):
    """Maps one FHIR resource type to OMOP records.

    Subclasses set ``resource_type`` and ``tables`` and implement ``transform``.
    """

    resource_type: ClassVar[str] = ""
    tables: ClassVar[tuple[str, ...]] = ()

    def __init__(self, context: MappingContext):
        self.context = context
        self.concepts = context.concept_resolver
        self.references = context.reference_resolver

    def keys(self, data: dict) -> tuple[Optional[str], Optional[str]]:
        """Prefixed (logical id, identifier) of the resource."""
        return fhir.extract_id(data), fhir.extract_first_identifier(data)

    def map(self, resource: SourceResource) -> Result[MappedRecords]:
        data = dict(resource.data)
        data.setdefault("resourceType", self.resource_type)
        data.setdefault("id", resource.fhir_id)

        logical_id, identifier = self.keys(data)
        if not logical_id and not identifier:
            logger.warning(
                f"No [Identifier] or [Id] found. [{self.resource_type}] resource is invalid. Skip resource"
            )
            return Result.failure_result(
                "Resource has neither a logical id nor an identifier",
                error_type=SKIP_INVALID_RESOURCE,
                error_details={"staging_id": resource.id},
            )

        records: MappedRecords = []
        if not self.context.bulk:
            records.extend(
                Tombstone(table_name=table, fhir_logical_id=logical_id, fhir_identifier=identifier)
                for table in self.tables
            )
            if resource.is_deleted:
                logger.info(
                    f"Found a deleted [{self.resource_type}] resource {logical_id}. Deleting from OMOP DB."
                )
                return Result.success_result(records)

        details = {"resource_id": logical_id or identifier}
        try:
            records.extend(self.transform(data, logical_id, identifier))
        except SkipResource as e:
            return Result.failure_result(e, error_type=e.reason, error_details=details)
        except NoValidConceptError as e:
            details.update({"code": e.code, "vocabulary_id": e.vocabulary_id})
            return Result.failure_result(e, error_type=SKIP_NO_VALID_CONCEPT, error_details=details)
        except NoReferenceError as e:
            details["reference_kind"] = e.reference_kind
            return Result.failure_result(e, error_type=SKIP_NO_REFERENCE, error_details=details)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            error = TransformationError(
                f"[{self.resource_type}] {logical_id or identifier} could not be transformed: {e}",
                source=logical_id or identifier,
            )
            logger.warning(f"{error}. Skip resource")
            return Result.failure_result(error, error_type=SKIP_INVALID_RESOURCE, error_details=details)

        return Result.success_result(records)

    @abstractmethod
    def transform(self, data: dict, logical_id: Optional[str], identifier: Optional[str]) -> list[OmopRecord]:
        """Build the target records of one resource; raise SkipResource to skip it."""
        pass

    # ------------------------------------------------------------------
    # Shared checks and reference lookups
    # ------------------------------------------------------------------

    def resource_label(self, logical_id: Optional[str], identifier: Optional[str]) -> str:
        return logical_id or identifier or ""

    def check_status(self, status: Optional[str], acceptable: Iterable[str], resource_id: str) -> None:
        if status and status not in acceptable:
            logger.error(
                f"The [status]: {status} of {resource_id} is not acceptable for writing into OMOP CDM. "
                f"Skip resource."
            )
            raise SkipResource(f"Status {status} is not acceptable", SKIP_INVALID_RESOURCE)

    def require(self, value, what: str, resource_id: str):
        if value is None or value == [] or value == "":
            logger.warning(f"No [{what}] found for [{self.resource_type}]: {resource_id}. Skip resource.")
            raise SkipResource(f"No {what} found", SKIP_INVALID_RESOURCE)
        return value

    def person_id(self, data: dict, resource_id: str) -> int:
        """Surrogate id of the referenced patient; skips the resource when unresolved."""
        resolution = self.references.resolve_person_id(
            fhir.subject_reference_identifier(data),
            fhir.subject_reference_logical_id(data),
            resource_id,
        )
        if resolution.deferred:
            raise SkipResource(f"Person of {resource_id} not loaded yet", SKIP_DEFERRED)
        if not resolution.found:
            logger.warning(f"No matching [Person] found for [{self.resource_type}]: {resource_id}. Skip resource")
            raise SkipResource(f"No person found for {resource_id}", SKIP_REFERENCE_NOT_FOUND)
        return resolution.surrogate_id

    def visit_occurrence_id(
        self,
        data: dict,
        resource_id: str,
        element: str = "encounter",
        required: bool = False,
    ) -> Optional[int]:
        """Surrogate id of the referenced encounter.

        An optional encounter that is absent or unknown in bulk mode yields None.
        A deferred lookup (incremental mode) always skips the resource.
        """
        if not required and not fhir.has_encounter_reference(data, element):
            return None

        resolution = self.references.resolve_encounter_id(
            fhir.encounter_reference_identifier(data, element),
            fhir.encounter_reference_logical_id(data, element),
            resource_id,
        )
        if resolution.deferred:
            raise SkipResource(f"Encounter of {resource_id} not loaded yet", SKIP_DEFERRED)
        if not resolution.found:
            if required:
                logger.warning(
                    f"No matching [Encounter] found for [{self.resource_type}]: {resource_id}. Skip resource"
                )
                raise SkipResource(f"No encounter found for {resource_id}", SKIP_REFERENCE_NOT_FOUND)
            logger.debug(f"No matching [Encounter] found for [{self.resource_type}]: {resource_id}.")
            return None
        return resolution.surrogate_id


def domain_record(
    domain_id: Optional[str],
    *,
    person_id: int,
    visit_occurrence_id: Optional[int],
    concept_id: int,
    source_concept_id: Optional[int],
    start: datetime,
    source_value: Optional[str],
    type_concept_id: int,
    logical_id: Optional[str],
    identifier: Optional[str],
    end: Optional[datetime] = None,
    value_as_number: Optional[float] = None,
    unit_concept_id: Optional[int] = None,
    unit_source_value: Optional[str] = None,
) -> Optional[OmopRecord]:
    """Target record for a concept, placed in the table of the concept's domain.

    Returns:
        Optional[OmopRecord]: None for domains without a target table
    """
    common = {
        "person_id": person_id,
        "visit_occurrence_id": visit_occurrence_id,
        "fhir_logical_id": logical_id,
        "fhir_identifier": identifier,
    }

    if domain_id == OMOP_DOMAIN_CONDITION:
        return ConditionOccurrence(
            condition_concept_id=concept_id,
            condition_source_concept_id=source_concept_id,
            condition_start_date=start.date(),
            condition_start_datetime=start,
            condition_type_concept_id=type_concept_id,
            condition_source_value=source_value,
            **common,
        )
    if domain_id == OMOP_DOMAIN_OBSERVATION:
        return OmopObservation(
            observation_concept_id=concept_id,
            observation_source_concept_id=source_concept_id,
            observation_date=start.date(),
            observation_datetime=start,
            observation_type_concept_id=type_concept_id,
            observation_source_value=source_value,
            value_as_number=value_as_number,
            unit_concept_id=unit_concept_id,
            unit_source_value=unit_source_value,
            **common,
        )
    if domain_id == OMOP_DOMAIN_MEASUREMENT:
        return Measurement(
            measurement_concept_id=concept_id,
            measurement_source_concept_id=source_concept_id,
            measurement_date=start.date(),
            measurement_datetime=start,
            measurement_type_concept_id=type_concept_id,
            measurement_source_value=source_value,
            value_as_number=value_as_number,
            unit_concept_id=unit_concept_id,
            unit_source_value=unit_source_value,
            **common,
        )
    if domain_id == OMOP_DOMAIN_PROCEDURE:
        return ProcedureOccurrence(
            procedure_concept_id=concept_id,
            procedure_source_concept_id=source_concept_id,
            procedure_date=start.date(),
            procedure_datetime=start,
            procedure_type_concept_id=type_concept_id,
            procedure_source_value=source_value,
            **common,
        )
    if domain_id == OMOP_DOMAIN_DRUG:
        return DrugExposure(
            drug_concept_id=concept_id,
            drug_source_concept_id=source_concept_id,
            drug_exposure_start_date=start.date(),
            drug_exposure_start_datetime=start,
            drug_exposure_end_date=end.date() if end else None,
            drug_type_concept_id=type_concept_id,
            drug_source_value=source_value,
            **common,
        )

    logger.warning(f"Unsupported domain [{domain_id}] for {logical_id or identifier}. Record dropped")
    return None
