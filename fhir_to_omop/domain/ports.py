"""Domain Ports - Abstract Contracts for the FHIR-to-OMOP ETL.

This module defines the Port interfaces (abstract contracts) that Adapters must implement.
Following Hexagonal Architecture, the Domain Core defines what it needs, not how it's provided.

Architecture:
    - Pure abstract interfaces with zero infrastructure dependencies
    - Storage adapters (DuckDB, PostgreSQL) implement the store, reader and writer ports
    - Concept sources (RAM snapshot, cached live query) implement ConceptSource
    - Per-item outcomes travel as Result objects, fatal conditions as exceptions
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, Iterator, Optional, Sequence, TypeVar, Union

from fhir_to_omop.domain.models import (
    Concept,
    IdentityKind,
    IdentityRecord,
    MappingEntry,
    MappingKind,
    MedicationIdMap,
    OmopRecord,
    SourceResource,
    SourceToConceptEntry,
    Tombstone,
)

# Type variable for Result generic
T = TypeVar('T')


# ============================================================================
# Result Type for Success/Failure Communication
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """Result type for communicating success or failure without exceptions.

    Mappers return one Result per source resource. A failure is a per-item
    skip signal; ``error_type`` names the skip reason and is what the stage
    statistics count.

    Attributes:
        success: True if the operation succeeded, False otherwise
        value: The successful result value (only present if success=True)
        error: Error information (only present if success=False)
        error_type: Type of error (NoValidConcept, NoReference, Deferred, ...)
        error_details: Additional error context (resource id, code, ...)

    Example:
        ```python
        result = Result.success_result([condition_occurrence])
        if result.is_success():
            writer.write_chunk(result.value)

        result = Result.failure_result(
            "ICD code [X99] of con-1 is not valid in OMOP",
            error_type="NoValidConcept",
            error_details={"resource_id": "con-1"}
        )
        ```
    """

    success: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    error_details: Optional[dict] = None

    @classmethod
    def success_result(cls, value: T) -> 'Result[T]':
        """Create a successful result.

        Parameters:
            value: The successful result value

        Returns:
            Result: Success result with the value
        """
        return cls(
            success=True,
            value=value,
            error=None,
            error_type=None,
            error_details=None
        )

    @classmethod
    def failure_result(
        cls,
        error: Union[str, Exception],
        error_type: Optional[str] = None,
        error_details: Optional[dict] = None
    ) -> 'Result[T]':
        """Create a failure result.

        Parameters:
            error: Error message or exception
            error_type: Type of error (e.g., "NoValidConcept", "Deferred")
            error_details: Additional context (resource id, code, ...)

        Returns:
            Result: Failure result with error information
        """
        error_message = str(error) if isinstance(error, Exception) else error
        error_type_name = error_type or (type(error).__name__ if isinstance(error, Exception) else "UnknownError")

        return cls(
            success=False,
            value=None,
            error=error_message,
            error_type=error_type_name,
            error_details=error_details or {}
        )

    def is_success(self) -> bool:
        """Check if result is successful."""
        return self.success

    def is_failure(self) -> bool:
        """Check if result is a failure."""
        return not self.success


# Skip reasons used as Result.error_type by the mappers
SKIP_NO_VALID_CONCEPT = "NoValidConcept"
SKIP_NO_REFERENCE = "NoReference"
SKIP_REFERENCE_NOT_FOUND = "ReferenceNotFound"
SKIP_DEFERRED = "Deferred"
SKIP_INVALID_RESOURCE = "InvalidResource"
SKIP_FILTERED = "Filtered"


# ============================================================================
# Custom Exception Hierarchy
# ============================================================================

class EtlError(Exception):
    """Base exception for all ETL errors."""
    pass


class NoValidConceptError(EtlError):
    """Raised when a code is known but no concept window covers the validity date.

    This is a data-quality signal: the item carrying the code is skipped.

    Attributes:
        code: The code that failed validation
        vocabulary_id: Vocabulary the code was looked up in
        resource_id: Prefixed logical id of the resource carrying the code
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        vocabulary_id: Optional[str] = None,
        resource_id: Optional[str] = None
    ):
        super().__init__(message)
        self.code = code
        self.vocabulary_id = vocabulary_id
        self.resource_id = resource_id


class NoReferenceError(EtlError):
    """Raised when neither a logical id nor an identifier can be extracted for a reference.

    Attributes:
        resource_id: Prefixed logical id of the dependent resource
        reference_kind: Kind of entity that could not be referenced
    """

    def __init__(self, message: str, resource_id: Optional[str] = None, reference_kind: Optional[str] = None):
        super().__init__(message)
        self.resource_id = resource_id
        self.reference_kind = reference_kind


class IdentityConflictError(EtlError):
    """Raised when logical id and identifier resolve to different surrogate ids.

    This is a logic error (upstream data corruption or a cache bug) and aborts the run.

    Attributes:
        kind: Identity kind (person, encounter, medication)
        logical_id: Logical id key
        identifier: Identifier key
        ids: The conflicting surrogate ids
    """

    def __init__(
        self,
        message: str,
        kind: Optional[str] = None,
        logical_id: Optional[str] = None,
        identifier: Optional[str] = None,
        ids: Optional[tuple] = None
    ):
        super().__init__(message)
        self.kind = kind
        self.logical_id = logical_id
        self.identifier = identifier
        self.ids = ids or ()


class TransformationError(EtlError):
    """Raised when a source resource cannot be transformed into target records.

    Attributes:
        source: The resource id that failed transformation
        raw_data: The raw data that failed transformation (may be truncated)
    """

    def __init__(self, message: str, source: Optional[str] = None, raw_data: Optional[dict] = None):
        super().__init__(message)
        self.source = source
        self.raw_data = raw_data


class StorageError(EtlError):
    """Raised when a storage operation fails (connection, query, commit).

    Attributes:
        operation: Storage operation that failed
        details: Additional error context
    """

    def __init__(self, message: str, operation: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.operation = operation
        self.details = details or {}


class StepFailedError(EtlError):
    """Raised when a stage aborts; already committed chunks are kept.

    Attributes:
        step_name: Name of the failed stage
        statistics: Stage statistics at the time of failure
    """

    def __init__(self, message: str, step_name: Optional[str] = None, statistics: Optional[object] = None):
        super().__init__(message)
        self.step_name = step_name
        self.statistics = statistics


class FlowDefinitionError(EtlError):
    """Raised when a flow graph is malformed (unknown node, cycle, missing start)."""
    pass


# ============================================================================
# Reference Data Ports
# ============================================================================

class ConceptSource(ABC):
    """Lookup of concepts, derived mappings and curated entries by code.

    A return value of None means the code is entirely absent. A list (possibly
    in no particular order) means the code exists; the resolver applies its own
    first-match-by-validity-window rule.
    """

    @abstractmethod
    def lookup(self, vocabulary_id: str, code: str) -> Optional[list[Concept]]:
        """Concepts for a code inside one vocabulary."""
        pass

    @abstractmethod
    def lookup_mapping(self, kind: MappingKind, code: str) -> Optional[list[MappingEntry]]:
        """Derived cross-vocabulary rows for a source code (case-insensitive key)."""
        pass

    @abstractmethod
    def lookup_custom(self, source_vocabulary_id: str, code: str) -> Optional[list[SourceToConceptEntry]]:
        """Curated source-to-concept entries for a code inside one source vocabulary."""
        pass

    def prepare(self, vocabulary_ids: Sequence[str], mapping_kinds: Sequence[MappingKind]) -> None:
        """Called before a stage with the reference data the stage needs."""
        pass

    def release(self) -> None:
        """Called after a stage; drops whatever ``prepare`` loaded."""
        pass


class VocabularyStore(ABC):
    """Read access to the vocabulary tables of the target database."""

    @abstractmethod
    def load_concepts(self, vocabulary_ids: Sequence[str]) -> list[Concept]:
        pass

    @abstractmethod
    def find_concepts(self, vocabulary_id: str, code: str) -> list[Concept]:
        pass

    @abstractmethod
    def load_mappings(self, kinds: Sequence[MappingKind]) -> list[MappingEntry]:
        pass

    @abstractmethod
    def find_mappings(self, kind: MappingKind, code: str) -> list[MappingEntry]:
        pass

    @abstractmethod
    def load_source_to_concept(self) -> list[SourceToConceptEntry]:
        pass

    @abstractmethod
    def find_source_to_concept(self, source_vocabulary_id: str, code: str) -> list[SourceToConceptEntry]:
        pass


# ============================================================================
# Identity & Rescheduling Ports
# ============================================================================

class IdentityStore(ABC):
    """Lookup of already persisted persons, encounters and medications by natural key."""

    @abstractmethod
    def find_by_logical_id(self, kind: IdentityKind, logical_id: str) -> Optional[int]:
        pass

    @abstractmethod
    def find_by_identifier(self, kind: IdentityKind, identifier: str) -> Optional[int]:
        pass

    @abstractmethod
    def load_identities(self, kind: IdentityKind) -> list[IdentityRecord]:
        """All identity records of a kind (used to build the RAM dictionaries)."""
        pass

    @abstractmethod
    def max_surrogate_id(self, kind: IdentityKind) -> int:
        """Highest persisted surrogate id of a kind, 0 when none."""
        pass

    @abstractmethod
    def find_medication(self, logical_id: Optional[str], identifier: Optional[str]) -> Optional[MedicationIdMap]:
        pass

    @abstractmethod
    def load_medications(self) -> list[MedicationIdMap]:
        pass


class RescheduleHook(ABC):
    """Pushes a staged resource's watermark into the future so a later run retries it."""

    @abstractmethod
    def reschedule(self, resource_id: str, after: datetime) -> None:
        """Reschedule a resource.

        Parameters:
            resource_id: Prefixed logical id of the dependent resource (e.g. "con-123")
            after: New re-processing watermark
        """
        pass


# ============================================================================
# Pipeline Ports
# ============================================================================

class ResourceReader(ABC):
    """Streams staged source resources in read order, chunk by chunk."""

    @abstractmethod
    def read_chunks(
        self,
        resource_type: str,
        chunk_size: int,
        begin: Optional[datetime] = None,
        end: Optional[datetime] = None,
        include_deleted: bool = False
    ) -> Iterator[list[SourceResource]]:
        """Yield lists of at most ``chunk_size`` resources ordered by staging id.

        Parameters:
            resource_type: FHIR resource type to read
            chunk_size: Maximum resources per chunk
            begin: Lower bound on last_updated_at (None = no filter)
            end: Upper bound on last_updated_at (None = no filter)
            include_deleted: Also return rows flagged as deleted
        """
        pass


class OmopWriter(ABC):
    """Persists target records; one call commits one chunk atomically."""

    @abstractmethod
    def write_chunk(self, records: Sequence[Union[OmopRecord, Tombstone]]) -> Result[int]:
        """Write one chunk in a single transaction.

        Delete markers are applied before any record is inserted.

        Parameters:
            records: Target records and delete markers

        Returns:
            Result[int]: Number of rows written, or a StorageError failure
        """
        pass

    @abstractmethod
    def delete_step_data(self, table_names: Sequence[str], key_prefix: str) -> Result[int]:
        """Delete rows previously loaded from one resource type (single-step re-runs).

        Parameters:
            table_names: Tables the step writes
            key_prefix: Key prefix of the step's resource type (e.g. "con-"); rows whose
                fhir_logical_id or fhir_identifier starts with it are deleted
        """
        pass

    @abstractmethod
    def reset_target_tables(self) -> Result[None]:
        """Empty every target table before a full bulk load."""
        pass


class PostProcessor(ABC):
    """Executes derived-aggregate scripts after loading."""

    @abstractmethod
    def run_scripts(self, script_names: Sequence[str]) -> Result[int]:
        """Run the named scripts in order; returns the number of scripts executed."""
        pass


class SchemaManager(ABC):
    """Creates the staging and target tables when they do not exist."""

    @abstractmethod
    def initialize_schema(self) -> Result[None]:
        pass


class EtlStore(
    ResourceReader,
    OmopWriter,
    IdentityStore,
    RescheduleHook,
    VocabularyStore,
    PostProcessor,
    SchemaManager,
):
    """All storage-side ports of one database, as implemented by the storage adapters."""
    pass
