"""Domain Models for the FHIR-to-OMOP ETL.

This module defines the reference data (concepts, curated source-to-concept entries,
derived cross-vocabulary mappings), the identity records used for reference
resolution, the staged source resources and the OMOP target records produced by
the mappers.

Architecture:
    - Pure domain models with zero infrastructure dependencies
    - Reference data is immutable (frozen) once loaded
    - Target records declare their table and surrogate key so writers stay generic
    - Validation enforced at runtime via Pydantic V2
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class LoadMode(str, Enum):
    """Load mode of one ETL run."""
    BULK = "BULKLOAD"
    INCREMENTAL = "INCREMENTALLOAD"


class MappingKind(str, Enum):
    """Derived cross-vocabulary lookup tables."""
    ICD_SNOMED = "icd_snomed"
    VACCINE_STANDARD = "vaccine_standard"
    RACE_STANDARD = "race_standard"
    OPS_STANDARD = "ops_standard"
    ATC_STANDARD = "atc_standard"
    LOINC_STANDARD = "loinc_standard"


class IdentityKind(str, Enum):
    """Entities referenced across resources by logical id and identifier."""
    PERSON = "person"
    ENCOUNTER = "encounter"
    MEDICATION = "medication"


# ============================================================================
# Reference Data
# ============================================================================

class Concept(BaseModel):
    """A target-vocabulary entry with its validity window.

    A code may map to several concepts over time; windows for the same
    code and vocabulary never overlap.
    """

    model_config = ConfigDict(frozen=True)

    concept_id: int = Field(..., description="OMOP concept id (0 = no matching concept)")
    concept_code: str = Field(..., description="Code inside the vocabulary")
    vocabulary_id: Optional[str] = Field(None, description="OMOP vocabulary id")
    domain_id: Optional[str] = Field(None, description="OMOP domain id")
    concept_name: Optional[str] = None
    concept_class_id: Optional[str] = None
    valid_start_date: Optional[date] = None
    valid_end_date: Optional[date] = None

    @model_validator(mode="after")
    def check_validity_window(self) -> "Concept":
        if (
            self.valid_start_date is not None
            and self.valid_end_date is not None
            and self.valid_start_date > self.valid_end_date
        ):
            raise ValueError(
                f"valid_start_date {self.valid_start_date} is after valid_end_date {self.valid_end_date}"
            )
        return self

    def is_valid_on(self, validity_date: date) -> bool:
        """Check whether the concept window covers the given date (bounds inclusive)."""
        return _window_covers(self.valid_start_date, self.valid_end_date, validity_date)


class SourceToConceptEntry(BaseModel):
    """Manually curated mapping for codes outside the standard vocabularies."""

    model_config = ConfigDict(frozen=True)

    source_code: str
    source_concept_id: int = 0
    source_vocabulary_id: Optional[str] = None
    source_code_description: Optional[str] = None
    target_concept_id: int
    target_vocabulary_id: Optional[str] = None
    valid_start_date: Optional[date] = None
    valid_end_date: Optional[date] = None
    invalid_reason: Optional[str] = None


class MappingEntry(BaseModel):
    """One row of a derived cross-vocabulary lookup, keyed by kind and source code.

    ``source_*`` describes the code as found in the resource (ICD, SNOMED vaccine,
    OPS, ATC, LOINC), ``target_*`` the standard concept it maps to. The source
    window tells whether the source code is valid on a date; the mapping window
    tells whether the mapping itself is.
    """

    model_config = ConfigDict(frozen=True)

    kind: MappingKind
    source_code: str
    source_concept_id: int = 0
    target_concept_id: int = 0
    target_domain_id: Optional[str] = None
    source_valid_start_date: Optional[date] = None
    source_valid_end_date: Optional[date] = None
    mapping_valid_start_date: Optional[date] = None
    mapping_valid_end_date: Optional[date] = None

    def source_valid_on(self, validity_date: date) -> bool:
        return _window_covers(self.source_valid_start_date, self.source_valid_end_date, validity_date)

    def mapping_valid_on(self, validity_date: date) -> bool:
        return _window_covers(self.mapping_valid_start_date, self.mapping_valid_end_date, validity_date)


def _window_covers(start: Optional[date], end: Optional[date], validity_date: date) -> bool:
    if start is not None and start > validity_date:
        return False
    if end is not None and end < validity_date:
        return False
    return True


class IdentityRecord(BaseModel):
    """Surrogate id of a person, encounter or medication plus its two natural keys."""

    model_config = ConfigDict(frozen=True)

    kind: IdentityKind
    surrogate_id: int
    logical_id: Optional[str] = None
    external_identifier: Optional[str] = None


# ============================================================================
# Source Resources
# ============================================================================

class SourceResource(BaseModel):
    """One staged FHIR resource as stored in the source staging table."""

    id: int = Field(..., description="Staging row id (read order)")
    fhir_id: str = Field(..., description="FHIR logical id without resource type prefix")
    type: str = Field(..., description="FHIR resource type")
    data: dict[str, Any] = Field(default_factory=dict, description="Parsed FHIR JSON")
    last_updated_at: Optional[datetime] = None
    is_deleted: bool = False


# ============================================================================
# OMOP Target Records
# ============================================================================

class OmopRecord(BaseModel):
    """Base class for records written to the OMOP target schema.

    Subclasses set ``table_name`` and ``primary_key``. A primary key left as None is
    assigned by the writer at commit time.
    """

    table_name: ClassVar[str] = ""
    primary_key: ClassVar[str] = ""

    fhir_logical_id: Optional[str] = None
    fhir_identifier: Optional[str] = None

    def row(self) -> dict[str, Any]:
        """Column values of this record."""
        return self.model_dump()


class Tombstone(BaseModel):
    """Delete marker for the rows of one resource in one table.

    Incremental loads emit tombstones before the new records of a changed resource
    and alone for a resource deleted in the source.
    """

    table_name: str
    fhir_logical_id: Optional[str] = None
    fhir_identifier: Optional[str] = None


class Location(OmopRecord):
    table_name: ClassVar[str] = "location"
    primary_key: ClassVar[str] = "location_id"

    location_id: Optional[int] = None
    city: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None
    location_source_value: Optional[str] = None


class Person(OmopRecord):
    table_name: ClassVar[str] = "person"
    primary_key: ClassVar[str] = "person_id"

    person_id: Optional[int] = None
    gender_concept_id: int = 0
    year_of_birth: Optional[int] = None
    month_of_birth: Optional[int] = None
    day_of_birth: Optional[int] = None
    birth_datetime: Optional[datetime] = None
    race_concept_id: int = 0
    ethnicity_concept_id: int = 0
    location_id: Optional[int] = None
    person_source_value: Optional[str] = None
    gender_source_value: Optional[str] = None
    race_source_value: Optional[str] = None
    race_source_concept_id: Optional[int] = None
    ethnicity_source_value: Optional[str] = None
    ethnicity_source_concept_id: Optional[int] = None


class VisitOccurrence(OmopRecord):
    table_name: ClassVar[str] = "visit_occurrence"
    primary_key: ClassVar[str] = "visit_occurrence_id"

    visit_occurrence_id: Optional[int] = None
    person_id: int
    visit_concept_id: int = 0
    visit_start_date: Optional[date] = None
    visit_start_datetime: Optional[datetime] = None
    visit_end_date: Optional[date] = None
    visit_end_datetime: Optional[datetime] = None
    visit_type_concept_id: int = 0
    visit_source_value: Optional[str] = None
    discharged_to_concept_id: Optional[int] = None


class VisitDetail(OmopRecord):
    table_name: ClassVar[str] = "visit_detail"
    primary_key: ClassVar[str] = "visit_detail_id"

    visit_detail_id: Optional[int] = None
    person_id: int
    visit_occurrence_id: Optional[int] = None
    visit_detail_concept_id: int = 0
    visit_detail_start_date: Optional[date] = None
    visit_detail_start_datetime: Optional[datetime] = None
    visit_detail_end_date: Optional[date] = None
    visit_detail_end_datetime: Optional[datetime] = None
    visit_detail_type_concept_id: int = 0
    visit_detail_source_value: Optional[str] = None


class ConditionOccurrence(OmopRecord):
    table_name: ClassVar[str] = "condition_occurrence"
    primary_key: ClassVar[str] = "condition_occurrence_id"

    condition_occurrence_id: Optional[int] = None
    person_id: int
    visit_occurrence_id: Optional[int] = None
    visit_detail_id: Optional[int] = None
    condition_concept_id: int = 0
    condition_start_date: date
    condition_start_datetime: Optional[datetime] = None
    condition_type_concept_id: int = 0
    condition_source_value: Optional[str] = None
    condition_source_concept_id: Optional[int] = None


class DrugExposure(OmopRecord):
    table_name: ClassVar[str] = "drug_exposure"
    primary_key: ClassVar[str] = "drug_exposure_id"

    drug_exposure_id: Optional[int] = None
    person_id: int
    visit_occurrence_id: Optional[int] = None
    visit_detail_id: Optional[int] = None
    drug_concept_id: int = 0
    drug_exposure_start_date: date
    drug_exposure_start_datetime: Optional[datetime] = None
    drug_exposure_end_date: Optional[date] = None
    drug_exposure_end_datetime: Optional[datetime] = None
    drug_type_concept_id: int = 0
    quantity: Optional[float] = None
    route_concept_id: Optional[int] = None
    route_source_value: Optional[str] = None
    dose_unit_source_value: Optional[str] = None
    drug_source_value: Optional[str] = None
    drug_source_concept_id: Optional[int] = None


class OmopObservation(OmopRecord):
    table_name: ClassVar[str] = "observation"
    primary_key: ClassVar[str] = "observation_id"

    observation_id: Optional[int] = None
    person_id: int
    visit_occurrence_id: Optional[int] = None
    visit_detail_id: Optional[int] = None
    observation_concept_id: int = 0
    observation_date: date
    observation_datetime: Optional[datetime] = None
    observation_type_concept_id: int = 0
    value_as_number: Optional[float] = None
    value_as_string: Optional[str] = None
    value_as_concept_id: Optional[int] = None
    unit_concept_id: Optional[int] = None
    unit_source_value: Optional[str] = None
    observation_source_value: Optional[str] = None
    observation_source_concept_id: Optional[int] = None


class Measurement(OmopRecord):
    table_name: ClassVar[str] = "measurement"
    primary_key: ClassVar[str] = "measurement_id"

    measurement_id: Optional[int] = None
    person_id: int
    visit_occurrence_id: Optional[int] = None
    visit_detail_id: Optional[int] = None
    measurement_concept_id: int = 0
    measurement_date: date
    measurement_datetime: Optional[datetime] = None
    measurement_type_concept_id: int = 0
    value_as_number: Optional[float] = None
    unit_concept_id: Optional[int] = None
    unit_source_value: Optional[str] = None
    measurement_source_value: Optional[str] = None
    measurement_source_concept_id: Optional[int] = None


class ProcedureOccurrence(OmopRecord):
    table_name: ClassVar[str] = "procedure_occurrence"
    primary_key: ClassVar[str] = "procedure_occurrence_id"

    procedure_occurrence_id: Optional[int] = None
    person_id: int
    visit_occurrence_id: Optional[int] = None
    visit_detail_id: Optional[int] = None
    procedure_concept_id: int = 0
    procedure_date: date
    procedure_datetime: Optional[datetime] = None
    procedure_type_concept_id: int = 0
    procedure_source_value: Optional[str] = None
    procedure_source_concept_id: Optional[int] = None


class MedicationIdMap(OmopRecord):
    """Link between a FHIR Medication resource and its ATC code.

    ``fhir_omop_id`` is the surrogate id other medication resources refer to.
    """

    table_name: ClassVar[str] = "medication_id_map"
    primary_key: ClassVar[str] = "fhir_omop_id"

    fhir_omop_id: Optional[int] = None
    type: str = "Medication"
    atc: Optional[str] = None


# Target tables in dependency order (parents first)
TARGET_RECORD_TYPES: tuple[type[OmopRecord], ...] = (
    Location,
    Person,
    VisitOccurrence,
    VisitDetail,
    MedicationIdMap,
    ConditionOccurrence,
    DrugExposure,
    OmopObservation,
    Measurement,
    ProcedureOccurrence,
)
