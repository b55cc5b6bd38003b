"""Per-resource mappers from FHIR resources to OMOP target records."""

from fhir_to_omop.domain.mappers.base import MappingContext, ResourceMapper, SkipResource
from fhir_to_omop.domain.mappers.condition import ConditionMapper
from fhir_to_omop.domain.mappers.consent import ConsentMapper
from fhir_to_omop.domain.mappers.diagnostic_report import DiagnosticReportMapper
from fhir_to_omop.domain.mappers.encounter import EncounterDepartmentCaseMapper, EncounterInstitutionContactMapper
from fhir_to_omop.domain.mappers.immunization import ImmunizationMapper
from fhir_to_omop.domain.mappers.medication import (
    MedicationAdministrationMapper,
    MedicationMapper,
    MedicationStatementMapper,
)
from fhir_to_omop.domain.mappers.observation import ObservationMapper
from fhir_to_omop.domain.mappers.patient import PatientMapper
from fhir_to_omop.domain.mappers.procedure import ProcedureMapper

__all__ = [
    "MappingContext",
    "ResourceMapper",
    "SkipResource",
    "ConditionMapper",
    "ConsentMapper",
    "DiagnosticReportMapper",
    "EncounterDepartmentCaseMapper",
    "EncounterInstitutionContactMapper",
    "ImmunizationMapper",
    "MedicationAdministrationMapper",
    "MedicationMapper",
    "MedicationStatementMapper",
    "ObservationMapper",
    "PatientMapper",
    "ProcedureMapper",
]
