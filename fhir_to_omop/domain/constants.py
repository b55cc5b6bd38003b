"""Domain constants shared by the resolvers, mappers and the orchestrator.

Concept ids follow the OMOP standard vocabulary. Vocabulary and domain ids are the
values stored in the ``concept.vocabulary_id`` and ``concept.domain_id`` columns.
"""

from datetime import date

# ============================================================================
# Concept ids
# ============================================================================

CONCEPT_NO_MATCHING_CONCEPT = 0
CONCEPT_EHR = 32817
CONCEPT_EHR_ADMINISTRATION_RECORD = 32818
CONCEPT_EHR_MEDICATION_LIST = 32830
CONCEPT_STILL_PATIENT = 32220
CONCEPT_INPATIENT = 9201
CONCEPT_OUTPATIENT = 9202
CONCEPT_EMERGENCY_ROOM = 9203
CONCEPT_GENDER_MALE = 8507
CONCEPT_GENDER_FEMALE = 8532
CONCEPT_GENDER_UNKNOWN = 4214687
CONCEPT_UNKNOWN_RACIAL_GROUP = 4218674
CONCEPT_HISPANIC_OR_LATINO = 38003563
CONCEPT_RESUSCITATION_STATUS = 4127294
CONCEPT_FOR_RESUSCITATION = 4126324
CONCEPT_NOT_FOR_RESUSCITATION = 4119499

# ============================================================================
# Vocabulary ids
# ============================================================================

VOCABULARY_ICD10GM = "ICD10GM"
VOCABULARY_UCUM = "UCUM"
VOCABULARY_LOINC = "LOINC"
VOCABULARY_ATC = "ATC"
VOCABULARY_OPS = "OPS"
VOCABULARY_SNOMED = "SNOMED"
VOCABULARY_ORPHA = "ORPHA"
VOCABULARY_IPRD = "IPRD"
VOCABULARY_WHO = "WHO"

# Source vocabularies kept in source_to_concept_map
SOURCE_VOCABULARY_ID_GENDER = "Gender"
SOURCE_VOCABULARY_ID_PROCEDURE_BODYSITE = "Procedure Bodysite"
SOURCE_VOCABULARY_ROUTE = "EDQM"
SOURCE_VOCABULARY_ID_OBSERVATION_CATEGORY = "Observation Category"
SOURCE_VOCABULARY_ID_PROCEDURE_DICOM = "Procedure DICOM"
SOURCE_VOCABULARY_ID_ECRF_PARAMETER = "ECRF Parameter"
SOURCE_VOCABULARY_SOFA_CATEGORY = "SOFA category"
SOURCE_VOCABULARY_ID_DIAGNOSTIC_REPORT_CATEGORY = "Diag.Rep Category"
SOURCE_VOCABULARY_ID_VISIT_TYPE = "Visit Type"
SOURCE_VOCABULARY_ID_VISIT_STATUS = "Visit Status"

# Category-like source vocabularies default to "EHR" instead of "no matching concept"
CATEGORY_SOURCE_VOCABULARIES = frozenset({
    SOURCE_VOCABULARY_ID_OBSERVATION_CATEGORY,
    SOURCE_VOCABULARY_ID_DIAGNOSTIC_REPORT_CATEGORY,
})

# ============================================================================
# Domain ids
# ============================================================================

OMOP_DOMAIN_CONDITION = "Condition"
OMOP_DOMAIN_OBSERVATION = "Observation"
OMOP_DOMAIN_MEASUREMENT = "Measurement"
OMOP_DOMAIN_PROCEDURE = "Procedure"
OMOP_DOMAIN_DRUG = "Drug"
OMOP_DOMAIN_GENDER = "Gender"

DEFAULT_DOMAIN_BY_VOCABULARY = {
    VOCABULARY_LOINC: OMOP_DOMAIN_OBSERVATION,
    VOCABULARY_SNOMED: OMOP_DOMAIN_OBSERVATION,
    VOCABULARY_ICD10GM: OMOP_DOMAIN_CONDITION,
    VOCABULARY_ORPHA: OMOP_DOMAIN_CONDITION,
    VOCABULARY_OPS: OMOP_DOMAIN_PROCEDURE,
    VOCABULARY_ATC: OMOP_DOMAIN_DRUG,
}

# ============================================================================
# FHIR resource types and step names
# ============================================================================

FHIR_RESOURCE_PATIENT = "Patient"
FHIR_RESOURCE_ENCOUNTER = "Encounter"
FHIR_RESOURCE_DEPARTMENT_CASE = "DepartmentCase"
FHIR_RESOURCE_MEDICATION = "Medication"
FHIR_RESOURCE_MEDICATION_ADMINISTRATION = "MedicationAdministration"
FHIR_RESOURCE_MEDICATION_STATEMENT = "MedicationStatement"
FHIR_RESOURCE_CONDITION = "Condition"
FHIR_RESOURCE_OBSERVATION = "Observation"
FHIR_RESOURCE_PROCEDURE = "Procedure"
FHIR_RESOURCE_IMMUNIZATION = "Immunization"
FHIR_RESOURCE_CONSENT = "Consent"
FHIR_RESOURCE_DIAGNOSTIC_REPORT = "DiagnosticReport"

STEP_ALL = "All"

# Steps that can be re-run on their own during a bulk load
SINGLE_STEP_NAMES = (
    FHIR_RESOURCE_OBSERVATION,
    FHIR_RESOURCE_CONDITION,
    FHIR_RESOURCE_PROCEDURE,
    FHIR_RESOURCE_MEDICATION_ADMINISTRATION,
    FHIR_RESOURCE_MEDICATION_STATEMENT,
    FHIR_RESOURCE_DEPARTMENT_CASE,
    FHIR_RESOURCE_IMMUNIZATION,
    FHIR_RESOURCE_CONSENT,
    FHIR_RESOURCE_DIAGNOSTIC_REPORT,
)

# Encounter type codes separating institution contacts from department cases
ENCOUNTER_INSTITUTION_CONTACT_CODE = "einrichtungskontakt"
ENCOUNTER_DEPARTMENT_CASE_CODE = "abteilungskontakt"

FHIR_RESOURCE_MEDICATION_ACCEPTABLE_STATUS_LIST = ("active", "inactive")
FHIR_RESOURCE_ACCEPTABLE_EVENT_STATUS_LIST = ("in-progress", "on-hold", "completed")
FHIR_RESOURCE_ENCOUNTER_ACCEPTABLE_STATUS_LIST = ("arrived", "triaged", "in-progress", "onleave", "finished", "unknown")
FHIR_RESOURCE_MEDICATION_STATEMENT_ACCEPTABLE_STATUS_LIST = (
    "active",
    "completed",
    "on-hold",
    "entered-in-error",
    "intended",
    "stopped",
    "unknown",
    "not-taken",
)
FHIR_RESOURCE_CONSENT_ACCEPTABLE_STATUS_LIST = ("active",)
FHIR_RESOURCE_OBSERVATION_ACCEPTABLE_STATUS_LIST = ("final",)
FHIR_RESOURCE_CONDITION_ACCEPTABLE_STATUS_LIST = ("confirmed", "410605003")
FHIR_RESOURCE_DIAGNOSTIC_REPORT_ACCEPTABLE_STATUS_LIST = ("final", "amended", "corrected", "appended")

# ============================================================================
# Dates
# ============================================================================

DEFAULT_BEGIN_DATE = date(1800, 1, 1)
DEFAULT_END_DATE = date(2099, 12, 31)

# Days a resource with an unresolved reference is pushed into the future
RESCHEDULE_DELAY_DAYS = 1

# Marker system used when a medication resource carries no code at all
NO_MEDICATION_CODE_SYSTEM = "http://no-medication-code-found"

# ============================================================================
# Patient
# ============================================================================

ETHNICITY_SOURCE_HISPANIC_OR_LATINO = "2135-2"
ETHNICITY_SOURCE_MIXED = "26242008"

MAX_SOURCE_VALUE_LENGTH = 50
MAX_LOCATION_ZIP_LENGTH = 9
MAX_LOCATION_CITY_LENGTH = 50
MAX_LOCATION_COUNTRY_LENGTH = 2

# ============================================================================
# Consent (resuscitation status)
# ============================================================================

CONSENT_CATEGORY_SYSTEM = "http://terminology.hl7.org/CodeSystem/consentcategorycodes"
CONSENT_CATEGORY_DNR = "dnr"
SNOMED_FOR_RESUSCITATION = "304252001"
SNOMED_NOT_FOR_RESUSCITATION = "304253006"
