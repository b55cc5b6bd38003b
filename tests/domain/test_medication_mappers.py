"""Unit tests for the Medication, MedicationAdministration, MedicationStatement and Immunization mappers."""

from datetime import date, datetime

import pytest

from conftest import ATC_URL, SNOMED_URL, StubConceptSource, identity_store, make_mapping_context, source
from fhir_to_omop.domain.mappers import (
    ImmunizationMapper,
    MedicationAdministrationMapper,
    MedicationMapper,
    MedicationStatementMapper,
)
from fhir_to_omop.domain.models import (
    DrugExposure,
    IdentityKind,
    LoadMode,
    MappingEntry,
    MappingKind,
    MedicationIdMap,
    SourceToConceptEntry,
    Tombstone,
)
from fhir_to_omop.domain.ports import SKIP_INVALID_RESOURCE, SKIP_NO_VALID_CONCEPT

EDQM_URL = "http://standardterms.edqm.eu"


@pytest.fixture
def concept_source():
    return StubConceptSource(
        mappings=[
            MappingEntry(
                kind=MappingKind.ATC_STANDARD, source_code="A10BA02", source_concept_id=21600713,
                target_concept_id=1503297, target_domain_id="Drug",
                source_valid_start_date=date(2015, 1, 1),
            ),
            MappingEntry(
                kind=MappingKind.ATC_STANDARD, source_code="B01AC06", source_concept_id=21600962,
                target_concept_id=1112807, target_domain_id="Drug",
                source_valid_start_date=date(2015, 1, 1), source_valid_end_date=date(2020, 12, 31),
            ),
            MappingEntry(
                kind=MappingKind.VACCINE_STANDARD, source_code="1119349007", source_concept_id=37310269,
                target_concept_id=724907, target_domain_id="Drug",
            ),
        ],
        custom=[
            SourceToConceptEntry(source_code="20053000", source_vocabulary_id="EDQM", target_concept_id=4132161),
        ],
    )


@pytest.fixture
def medications():
    return [MedicationIdMap(fhir_omop_id=3, atc="A10BA02", fhir_logical_id="med-m1", fhir_identifier="med-PZN-1")]


@pytest.fixture
def store(medications):
    return identity_store(persons={"pat-7": 42}, encounters={"enc-E1": 300}, medications=medications)


class TestMedicationMapper:
    """Test Medication to medication_id_map mapping."""

    def medication(self, **overrides):
        data = {
            "resourceType": "Medication",
            "id": "m1",
            "identifier": [{"value": "PZN-1"}],
            "status": "active",
            "code": {"coding": [{"system": ATC_URL, "code": "A10BA02"}]},
        }
        data.update(overrides)
        return data

    def test_bulk_load_assigns_medication_id(self, concept_source, store):
        """Test bulk load allocates the id from the medication mapping."""
        context = make_mapping_context(concept_source, store)
        mapper = MedicationMapper(context)

        [record] = mapper.map(source(self.medication())).value

        assert isinstance(record, MedicationIdMap)
        assert record.atc == "A10BA02"
        assert record.fhir_logical_id == "med-m1"
        assert record.fhir_identifier == "med-PZN-1"
        assert record.fhir_omop_id == context.id_mappings.medications.get("med-PZN-1:med-m1")

    def test_incremental_load_keeps_existing_id(self, concept_source, store):
        """Test an already loaded medication keeps its id in incremental load."""
        store.find_by_logical_id.side_effect = (
            lambda kind, key: 3 if kind == IdentityKind.MEDICATION and key == "med-m1" else None
        )
        mapper = MedicationMapper(make_mapping_context(concept_source, store, LoadMode.INCREMENTAL))

        records = mapper.map(source(self.medication())).value

        assert isinstance(records[0], Tombstone)
        assert records[-1].fhir_omop_id == 3

    def test_missing_atc_code(self, concept_source, store):
        """Test a medication without an ATC code is skipped."""
        mapper = MedicationMapper(make_mapping_context(concept_source, store))
        data = self.medication(code={"coding": [{"system": "urn:pzn", "code": "123"}]})

        assert mapper.map(source(data)).error_type == SKIP_INVALID_RESOURCE

    def test_unacceptable_status(self, concept_source, store):
        """Test medications entered in error are skipped."""
        mapper = MedicationMapper(make_mapping_context(concept_source, store))

        assert mapper.map(source(self.medication(status="entered-in-error"))).error_type == SKIP_INVALID_RESOURCE


class TestMedicationAdministrationMapper:
    """Test MedicationAdministration to drug_exposure mapping."""

    def administration(self, **overrides):
        data = {
            "resourceType": "MedicationAdministration",
            "id": "a1",
            "status": "completed",
            "subject": {"reference": "Patient/7"},
            "context": {"reference": "Encounter/E1"},
            "effectivePeriod": {"start": "2021-03-15T08:00:00", "end": "2021-03-16T08:00:00"},
            "medicationCodeableConcept": {"coding": [{"system": ATC_URL, "code": "A10BA02"}]},
            "dosage": {
                "route": {"coding": [{"system": EDQM_URL, "code": "20053000"}]},
                "dose": {"value": 500, "unit": "mg"},
            },
        }
        data.update(overrides)
        return data

    def test_inline_atc_code(self, concept_source, store):
        """Test an inline ATC code maps to its standard drug concept."""
        mapper = MedicationAdministrationMapper(make_mapping_context(concept_source, store))

        [record] = mapper.map(source(self.administration())).value

        assert isinstance(record, DrugExposure)
        assert record.person_id == 42
        assert record.visit_occurrence_id == 300
        assert record.drug_concept_id == 1503297
        assert record.drug_source_concept_id == 21600713
        assert record.drug_type_concept_id == 32818
        assert record.drug_exposure_start_date == date(2021, 3, 15)
        assert record.drug_exposure_end_date == date(2021, 3, 16)
        assert record.quantity == 500.0
        assert record.dose_unit_source_value == "mg"
        assert record.route_concept_id == 4132161
        assert record.route_source_value == "20053000"
        assert record.fhir_logical_id == "mea-a1"

    def test_referenced_medication(self, concept_source, store):
        """Test the ATC code of a referenced Medication is used when there is no inline code."""
        mapper = MedicationAdministrationMapper(make_mapping_context(concept_source, store))
        data = self.administration(medicationReference={"reference": "Medication/m1"})
        del data["medicationCodeableConcept"]

        [record] = mapper.map(source(data)).value

        assert record.drug_concept_id == 1503297
        assert record.drug_source_value == "A10BA02"

    def test_unresolved_medication_in_bulk_load(self, concept_source, store):
        """Test an unknown medication reference is skipped in bulk load."""
        mapper = MedicationAdministrationMapper(make_mapping_context(concept_source, store))
        data = self.administration(medicationReference={"reference": "Medication/m9"})
        del data["medicationCodeableConcept"]

        assert mapper.map(source(data)).error_type == SKIP_INVALID_RESOURCE

    def test_unresolved_medication_in_incremental_load(self, concept_source, store):
        """Test an unknown medication reference is kept with concept 0 in incremental load."""
        mapper = MedicationAdministrationMapper(make_mapping_context(concept_source, store, LoadMode.INCREMENTAL))
        data = self.administration(medicationReference={"reference": "Medication/m9"})
        del data["medicationCodeableConcept"]

        records = mapper.map(source(data)).value

        record = records[-1]
        assert isinstance(record, DrugExposure)
        assert record.drug_concept_id == 0
        assert record.drug_source_value == "med-m9"

    def test_atc_code_outside_validity_window(self, concept_source, store):
        """Test an expired ATC code skips the administration."""
        mapper = MedicationAdministrationMapper(make_mapping_context(concept_source, store))
        data = self.administration(
            medicationCodeableConcept={"coding": [{"system": ATC_URL, "code": "B01AC06"}]},
        )

        assert mapper.map(source(data)).error_type == SKIP_NO_VALID_CONCEPT

    def test_missing_effective_date(self, concept_source, store):
        """Test an administration without a date is skipped."""
        mapper = MedicationAdministrationMapper(make_mapping_context(concept_source, store))
        data = self.administration()
        del data["effectivePeriod"]

        assert mapper.map(source(data)).error_type == SKIP_INVALID_RESOURCE

    def test_end_date_defaults_to_start_date(self, concept_source, store):
        """Test a point in time administration ends on its start date."""
        mapper = MedicationAdministrationMapper(make_mapping_context(concept_source, store))
        data = self.administration(effectiveDateTime="2021-03-15T08:00:00")
        del data["effectivePeriod"]

        [record] = mapper.map(source(data)).value

        assert record.drug_exposure_end_date == date(2021, 3, 15)
        assert record.drug_exposure_end_datetime is None


class TestMedicationStatementMapper:
    """Test MedicationStatement to drug_exposure mapping."""

    def statement(self, **overrides):
        data = {
            "resourceType": "MedicationStatement",
            "id": "s1",
            "status": "active",
            "subject": {"reference": "Patient/7"},
            "effectiveDateTime": "2021-03-20",
            "medicationCodeableConcept": {"coding": [{"system": ATC_URL, "code": "A10BA02"}]},
            "dosage": [{"doseAndRate": [{"doseQuantity": {"value": 2, "unit": "Tabl."}}]}],
        }
        data.update(overrides)
        return data

    def test_statement(self, concept_source, store):
        """Test a statement becomes a drug_exposure of the medication list type."""
        mapper = MedicationStatementMapper(make_mapping_context(concept_source, store))

        [record] = mapper.map(source(self.statement())).value

        assert record.drug_type_concept_id == 32830
        assert record.quantity == 2.0
        assert record.dose_unit_source_value == "Tabl."
        assert record.route_concept_id is None
        assert record.visit_occurrence_id is None
        assert record.fhir_logical_id == "mes-s1"

    def test_missing_status(self, concept_source, store):
        """Test a statement without status is skipped."""
        mapper = MedicationStatementMapper(make_mapping_context(concept_source, store))
        data = self.statement()
        del data["status"]

        assert mapper.map(source(data)).error_type == SKIP_INVALID_RESOURCE


class TestImmunizationMapper:
    """Test Immunization to drug_exposure mapping."""

    def immunization(self, **overrides):
        data = {
            "resourceType": "Immunization",
            "id": "i1",
            "status": "completed",
            "patient": {"reference": "Patient/7"},
            "occurrenceDateTime": "2021-05-01T10:00:00",
            "vaccineCode": {"coding": [{"system": SNOMED_URL, "code": "1119349007"}]},
            "doseQuantity": {"value": 0.3, "unit": "mL"},
        }
        data.update(overrides)
        return data

    def test_snomed_vaccine(self, concept_source, store):
        """Test a SNOMED vaccine code maps through the vaccine lookup."""
        mapper = ImmunizationMapper(make_mapping_context(concept_source, store))

        [record] = mapper.map(source(self.immunization())).value

        assert isinstance(record, DrugExposure)
        assert record.drug_concept_id == 724907
        assert record.drug_source_concept_id == 37310269
        assert record.drug_type_concept_id == 32817
        assert record.drug_exposure_start_datetime == datetime(2021, 5, 1, 10, 0)
        assert record.drug_exposure_end_date == date(2021, 5, 1)
        assert record.quantity == 0.3
        assert record.fhir_logical_id == "imm-i1"

    def test_atc_code_wins(self, concept_source, store):
        """Test the ATC coding is preferred over the SNOMED coding."""
        mapper = ImmunizationMapper(make_mapping_context(concept_source, store))
        data = self.immunization(vaccineCode={"coding": [
            {"system": SNOMED_URL, "code": "1119349007"},
            {"system": ATC_URL, "code": "A10BA02"},
        ]})

        [record] = mapper.map(source(data)).value

        assert record.drug_concept_id == 1503297

    def test_missing_vaccine_code(self, concept_source, store):
        """Test an immunization without a vaccine code is skipped."""
        mapper = ImmunizationMapper(make_mapping_context(concept_source, store))

        assert mapper.map(source(self.immunization(vaccineCode={}))).error_type == SKIP_INVALID_RESOURCE

    def test_not_done(self, concept_source, store):
        """Test vaccinations that were not done are skipped."""
        mapper = ImmunizationMapper(make_mapping_context(concept_source, store))

        assert mapper.map(source(self.immunization(status="not-done"))).error_type == SKIP_INVALID_RESOURCE
