"""End-to-end loads of staged FHIR resources into an in-memory DuckDB OMOP schema."""

from datetime import date

import pytest

from fhir_to_omop.adapters.concept_sources import CachedQueryConceptSource, InMemoryConceptSource
from fhir_to_omop.adapters.storage.duckdb_adapter import DuckDBAdapter
from fhir_to_omop.domain.models import LoadMode, Person
from fhir_to_omop.domain.services.orchestrator import LoadContext, LoadModeOrchestrator
from fhir_to_omop.main import read_fhir_file

ICD_URL = "http://fhir.de/CodeSystem/bfarm/icd-10-gm"
CONTACT_LEVEL_URL = "http://fhir.de/CodeSystem/Kontaktebene"

PATIENT = {
    "resourceType": "Patient",
    "id": "7",
    "identifier": [{"value": "MRN-7"}],
    "gender": "female",
    "birthDate": "1970-04-02",
}
ENCOUNTER = {
    "resourceType": "Encounter",
    "id": "E1",
    "identifier": [{"value": "V-100"}],
    "status": "finished",
    "class": {"code": "IMP"},
    "type": [{"coding": [{"system": CONTACT_LEVEL_URL, "code": "einrichtungskontakt"}]}],
    "subject": {"reference": "Patient/7"},
    "period": {"start": "2021-03-10T08:00:00", "end": "2021-03-20T12:00:00"},
}
CONDITION = {
    "resourceType": "Condition",
    "id": "c1",
    "verificationStatus": {"coding": [{"code": "confirmed"}]},
    "code": {"coding": [{"system": ICD_URL, "code": "I12.3", "version": "2021"}]},
    "subject": {"reference": "Patient/7"},
    "encounter": {"reference": "Encounter/E1"},
    "onsetDateTime": "2021-03-15",
}


def coded(version):
    return {"coding": [{"system": ICD_URL, "code": "I12.3", "version": version}]}


@pytest.fixture
def adapter():
    adapter = DuckDBAdapter()
    assert adapter.initialize_schema().is_success()
    with adapter._transaction() as cursor:
        cursor.execute(
            "INSERT INTO concept (concept_id, concept_code, vocabulary_id, domain_id, valid_start_date, "
            "valid_end_date) VALUES (44800001, 'I12.3', 'ICD10GM', 'Condition', DATE '2020-01-01', DATE '2021-12-31')"
        )
        cursor.execute(
            "INSERT INTO concept_mapping (kind, source_code, source_concept_id, target_concept_id, target_domain_id, "
            "source_valid_start_date, source_valid_end_date) VALUES "
            "('icd_snomed', 'I12.3', 44800001, 201826, 'Condition', DATE '2020-01-01', DATE '2021-12-31')"
        )
    assert adapter.stage_resources([PATIENT, ENCOUNTER, CONDITION]).is_success()
    yield adapter
    adapter.close()


def bulk_load(adapter, **options):
    options.setdefault("chunk_size", 2)
    context = LoadContext(throttle_limit=2, **options)
    return LoadModeOrchestrator(adapter, InMemoryConceptSource(adapter), context).run()


def incremental_load(adapter, chunk_size=2):
    context = LoadContext(mode=LoadMode.INCREMENTAL, chunk_size=chunk_size)
    return LoadModeOrchestrator(adapter, CachedQueryConceptSource(adapter), context).run()


def conditions(adapter):
    return adapter._fetchall(
        "SELECT person_id, visit_occurrence_id, condition_concept_id, condition_source_concept_id, "
        "condition_start_date, fhir_logical_id FROM condition_occurrence"
    )


class TestBulkLoadEndToEnd:
    """Test a full bulk load against DuckDB."""

    def test_condition_resolved_and_linked(self, adapter):
        """Test the ICD code valid on the onset date maps and references resolve to surrogate ids."""
        summary = bulk_load(adapter)

        assert summary.succeeded, summary.error
        [person_id] = [row[0] for row in adapter._fetchall("SELECT person_id FROM person")]
        [visit_id] = [row[0] for row in adapter._fetchall("SELECT visit_occurrence_id FROM visit_occurrence")]
        assert conditions(adapter) == [(person_id, visit_id, 201826, 44800001, date(2021, 3, 15), "con-c1")]

    def test_derived_tables(self, adapter):
        """Test post processing fills observation periods and condition eras."""
        bulk_load(adapter)

        assert adapter._fetchall(
            "SELECT observation_period_start_date, observation_period_end_date FROM observation_period"
        ) == [(date(2021, 3, 10), date(2021, 3, 20))]
        assert adapter._fetchall(
            "SELECT condition_concept_id, condition_occurrence_count FROM condition_era"
        ) == [(201826, 1)]

    def test_bulk_load_is_repeatable(self, adapter):
        """Test a second bulk load replaces instead of duplicating rows."""
        bulk_load(adapter)
        summary = bulk_load(adapter)

        assert summary.succeeded
        assert len(conditions(adapter)) == 1
        assert adapter._fetchall("SELECT COUNT(*) FROM person")[0][0] == 1

    def test_single_step_rerun(self, adapter):
        """Test re-running the Condition step keeps persons and replaces conditions."""
        bulk_load(adapter)

        summary = bulk_load(adapter, single_step="Condition")

        assert summary.succeeded
        assert summary.post_process_scripts == ["condition_era"]
        assert len(conditions(adapter)) == 1
        assert adapter._fetchall("SELECT COUNT(*) FROM visit_occurrence")[0][0] == 1

    def test_code_outside_validity_window(self, adapter):
        """Test a condition dated after the code expired is skipped."""
        later = dict(CONDITION, id="c2", onsetDateTime="2022-06-01", code=coded("2022"))
        adapter.stage_resources([later])

        summary = bulk_load(adapter)

        condition_step = next(statistics for statistics in summary.steps if statistics.step_name == "Condition")
        assert condition_step.read_count == 2
        assert condition_step.skip_count == 1
        assert [row[5] for row in conditions(adapter)] == ["con-c1"]

    def test_version_year_inside_window(self, adapter):
        """Test a code version still valid at the end of its year is accepted for a later event."""
        later = dict(CONDITION, id="c2", onsetDateTime="2022-06-01", code=coded("2021"))
        adapter.stage_resources([later])

        summary = bulk_load(adapter)

        condition_step = next(statistics for statistics in summary.steps if statistics.step_name == "Condition")
        assert condition_step.skip_count == 0
        rows = sorted(conditions(adapter), key=lambda row: row[5])
        assert [(row[2], row[4], row[5]) for row in rows] == [
            (201826, date(2021, 3, 15), "con-c1"),
            (201826, date(2022, 6, 1), "con-c2"),
        ]


class TestIncrementalLoadEndToEnd:
    """Test incremental loads after a bulk load."""

    def test_changed_resource_replaced(self, adapter):
        """Test a re-staged resource replaces its previous rows and keeps its references."""
        bulk_load(adapter)
        person_id = adapter._fetchall("SELECT person_id FROM person")[0][0]

        summary = incremental_load(adapter)

        assert summary.succeeded, summary.error
        rows = conditions(adapter)
        assert len(rows) == 1
        assert rows[0][0] == person_id
        assert adapter._fetchall("SELECT person_id FROM person") == [(person_id,)]

    def test_deleted_resource_removed(self, adapter):
        """Test a resource deleted in the source removes its target rows."""
        bulk_load(adapter)
        with adapter._transaction() as cursor:
            cursor.execute("UPDATE fhir_resources SET is_deleted = true WHERE fhir_id = 'c1'")

        summary = incremental_load(adapter)

        assert summary.succeeded
        assert conditions(adapter) == []
        assert adapter._fetchall("SELECT COUNT(*) FROM condition_era")[0][0] == 0


class TestRestagedPatient:
    """Test a patient staged more than once before a load."""

    @pytest.mark.parametrize("chunk_size", [1, 2])
    @pytest.mark.parametrize("dictionary_load_in_ram", [True, False])
    def test_bulk_load_writes_one_person(self, adapter, dictionary_load_in_ram, chunk_size):
        """Test both copies share one person_id and the later copy wins."""
        adapter.stage_resources([dict(PATIENT, gender="male")])

        summary = bulk_load(adapter, dictionary_load_in_ram=dictionary_load_in_ram, chunk_size=chunk_size)

        assert summary.succeeded, summary.error
        [(person_id, gender)] = adapter._fetchall("SELECT person_id, gender_source_value FROM person")
        assert gender == "male"
        assert conditions(adapter)[0][0] == person_id

    @pytest.mark.parametrize("chunk_size", [1, 2])
    def test_incremental_load_writes_one_person(self, adapter, chunk_size):
        """Test an incremental load of two copies of a new patient writes one person."""
        adapter.stage_resources([dict(PATIENT, gender="male")])

        summary = incremental_load(adapter, chunk_size=chunk_size)

        assert summary.succeeded, summary.error
        [(person_id, gender)] = adapter._fetchall("SELECT person_id, gender_source_value FROM person")
        assert gender == "male"
        assert conditions(adapter)[0][0] == person_id

    def test_known_patient_restaged(self, adapter):
        """Test a loaded patient staged twice again keeps its person_id."""
        bulk_load(adapter)
        person_id = adapter._fetchall("SELECT person_id FROM person")[0][0]
        adapter.stage_resources([PATIENT, dict(PATIENT, gender="male")])

        summary = incremental_load(adapter)

        assert summary.succeeded, summary.error
        assert adapter._fetchall("SELECT person_id, gender_source_value FROM person") == [(person_id, "male")]


class TestRegisteredPersonCondition:
    """Test a condition of an already registered person coded with an open-ended concept."""

    @pytest.fixture
    def registered(self):
        adapter = DuckDBAdapter()
        assert adapter.initialize_schema().is_success()
        with adapter._transaction() as cursor:
            cursor.execute(
                "INSERT INTO concept (concept_id, concept_code, vocabulary_id, domain_id, valid_start_date, "
                "valid_end_date) VALUES (45591453, 'I12.3', 'ICD10GM', 'Condition', DATE '2015-01-01', "
                "DATE '2099-12-31')"
            )
            cursor.execute(
                "INSERT INTO concept_mapping (kind, source_code, source_concept_id, target_concept_id, "
                "target_domain_id, source_valid_start_date, source_valid_end_date) VALUES ('icd_snomed', 'I12.3', "
                "45591453, 44800001, 'Condition', DATE '2015-01-01', DATE '2099-12-31')"
            )
        assert adapter.write_chunk([
            Person(person_id=42, fhir_logical_id="pat-7", gender_concept_id=8532, year_of_birth=1970),
        ]).is_success()
        condition = {key: value for key, value in CONDITION.items() if key != "encounter"}
        assert adapter.stage_resources([condition]).is_success()
        yield adapter
        adapter.close()

    def test_bulk_step(self, registered):
        """Test a Condition step run resolves the concept and the registered person."""
        summary = bulk_load(registered, single_step="Condition")

        assert summary.succeeded, summary.error
        [row] = conditions(registered)
        assert (row[0], row[2], row[3], row[4]) == (42, 44800001, 45591453, date(2021, 3, 15))

    def test_incremental_load(self, registered):
        """Test an incremental load resolves the same way through store queries."""
        summary = incremental_load(registered)

        assert summary.succeeded, summary.error
        [row] = conditions(registered)
        assert (row[0], row[2]) == (42, 44800001)
        assert registered._fetchall("SELECT person_id FROM person") == [(42,)]


class TestReadFhirFile:
    """Test reading resources to stage."""

    def test_bundle(self, tmp_path):
        """Test the resources of a Bundle are returned."""
        path = tmp_path / "bundle.json"
        path.write_text(
            '{"resourceType": "Bundle", "entry": [{"resource": {"resourceType": "Patient", "id": "7"}}, {}]}'
        )

        assert read_fhir_file(path) == [{"resourceType": "Patient", "id": "7"}]

    def test_ndjson(self, tmp_path):
        """Test one resource per line."""
        path = tmp_path / "resources.ndjson"
        path.write_text('{"resourceType": "Patient", "id": "7"}\n\n{"resourceType": "Condition", "id": "c1"}\n')

        assert [resource["resourceType"] for resource in read_fhir_file(path)] == ["Patient", "Condition"]

    def test_single_resource(self, tmp_path):
        """Test a file holding one resource."""
        path = tmp_path / "patient.json"
        path.write_text('{"resourceType": "Patient", "id": "7"}')

        assert read_fhir_file(path) == [{"resourceType": "Patient", "id": "7"}]

    def test_not_fhir(self, tmp_path):
        """Test entries without resourceType are rejected."""
        path = tmp_path / "data.json"
        path.write_text('[{"id": "7"}]')

        with pytest.raises(ValueError, match="not FHIR resources"):
            read_fhir_file(path)
