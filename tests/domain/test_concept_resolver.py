"""Unit tests for ConceptResolver."""

from datetime import date

import pytest

from conftest import ATC_URL, ICD_URL, LOINC_URL, OPS_URL, SNOMED_URL, StubConceptSource
from fhir_to_omop.domain.models import Concept, MappingEntry, MappingKind, SourceToConceptEntry
from fhir_to_omop.domain.ports import NoValidConceptError
from fhir_to_omop.domain.services.concept_resolver import ConceptResolver


def icd_concept(concept_id, start, end, code="I12.3"):
    return Concept(
        concept_id=concept_id,
        concept_code=code,
        vocabulary_id="ICD10GM",
        domain_id="Condition",
        valid_start_date=start,
        valid_end_date=end,
    )


@pytest.fixture
def icd_source():
    return StubConceptSource(concepts=[
        icd_concept(44800002, date(2022, 1, 1), date(2099, 12, 31)),
        icd_concept(44800001, date(2020, 1, 1), date(2021, 12, 31)),
    ])


class TestResolve:
    """Test resolution of (system URL, code) pairs."""

    def test_resolves_concept_valid_on_event_date(self, registry, icd_source):
        """Test the concept whose window covers the event date is returned."""
        resolver = ConceptResolver(registry, icd_source)

        concept = resolver.resolve(ICD_URL, "I12.3", code_version="2021", event_date=date(2021, 3, 15))

        assert concept.concept_id == 44800001

    def test_version_year_selects_catalogue(self, registry, icd_source):
        """Test a code from the 2022 catalogue is checked on 2022-12-31."""
        resolver = ConceptResolver(registry, icd_source)

        concept = resolver.resolve(ICD_URL, "I12.3", code_version="2022", event_date=date(2021, 3, 15))

        assert concept.concept_id == 44800002

    def test_no_event_date_returns_earliest_window(self, registry, icd_source):
        """Test without event date the concept with the earliest start is returned."""
        resolver = ConceptResolver(registry, icd_source)

        concept = resolver.resolve(ICD_URL, "I12.3")

        assert concept.concept_id == 44800001

    def test_code_not_valid_raises(self, registry, icd_source):
        """Test a known code outside every validity window is rejected."""
        resolver = ConceptResolver(registry, icd_source)

        with pytest.raises(NoValidConceptError) as exc_info:
            resolver.resolve(ICD_URL, "I12.3", event_date=date(2019, 6, 1), resource_id="con-1")

        assert exc_info.value.code == "I12.3"
        assert exc_info.value.vocabulary_id == "ICD10GM"
        assert exc_info.value.resource_id == "con-1"

    def test_unmapped_code_gets_default_concept(self, registry, icd_source):
        """Test an unknown code maps to concept 0 in the vocabulary's default domain."""
        resolver = ConceptResolver(registry, icd_source)

        concept = resolver.resolve(ICD_URL, "X99.9", event_date=date(2021, 3, 15))

        assert concept.concept_id == 0
        assert concept.vocabulary_id == "ICD10GM"
        assert concept.domain_id == "Condition"

    def test_unknown_system_gets_default_concept(self, registry, icd_source):
        """Test an unregistered code system maps to concept 0."""
        resolver = ConceptResolver(registry, icd_source)

        concept = resolver.resolve("http://example.org/local", "abc", default_domain="Measurement")

        assert concept.concept_id == 0
        assert concept.vocabulary_id is None
        assert concept.domain_id == "Measurement"

    def test_default_concept_without_vocabulary_domain(self):
        """Test vocabularies without a default domain fall back to the given domain or Observation."""
        assert ConceptResolver.default_concept("mg", "UCUM").domain_id == "Observation"
        assert ConceptResolver.default_concept("male", "Gender").domain_id == "Observation"
        assert ConceptResolver.default_concept("mg", "UCUM", default_domain="Measurement").domain_id == "Measurement"
        assert ConceptResolver.default_concept("1234-5", "LOINC", default_domain="Measurement").domain_id == "Observation"

    def test_missing_code(self, registry, icd_source):
        """Test a coding without code resolves to None."""
        resolver = ConceptResolver(registry, icd_source)

        assert resolver.resolve(ICD_URL, None) is None
        assert resolver.resolve(ICD_URL, "") is None

    def test_no_medication_code_marker(self, registry):
        """Test the no-medication-code marker yields a drug default concept."""
        resolver = ConceptResolver(registry, StubConceptSource())

        concept = resolver.resolve("http://no-medication-code-found", "unknown")

        assert concept.concept_id == 0
        assert concept.domain_id == "Drug"


class TestIcdToSnomed:
    """Test ICD-10-GM to SNOMED resolution."""

    def test_strips_cross_coding_markers(self, registry):
        """Test dagger and asterisk markers are removed before the lookup."""
        source = StubConceptSource(mappings=[
            MappingEntry(
                kind=MappingKind.ICD_SNOMED,
                source_code="E10.30",
                source_concept_id=1,
                target_concept_id=2,
                source_valid_start_date=date(2020, 1, 1),
            )
        ])
        resolver = ConceptResolver(registry, source)

        rows = resolver.resolve_icd_to_snomed(ICD_URL, "E10.30†", event_date=date(2021, 1, 1))

        assert [row.target_concept_id for row in rows] == [2]

    def test_filters_rows_by_source_validity(self, registry):
        """Test only rows whose source window covers the validity date are kept."""
        source = StubConceptSource(mappings=[
            MappingEntry(
                kind=MappingKind.ICD_SNOMED, source_code="I10", target_concept_id=10,
                source_valid_start_date=date(2010, 1, 1), source_valid_end_date=date(2015, 12, 31),
            ),
            MappingEntry(
                kind=MappingKind.ICD_SNOMED, source_code="I10", target_concept_id=20,
                source_valid_start_date=date(2016, 1, 1),
            ),
        ])
        resolver = ConceptResolver(registry, source)

        rows = resolver.resolve_icd_to_snomed(ICD_URL, "I10", event_date=date(2021, 5, 1))

        assert [row.target_concept_id for row in rows] == [20]

    def test_no_valid_row_is_empty(self, registry):
        """Test an ICD code invalid on the validity date yields no rows."""
        source = StubConceptSource(mappings=[
            MappingEntry(
                kind=MappingKind.ICD_SNOMED, source_code="I10", target_concept_id=10,
                source_valid_end_date=date(2015, 12, 31),
            ),
        ])
        resolver = ConceptResolver(registry, source)

        assert resolver.resolve_icd_to_snomed(ICD_URL, "I10", event_date=date(2021, 5, 1)) == []

    def test_falls_back_to_icd_concept(self, registry, icd_source):
        """Test a code without SNOMED mapping keeps its ICD concept and target 0."""
        resolver = ConceptResolver(registry, icd_source)

        rows = resolver.resolve_icd_to_snomed(ICD_URL, "I12.3", code_version="2021", event_date=date(2021, 3, 15))

        assert len(rows) == 1
        assert rows[0].source_concept_id == 44800001
        assert rows[0].target_concept_id == 0
        assert rows[0].target_domain_id == "Condition"


class TestStandardMappings:
    """Test OPS/ATC/LOINC to standard resolution."""

    def test_valid_mapping(self, registry):
        """Test rows with valid source and mapping windows are returned."""
        source = StubConceptSource(mappings=[
            MappingEntry(
                kind=MappingKind.LOINC_STANDARD, source_code="718-7", source_concept_id=3000963,
                target_concept_id=3000963, target_domain_id="Measurement",
            ),
        ])
        resolver = ConceptResolver(registry, source)

        rows = resolver.resolve_standard(MappingKind.LOINC_STANDARD, LOINC_URL, "718-7", event_date=date(2021, 1, 1))

        assert rows[0].target_domain_id == "Measurement"

    def test_invalid_source_is_skip(self, registry):
        """Test an OPS code not valid on the date yields no rows."""
        source = StubConceptSource(mappings=[
            MappingEntry(
                kind=MappingKind.OPS_STANDARD, source_code="5-470.11", target_concept_id=5,
                source_valid_end_date=date(2018, 12, 31),
            ),
        ])
        resolver = ConceptResolver(registry, source)

        rows = resolver.resolve_standard(MappingKind.OPS_STANDARD, OPS_URL, "5-470.11", event_date=date(2021, 1, 1))

        assert rows == []

    def test_expired_mapping_keeps_source_concept(self, registry):
        """Test an expired mapping falls back to the source concept with target 0."""
        source = StubConceptSource(
            concepts=[Concept(concept_id=21600001, concept_code="A10BA02", vocabulary_id="ATC", domain_id="Drug")],
            mappings=[
                MappingEntry(
                    kind=MappingKind.ATC_STANDARD, source_code="A10BA02", target_concept_id=1503297,
                    mapping_valid_end_date=date(2019, 12, 31),
                ),
            ],
        )
        resolver = ConceptResolver(registry, source)

        rows = resolver.resolve_standard(MappingKind.ATC_STANDARD, ATC_URL, "A10BA02", event_date=date(2021, 1, 1))

        assert len(rows) == 1
        assert rows[0].source_concept_id == 21600001
        assert rows[0].target_concept_id == 0

    def test_rejects_other_kinds(self, registry):
        """Test only source-to-standard kinds are accepted."""
        resolver = ConceptResolver(registry, StubConceptSource())

        with pytest.raises(ValueError):
            resolver.resolve_standard(MappingKind.ICD_SNOMED, ICD_URL, "I10")


class TestVaccineAndRace:
    """Test the SNOMED vaccine and race lookups."""

    def test_vaccine_without_mapping_defaults_to_drug(self, registry):
        """Test a vaccine code without mapping row yields a drug row with target 0."""
        resolver = ConceptResolver(registry, StubConceptSource())

        rows = resolver.resolve_vaccine_to_standard(SNOMED_URL, "836398006", event_date=date(2021, 1, 1))

        assert rows[0].target_concept_id == 0
        assert rows[0].target_domain_id == "Drug"

    def test_race_mapping(self, registry):
        """Test the first race mapping row is returned."""
        source = StubConceptSource(mappings=[
            MappingEntry(kind=MappingKind.RACE_STANDARD, source_code="14045001", target_concept_id=8516),
        ])
        resolver = ConceptResolver(registry, source)

        entry = resolver.resolve_race_to_standard(SNOMED_URL, "14045001")

        assert entry.target_concept_id == 8516


class TestCustomMappings:
    """Test curated source_to_concept_map lookups."""

    def test_exact_match(self, registry):
        """Test an exact code match in the vocabulary bucket is returned."""
        source = StubConceptSource(custom=[
            SourceToConceptEntry(source_code="laboratory", source_vocabulary_id="Observation Category", target_concept_id=32856),
        ])
        resolver = ConceptResolver(registry, source)

        entry = resolver.resolve_custom("Observation Category", "laboratory")

        assert entry.target_concept_id == 32856

    def test_category_default_is_ehr(self, registry):
        """Test a category vocabulary defaults to the EHR concept."""
        resolver = ConceptResolver(registry, StubConceptSource())

        assert resolver.resolve_custom("Observation Category", "survey").target_concept_id == 32817

    def test_other_default_is_zero(self, registry):
        """Test other source vocabularies default to concept 0."""
        resolver = ConceptResolver(registry, StubConceptSource())

        assert resolver.resolve_custom("EDQM", "20053000").target_concept_id == 0
        assert resolver.resolve_custom("EDQM", None) is None
