"""Unit tests for the concept source adapters."""

from datetime import date
from unittest.mock import Mock

import pytest

from fhir_to_omop.adapters.concept_sources import CachedQueryConceptSource, InMemoryConceptSource
from fhir_to_omop.domain.models import Concept, MappingEntry, MappingKind, SourceToConceptEntry

ICD_CONCEPT = Concept(
    concept_id=44800001, concept_code="I12.3", vocabulary_id="ICD10GM", domain_id="Condition",
    valid_start_date=date(2020, 1, 1), valid_end_date=date(2021, 12, 31),
)
ICD_MAPPING = MappingEntry(
    kind=MappingKind.ICD_SNOMED, source_code="I12.3", source_concept_id=44800001,
    target_concept_id=201826, target_domain_id="Condition",
)
GENDER_ENTRY = SourceToConceptEntry(source_code="other", source_vocabulary_id="Gender", target_concept_id=8521)


@pytest.fixture
def vocabulary_store():
    store = Mock()
    store.load_concepts.return_value = [ICD_CONCEPT]
    store.load_mappings.return_value = [ICD_MAPPING]
    store.load_source_to_concept.return_value = [GENDER_ENTRY]
    store.find_concepts.side_effect = lambda vocabulary_id, code: [ICD_CONCEPT] if code == "I12.3" else []
    store.find_mappings.side_effect = lambda kind, code: [ICD_MAPPING] if code.lower() == "i12.3" else []
    return store


class TestInMemoryConceptSource:
    """Test the per-stage RAM snapshot."""

    def test_prepare_loads_requested_vocabularies(self, vocabulary_store):
        """Test prepare reads only the vocabularies and lookups the stage needs."""
        source = InMemoryConceptSource(vocabulary_store)

        source.prepare(["ICD10GM"], [MappingKind.ICD_SNOMED])

        vocabulary_store.load_concepts.assert_called_once_with(["ICD10GM"])
        vocabulary_store.load_mappings.assert_called_once_with([MappingKind.ICD_SNOMED])
        assert source.lookup("ICD10GM", "I12.3") == [ICD_CONCEPT]
        assert source.lookup("ICD10GM", "I99") is None
        assert source.lookup_custom("Gender", "other") == [GENDER_ENTRY]

    def test_mapping_lookup_ignores_case_and_whitespace(self, vocabulary_store):
        """Test mapped codes are keyed case-insensitively."""
        source = InMemoryConceptSource(vocabulary_store)
        source.prepare([], [MappingKind.ICD_SNOMED])

        assert source.lookup_mapping(MappingKind.ICD_SNOMED, " i12.3 ") == [ICD_MAPPING]
        assert source.lookup_mapping(MappingKind.OPS_STANDARD, "I12.3") is None

    def test_empty_stage_skips_vocabulary_queries(self, vocabulary_store):
        """Test a stage without vocabularies only loads the curated entries."""
        source = InMemoryConceptSource(vocabulary_store)

        source.prepare([], [])

        vocabulary_store.load_concepts.assert_not_called()
        vocabulary_store.load_mappings.assert_not_called()
        vocabulary_store.load_source_to_concept.assert_called_once()

    def test_release_drops_snapshot(self, vocabulary_store):
        """Test release empties every lookup."""
        source = InMemoryConceptSource(vocabulary_store)
        source.prepare(["ICD10GM"], [MappingKind.ICD_SNOMED])

        source.release()

        assert source.lookup("ICD10GM", "I12.3") is None
        assert source.lookup_mapping(MappingKind.ICD_SNOMED, "I12.3") is None
        assert source.lookup_custom("Gender", "other") is None


class TestCachedQueryConceptSource:
    """Test per-code queries behind read-through caches."""

    def test_prepare_loads_only_curated_entries(self, vocabulary_store):
        """Test nothing but source_to_concept_map is read up front."""
        source = CachedQueryConceptSource(vocabulary_store)

        source.prepare(["ICD10GM"], [MappingKind.ICD_SNOMED])

        vocabulary_store.load_concepts.assert_not_called()
        vocabulary_store.load_mappings.assert_not_called()
        assert source.lookup_custom("Gender", "other") == [GENDER_ENTRY]

    def test_hits_are_cached(self, vocabulary_store):
        """Test a code is queried once."""
        source = CachedQueryConceptSource(vocabulary_store)

        assert source.lookup("ICD10GM", "I12.3") == [ICD_CONCEPT]
        assert source.lookup("ICD10GM", "I12.3") == [ICD_CONCEPT]

        vocabulary_store.find_concepts.assert_called_once_with("ICD10GM", "I12.3")
        assert source.cache_size == 1

    def test_misses_are_cached(self, vocabulary_store):
        """Test an unknown code is remembered as absent."""
        source = CachedQueryConceptSource(vocabulary_store)

        assert source.lookup_mapping(MappingKind.ICD_SNOMED, "X99") is None
        assert source.lookup_mapping(MappingKind.ICD_SNOMED, "x99") is None

        vocabulary_store.find_mappings.assert_called_once_with(MappingKind.ICD_SNOMED, "X99")

    def test_release_clears_caches(self, vocabulary_store):
        """Test release forgets cached codes and curated entries."""
        source = CachedQueryConceptSource(vocabulary_store)
        source.prepare([], [])
        source.lookup("ICD10GM", "I12.3")
        source.lookup_mapping(MappingKind.ICD_SNOMED, "I12.3")

        source.release()

        assert source.cache_size == 0
        assert source.lookup_custom("Gender", "other") is None
