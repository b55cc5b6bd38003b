"""Shared fixtures for the FHIR-to-OMOP test suite."""

from collections import defaultdict
from datetime import datetime
from typing import Optional
from unittest.mock import Mock

import pytest

from fhir_to_omop.domain.mappers import MappingContext
from fhir_to_omop.domain.models import (
    Concept,
    IdentityKind,
    LoadMode,
    MappingEntry,
    MappingKind,
    SourceResource,
    SourceToConceptEntry,
)
from fhir_to_omop.domain.ports import ConceptSource
from fhir_to_omop.domain.services.concept_resolver import ConceptResolver
from fhir_to_omop.domain.services.identity_cache import IdMappings
from fhir_to_omop.domain.services.reference_resolver import ReferenceResolver
from fhir_to_omop.domain.services.vocabulary import VocabularyRegistry

ICD_URL = "http://fhir.de/CodeSystem/bfarm/icd-10-gm"
SNOMED_URL = "http://snomed.info/sct"
LOINC_URL = "http://loinc.org"
OPS_URL = "http://fhir.de/CodeSystem/bfarm/ops"
ATC_URL = "http://fhir.de/CodeSystem/bfarm/atc"


class StubConceptSource(ConceptSource):
    """Concept source over plain lists, keyed the way the RAM snapshot is."""

    def __init__(self, concepts=(), mappings=(), custom=()):
        self.concepts = defaultdict(list)
        for concept in concepts:
            self.concepts[(concept.vocabulary_id, concept.concept_code)].append(concept)
        self.mappings = defaultdict(list)
        for entry in mappings:
            self.mappings[(entry.kind, entry.source_code.lower())].append(entry)
        self.custom = defaultdict(list)
        for entry in custom:
            self.custom[(entry.source_vocabulary_id, entry.source_code)].append(entry)
        self.prepared = []
        self.released = 0

    def lookup(self, vocabulary_id: str, code: str) -> Optional[list[Concept]]:
        return self.concepts.get((vocabulary_id, code))

    def lookup_mapping(self, kind: MappingKind, code: str) -> Optional[list[MappingEntry]]:
        return self.mappings.get((kind, code.lower()))

    def lookup_custom(self, source_vocabulary_id: str, code: str) -> Optional[list[SourceToConceptEntry]]:
        return self.custom.get((source_vocabulary_id, code))

    def prepare(self, vocabulary_ids, mapping_kinds) -> None:
        self.prepared.append((tuple(vocabulary_ids), tuple(mapping_kinds)))

    def release(self) -> None:
        self.released += 1


@pytest.fixture
def registry():
    return VocabularyRegistry.default()


NOW = datetime(2024, 5, 1, 12, 0, 0)


def identity_store(persons=None, encounters=None, medications=()):
    """Mock identity store answering lookups from plain dicts keyed by prefixed id."""
    tables = {
        IdentityKind.PERSON: dict(persons or {}),
        IdentityKind.ENCOUNTER: dict(encounters or {}),
    }
    store = Mock()
    store.find_by_logical_id.side_effect = lambda kind, key: tables.get(kind, {}).get(key)
    store.find_by_identifier.side_effect = lambda kind, key: tables.get(kind, {}).get(key)

    def find_medication(logical_id, identifier):
        for medication in medications:
            if logical_id and medication.fhir_logical_id == logical_id:
                return medication
            if identifier and medication.fhir_identifier == identifier:
                return medication
        return None

    store.find_medication.side_effect = find_medication
    store.load_identities.return_value = []
    store.max_surrogate_id.side_effect = lambda kind: max(tables.get(kind, {}).values(), default=0)
    store.load_medications.return_value = list(medications)
    return store


def make_mapping_context(concept_source, store, mode=LoadMode.BULK):
    registry = VocabularyRegistry.default()
    id_mappings = IdMappings()
    resolver = ReferenceResolver(
        mode, False, identity_store=store, reschedule_hook=store, id_mappings=id_mappings, now=lambda: NOW
    )
    return MappingContext(
        concept_resolver=ConceptResolver(registry, concept_source),
        reference_resolver=resolver,
        id_mappings=id_mappings,
        mode=mode,
    )


def source(data, staging_id=1, deleted=False):
    return SourceResource(
        id=staging_id,
        fhir_id=data.get("id", ""),
        type=data["resourceType"],
        data=data,
        is_deleted=deleted,
    )
