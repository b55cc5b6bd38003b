"""Concept Source Adapters.

Two implementations of the ConceptSource port over a VocabularyStore:

    - InMemoryConceptSource: per-stage RAM snapshot of the vocabularies and derived
      mappings the stage needs (bulk load with RAM dictionaries)
    - CachedQueryConceptSource: per-code database queries behind explicit
      read-through caches (incremental load, or bulk load without RAM dictionaries)

Both load the curated source_to_concept_map entries when a stage starts and drop
everything when it ends.

Architecture:
    - Snapshots are built before a stage and read-only while it runs
    - Read-through caches are lock-protected; a miss is cached as "absent" because
      vocabulary tables do not change during a run
"""

import logging
from collections import defaultdict
from threading import Lock
from typing import Optional, Sequence

from fhir_to_omop.domain.models import Concept, MappingEntry, MappingKind, SourceToConceptEntry
from fhir_to_omop.domain.ports import ConceptSource, VocabularyStore

logger = logging.getLogger(__name__)


def _mapping_key(code: str) -> str:
    return code.strip().lower()


class _SourceToConceptMixin:
    """Curated entries grouped by (source vocabulary, code)."""

    def _load_custom(self, store: VocabularyStore) -> int:
        grouped: dict[tuple, list[SourceToConceptEntry]] = defaultdict(list)
        entries = store.load_source_to_concept()
        for entry in entries:
            grouped[(entry.source_vocabulary_id, entry.source_code)].append(entry)
        self._custom = dict(grouped)
        return len(entries)

    def lookup_custom(self, source_vocabulary_id: str, code: str) -> Optional[list[SourceToConceptEntry]]:
        return self._custom.get((source_vocabulary_id, code))


class InMemoryConceptSource(_SourceToConceptMixin, ConceptSource):
    """RAM snapshot of concepts and derived mappings, rebuilt for every stage.

    Parameters:
        store: Vocabulary tables of the target database

    Example Usage:
        ```python
        source = InMemoryConceptSource(adapter)
        source.prepare(["ICD10GM", "SNOMED"], [MappingKind.ICD_SNOMED])
        source.lookup("ICD10GM", "I12.3")
        source.release()
        ```
    """

    def __init__(self, store: VocabularyStore):
        self.store = store
        self._concepts: dict[tuple[str, str], list[Concept]] = {}
        self._mappings: dict[tuple[MappingKind, str], list[MappingEntry]] = {}
        self._custom: dict[tuple, list[SourceToConceptEntry]] = {}

    def prepare(self, vocabulary_ids: Sequence[str], mapping_kinds: Sequence[MappingKind]) -> None:
        concepts: dict[tuple[str, str], list[Concept]] = defaultdict(list)
        if vocabulary_ids:
            for concept in self.store.load_concepts(list(vocabulary_ids)):
                concepts[(concept.vocabulary_id, concept.concept_code)].append(concept)

        mappings: dict[tuple[MappingKind, str], list[MappingEntry]] = defaultdict(list)
        if mapping_kinds:
            for entry in self.store.load_mappings(list(mapping_kinds)):
                mappings[(entry.kind, _mapping_key(entry.source_code))].append(entry)

        self._concepts = dict(concepts)
        self._mappings = dict(mappings)
        custom_count = self._load_custom(self.store)
        logger.info(
            f"Loaded {len(self._concepts)} codes of {list(vocabulary_ids)}, {len(self._mappings)} mapped codes "
            f"of {[kind.value for kind in mapping_kinds]} and {custom_count} source_to_concept_map entries into RAM"
        )

    def release(self) -> None:
        self._concepts = {}
        self._mappings = {}
        self._custom = {}

    def lookup(self, vocabulary_id: str, code: str) -> Optional[list[Concept]]:
        return self._concepts.get((vocabulary_id, code))

    def lookup_mapping(self, kind: MappingKind, code: str) -> Optional[list[MappingEntry]]:
        return self._mappings.get((kind, _mapping_key(code)))


class CachedQueryConceptSource(_SourceToConceptMixin, ConceptSource):
    """Per-code vocabulary queries with explicit read-through caches.

    Parameters:
        store: Vocabulary tables of the target database
    """

    def __init__(self, store: VocabularyStore):
        self.store = store
        self._concept_cache: dict[tuple[str, str], Optional[list[Concept]]] = {}
        self._mapping_cache: dict[tuple[MappingKind, str], Optional[list[MappingEntry]]] = {}
        self._custom: dict[tuple, list[SourceToConceptEntry]] = {}
        self._lock = Lock()

    def prepare(self, vocabulary_ids: Sequence[str], mapping_kinds: Sequence[MappingKind]) -> None:
        custom_count = self._load_custom(self.store)
        logger.info(f"Loaded {custom_count} source_to_concept_map entries")

    def release(self) -> None:
        with self._lock:
            self._concept_cache.clear()
            self._mapping_cache.clear()
        self._custom = {}

    def lookup(self, vocabulary_id: str, code: str) -> Optional[list[Concept]]:
        key = (vocabulary_id, code)
        with self._lock:
            if key in self._concept_cache:
                return self._concept_cache[key]

        concepts = self.store.find_concepts(vocabulary_id, code) or None
        with self._lock:
            self._concept_cache[key] = concepts
        return concepts

    def lookup_mapping(self, kind: MappingKind, code: str) -> Optional[list[MappingEntry]]:
        key = (kind, _mapping_key(code))
        with self._lock:
            if key in self._mapping_cache:
                return self._mapping_cache[key]

        rows = self.store.find_mappings(kind, code) or None
        with self._lock:
            self._mapping_cache[key] = rows
        return rows

    @property
    def cache_size(self) -> int:
        with self._lock:
            return len(self._concept_cache) + len(self._mapping_cache)
