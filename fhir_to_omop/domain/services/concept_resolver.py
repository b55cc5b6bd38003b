"""Concept Resolution Service.

Resolves a (code system URL, code) pair to a temporally valid OMOP concept and
resolves codes through the derived cross-vocabulary lookups (ICD-10-GM to SNOMED,
SNOMED vaccine to standard, SNOMED race to standard, OPS/ATC/LOINC to standard)
and through the curated source_to_concept_map.

Outcomes:
    - Unmapped code (vocabulary known, code absent): default concept with id 0, logged
      at INFO. This is the expected steady state for evolving vocabularies.
    - Code present but no validity window covers the validity date:
      NoValidConceptError. The caller skips the resource.
    - Derived lookups return a list of MappingEntry rows; an empty list is a skip
      signal, a missing entry falls back to ``resolve`` and synthesizes one row.

Architecture:
    - Pure domain service; data access goes through the ConceptSource port
    - Code system routing comes from an injected, immutable VocabularyRegistry
    - Thread-safe as long as the ConceptSource is (snapshots are read-only during a stage)
"""

import logging
import re
from datetime import date
from typing import Optional

from fhir_to_omop.domain.constants import (
    CATEGORY_SOURCE_VOCABULARIES,
    CONCEPT_EHR,
    CONCEPT_NO_MATCHING_CONCEPT,
    DEFAULT_DOMAIN_BY_VOCABULARY,
    NO_MEDICATION_CODE_SYSTEM,
    OMOP_DOMAIN_DRUG,
    OMOP_DOMAIN_OBSERVATION,
)
from fhir_to_omop.domain.models import Concept, MappingEntry, MappingKind, SourceToConceptEntry
from fhir_to_omop.domain.ports import ConceptSource, NoValidConceptError
from fhir_to_omop.domain.services.validity import validity_date
from fhir_to_omop.domain.services.vocabulary import VocabularyRegistry

logger = logging.getLogger(__name__)

# Dagger/asterisk/exclamation suffixes of German ICD-10 cross coding
STAR_CROSS_CODING_PATTERN = re.compile(r"[+†*!]")

# Mapping kinds whose rows carry both a source and a mapping validity window
STANDARD_MAPPING_KINDS = (
    MappingKind.OPS_STANDARD,
    MappingKind.ATC_STANDARD,
    MappingKind.LOINC_STANDARD,
)

_LABELS = {
    MappingKind.OPS_STANDARD: "OPS",
    MappingKind.ATC_STANDARD: "ATC",
    MappingKind.LOINC_STANDARD: "LOINC",
}


def _sort_key(concept: Concept) -> date:
    return concept.valid_start_date or date.min


class ConceptResolver:
    """Resolves codes to OMOP concepts honoring validity windows and default rules.

    Parameters:
        registry: Routing table from code system URL to vocabulary id
        concept_source: RAM snapshot or cached live query

    Example Usage:
        ```python
        resolver = ConceptResolver(VocabularyRegistry.default(), concept_source)
        concept = resolver.resolve(
            "http://fhir.de/CodeSystem/bfarm/icd-10-gm", "I12.3",
            code_version="2021", event_date=date(2021, 3, 15)
        )
        ```
    """

    def __init__(self, registry: VocabularyRegistry, concept_source: ConceptSource):
        self.registry = registry
        self.concept_source = concept_source

    # ------------------------------------------------------------------
    # Standard concepts
    # ------------------------------------------------------------------

    def resolve(
        self,
        vocabulary_url: Optional[str],
        code: Optional[str],
        code_version: Optional[str] = None,
        event_date: Optional[date] = None,
        resource_id: Optional[str] = None,
        default_domain: Optional[str] = None,
    ) -> Optional[Concept]:
        """Resolve a coded value to a concept.

        Parameters:
            vocabulary_url: Code system URL of the coding
            code: The code
            code_version: Declared code version (catalogue year)
            event_date: Date of the clinical event; None disables the validity filter
            resource_id: Prefixed logical id of the resource, for logging
            default_domain: Domain of the default concept when the URL is not registered

        Returns:
            Optional[Concept]: None if there is no code, otherwise the valid concept or
                a default concept with id 0

        Raises:
            NoValidConceptError: If the code exists but is not valid on the validity date
        """
        if not code:
            return None

        if vocabulary_url == NO_MEDICATION_CODE_SYSTEM:
            return self.default_concept(code, None, default_domain=OMOP_DOMAIN_DRUG)

        vocabulary_id = self.registry.vocabulary_id(vocabulary_url)
        if vocabulary_id is None:
            logger.info(
                f"Code system [{vocabulary_url}] of {resource_id} is not registered. Set concept id to 0."
            )
            return self.default_concept(code, None, default_domain=default_domain)

        return self.resolve_in_vocabulary(vocabulary_id, code, code_version, event_date, resource_id)

    def resolve_in_vocabulary(
        self,
        vocabulary_id: str,
        code: str,
        code_version: Optional[str] = None,
        event_date: Optional[date] = None,
        resource_id: Optional[str] = None,
    ) -> Concept:
        """Resolve a code inside a known vocabulary (see ``resolve``)."""
        concepts = self.concept_source.lookup(vocabulary_id, code)
        if not concepts:
            logger.info(
                f"Code [{code}] of {resource_id} is not mapped in OMOP. Set concept id to 0."
            )
            return self.default_concept(code, vocabulary_id)

        candidates = sorted(concepts, key=_sort_key)
        check_date = validity_date(code_version, event_date)
        if check_date is None:
            return candidates[0]

        for concept in candidates:
            if concept.is_valid_on(check_date):
                return concept

        logger.warning(
            f"{vocabulary_id} code [{code}] of {resource_id} is not valid in OMOP. Skip resource."
        )
        raise NoValidConceptError(
            f"{vocabulary_id} code [{code}] is not valid on {check_date}",
            code=code,
            vocabulary_id=vocabulary_id,
            resource_id=resource_id,
        )

    @staticmethod
    def default_concept(
        code: str,
        vocabulary_id: Optional[str],
        default_domain: Optional[str] = None,
    ) -> Concept:
        """Concept with id 0 and the vocabulary's default domain, else ``default_domain`` or Observation."""
        domain_id = DEFAULT_DOMAIN_BY_VOCABULARY.get(vocabulary_id, default_domain or OMOP_DOMAIN_OBSERVATION)
        return Concept(
            concept_id=CONCEPT_NO_MATCHING_CONCEPT,
            concept_code=code,
            vocabulary_id=vocabulary_id,
            domain_id=domain_id,
        )

    # ------------------------------------------------------------------
    # Derived cross-vocabulary lookups
    # ------------------------------------------------------------------

    def resolve_icd_to_snomed(
        self,
        vocabulary_url: Optional[str],
        code: Optional[str],
        code_version: Optional[str] = None,
        event_date: Optional[date] = None,
        resource_id: Optional[str] = None,
    ) -> list[MappingEntry]:
        """Resolve an ICD-10-GM code to its SNOMED mapping rows valid on the event date.

        Cross coding markers are stripped before the lookup. An empty list means the
        ICD code is not valid on the validity date.
        """
        if not code:
            return []

        clean_code = STAR_CROSS_CODING_PATTERN.sub("", code)
        if not clean_code:
            return []
        check_date = validity_date(code_version, event_date)

        rows = self.concept_source.lookup_mapping(MappingKind.ICD_SNOMED, clean_code)
        if rows is not None:
            return [row for row in rows if check_date is None or row.source_valid_on(check_date)]

        concept = self.resolve(vocabulary_url, clean_code, code_version, event_date, resource_id)
        return [
            MappingEntry(
                kind=MappingKind.ICD_SNOMED,
                source_code=code,
                source_concept_id=concept.concept_id,
                target_concept_id=CONCEPT_NO_MATCHING_CONCEPT,
                target_domain_id=concept.domain_id,
                source_valid_start_date=concept.valid_start_date,
                source_valid_end_date=concept.valid_end_date,
            )
        ]

    def resolve_vaccine_to_standard(
        self,
        vocabulary_url: Optional[str],
        code: Optional[str],
        code_version: Optional[str] = None,
        event_date: Optional[date] = None,
        resource_id: Optional[str] = None,
    ) -> list[MappingEntry]:
        """Resolve a SNOMED vaccine code to its standard drug concept rows."""
        if not code:
            return []

        check_date = validity_date(code_version, event_date)
        rows = self.concept_source.lookup_mapping(MappingKind.VACCINE_STANDARD, code)
        if rows is not None:
            valid_rows = [row for row in rows if check_date is None or row.source_valid_on(check_date)]
            if not valid_rows:
                logger.warning(f"SNOMED code [{code}] of {resource_id} is not valid in OMOP. Skip resource")
            return valid_rows

        concept = self.resolve(vocabulary_url, code, code_version, event_date, resource_id)
        return [
            MappingEntry(
                kind=MappingKind.VACCINE_STANDARD,
                source_code=code,
                source_concept_id=concept.concept_id,
                target_concept_id=CONCEPT_NO_MATCHING_CONCEPT,
                target_domain_id=OMOP_DOMAIN_DRUG,
            )
        ]

    def resolve_race_to_standard(
        self,
        vocabulary_url: Optional[str],
        code: Optional[str],
        resource_id: Optional[str] = None,
    ) -> Optional[MappingEntry]:
        """Resolve a SNOMED ethnic group code to its standard race concept (no validity date)."""
        if not code:
            return None

        rows = self.concept_source.lookup_mapping(MappingKind.RACE_STANDARD, code)
        if rows:
            return rows[0]

        concept = self.resolve(vocabulary_url, code, resource_id=resource_id)
        return MappingEntry(
            kind=MappingKind.RACE_STANDARD,
            source_code=code,
            source_concept_id=concept.concept_id,
            target_concept_id=CONCEPT_NO_MATCHING_CONCEPT,
            target_domain_id=concept.domain_id,
        )

    def resolve_standard(
        self,
        kind: MappingKind,
        vocabulary_url: Optional[str],
        code: Optional[str],
        code_version: Optional[str] = None,
        event_date: Optional[date] = None,
        resource_id: Optional[str] = None,
    ) -> list[MappingEntry]:
        """Resolve an OPS, ATC or LOINC code to its standard concept rows.

        The source code must be valid on the validity date (else: empty list). If
        none of its mappings is valid on that date, a single row with target concept
        0 is returned so the resource is kept with its source concept.
        """
        if kind not in STANDARD_MAPPING_KINDS:
            raise ValueError(f"{kind} is not a source-to-standard mapping kind")
        if not code:
            return []

        label = _LABELS[kind]
        check_date = validity_date(code_version, event_date)
        rows = self.concept_source.lookup_mapping(kind, code)
        if rows is None:
            return self._default_standard_rows(kind, vocabulary_url, code, code_version, event_date, resource_id)

        if check_date is None:
            return list(rows)

        valid_source = [row for row in rows if row.source_valid_on(check_date)]
        if not valid_source:
            logger.warning(f"{label} code [{code}] of {resource_id} is not valid in OMOP. Skip resource.")
            return []

        valid_mapping = [row for row in valid_source if row.mapping_valid_on(check_date)]
        if not valid_mapping:
            logger.info(
                f"Mapping of {label} code [{code}] of {resource_id} to Standard concept id "
                f"is not valid in OMOP. Set concept id to 0."
            )
            return self._default_standard_rows(kind, vocabulary_url, code, code_version, event_date, resource_id)

        return valid_mapping

    def _default_standard_rows(
        self,
        kind: MappingKind,
        vocabulary_url: Optional[str],
        code: str,
        code_version: Optional[str],
        event_date: Optional[date],
        resource_id: Optional[str],
    ) -> list[MappingEntry]:
        concept = self.resolve(vocabulary_url, code, code_version, event_date, resource_id)
        return [
            MappingEntry(
                kind=kind,
                source_code=code,
                source_concept_id=concept.concept_id,
                target_concept_id=CONCEPT_NO_MATCHING_CONCEPT,
                target_domain_id=concept.domain_id,
            )
        ]

    # ------------------------------------------------------------------
    # Curated source-to-concept entries
    # ------------------------------------------------------------------

    def resolve_custom(self, source_vocabulary_id: str, code: Optional[str]) -> Optional[SourceToConceptEntry]:
        """Resolve a code of a non-standard source vocabulary (categories, routes, ...).

        Returns:
            Optional[SourceToConceptEntry]: None if there is no code; the exact match in
                the vocabulary bucket; otherwise a default entry targeting the EHR
                concept for category vocabularies and concept 0 for the rest
        """
        if not code:
            return None

        entries = self.concept_source.lookup_custom(source_vocabulary_id, code) or []
        for entry in entries:
            if entry.source_code == code:
                return entry

        target = CONCEPT_EHR if source_vocabulary_id in CATEGORY_SOURCE_VOCABULARIES else CONCEPT_NO_MATCHING_CONCEPT
        return SourceToConceptEntry(
            source_code=code,
            source_vocabulary_id=source_vocabulary_id,
            target_concept_id=target,
        )
