"""Routing of FHIR code system URLs to OMOP vocabulary ids.

The registry is an explicitly constructed, immutable object handed to the
ConceptResolver. Several URLs may route to the same vocabulary (e.g. the BfArM and
the older DIMDI URLs of ICD-10-GM).
"""

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Union

from fhir_to_omop.domain.constants import (
    SOURCE_VOCABULARY_ID_DIAGNOSTIC_REPORT_CATEGORY,
    SOURCE_VOCABULARY_ID_GENDER,
    SOURCE_VOCABULARY_ID_OBSERVATION_CATEGORY,
    SOURCE_VOCABULARY_ID_PROCEDURE_BODYSITE,
    SOURCE_VOCABULARY_ROUTE,
    VOCABULARY_ATC,
    VOCABULARY_ICD10GM,
    VOCABULARY_LOINC,
    VOCABULARY_OPS,
    VOCABULARY_ORPHA,
    VOCABULARY_SNOMED,
    VOCABULARY_UCUM,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_URLS: dict[str, tuple[str, ...]] = {
    VOCABULARY_LOINC: ("http://loinc.org",),
    VOCABULARY_SNOMED: ("http://snomed.info/sct",),
    VOCABULARY_ICD10GM: (
        "http://fhir.de/CodeSystem/bfarm/icd-10-gm",
        "http://fhir.de/CodeSystem/dimdi/icd-10-gm",
    ),
    VOCABULARY_OPS: (
        "http://fhir.de/CodeSystem/bfarm/ops",
        "http://fhir.de/CodeSystem/dimdi/ops",
    ),
    VOCABULARY_ATC: (
        "http://fhir.de/CodeSystem/bfarm/atc",
        "http://fhir.de/CodeSystem/dimdi/atc",
        "http://www.whocc.no/atc",
    ),
    VOCABULARY_UCUM: ("http://unitsofmeasure.org",),
    VOCABULARY_ORPHA: ("http://www.orpha.net",),
    SOURCE_VOCABULARY_ID_GENDER: ("http://fhir.de/CodeSystem/gender-amtlich-de",),
    SOURCE_VOCABULARY_ID_PROCEDURE_BODYSITE: ("http://fhir.de/CodeSystem/dimdi/seitenlokalisation",),
    SOURCE_VOCABULARY_ROUTE: ("http://standardterms.edqm.eu",),
    SOURCE_VOCABULARY_ID_OBSERVATION_CATEGORY: ("http://terminology.hl7.org/CodeSystem/observation-category",),
    SOURCE_VOCABULARY_ID_DIAGNOSTIC_REPORT_CATEGORY: ("http://terminology.hl7.org/CodeSystem/v2-0074",),
}

DEFAULT_IDENTIFIER_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/v2-0203"
DEFAULT_ETHNIC_GROUP_EXTENSION = "https://www.netzwerk-universitaetsmedizin.de/fhir/StructureDefinition/ethnic-group"


class VocabularyRegistry:
    """Immutable routing table from code system URL to vocabulary id.

    Example Usage:
        ```python
        registry = VocabularyRegistry.default()
        registry.vocabulary_id("http://loinc.org")        # "LOINC"
        registry.urls_for("ICD10GM")                      # both ICD-10-GM URLs
        ```
    """

    __slots__ = ("_by_url", "_by_vocabulary")

    def __init__(self, system_urls: Mapping[str, Iterable[str]]):
        by_url: dict[str, str] = {}
        by_vocabulary: dict[str, tuple[str, ...]] = {}
        for vocabulary_id, urls in system_urls.items():
            urls = tuple(urls)
            by_vocabulary[vocabulary_id] = urls
            for url in urls:
                existing = by_url.get(url)
                if existing is not None and existing != vocabulary_id:
                    raise ValueError(f"System URL {url} routed to both {existing} and {vocabulary_id}")
                by_url[url] = vocabulary_id
        object.__setattr__(self, "_by_url", MappingProxyType(by_url))
        object.__setattr__(self, "_by_vocabulary", MappingProxyType(by_vocabulary))

    def __setattr__(self, name, value):
        raise AttributeError("VocabularyRegistry is immutable")

    @classmethod
    def default(cls) -> "VocabularyRegistry":
        return cls(DEFAULT_SYSTEM_URLS)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "VocabularyRegistry":
        """Load routing from a JSON file ``{"<vocabulary_id>": ["<url>", ...]}``.

        Vocabularies present in the file replace the defaults; others keep them.
        """
        with open(path, "r") as f:
            overrides = json.load(f)
        if not isinstance(overrides, dict):
            raise ValueError(f"Vocabulary routing file must contain a JSON object: {path}")

        merged: dict[str, tuple[str, ...]] = dict(DEFAULT_SYSTEM_URLS)
        for vocabulary_id, urls in overrides.items():
            if isinstance(urls, str):
                urls = [urls]
            merged[vocabulary_id] = tuple(urls)
        logger.info(f"Loaded vocabulary routing for {len(overrides)} vocabularies from {path}")
        return cls(merged)

    def vocabulary_id(self, system_url: Optional[str]) -> Optional[str]:
        """Vocabulary id of a system URL, or None when the URL is not registered."""
        if not system_url:
            return None
        return self._by_url.get(system_url)

    def urls_for(self, vocabulary_id: str) -> tuple[str, ...]:
        return self._by_vocabulary.get(vocabulary_id, ())

    def is_system(self, system_url: Optional[str], vocabulary_id: str) -> bool:
        return system_url is not None and self.vocabulary_id(system_url) == vocabulary_id

    @property
    def vocabulary_ids(self) -> tuple[str, ...]:
        return tuple(self._by_vocabulary)
