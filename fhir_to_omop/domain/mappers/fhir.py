"""Helpers for reading FHIR resources held as parsed JSON dicts.

Logical ids and identifiers are stored in OMOP with a resource type prefix so keys of
different resource types never collide: the first three letters of the type
(``con-`` for Condition), four for Consent (``cons-``), and for two-word types two
letters of the first word plus one of the second (``mea-`` for
MedicationAdministration). References to patients, encounters and medications
carry ``pat-``, ``enc-`` and ``med-``.
"""

import logging
import re
from datetime import date, datetime
from typing import Any, Iterable, Optional

from fhir_to_omop.domain.constants import (
    FHIR_RESOURCE_CONDITION,
    FHIR_RESOURCE_CONSENT,
    FHIR_RESOURCE_DIAGNOSTIC_REPORT,
    FHIR_RESOURCE_ENCOUNTER,
    FHIR_RESOURCE_IMMUNIZATION,
    FHIR_RESOURCE_MEDICATION,
    FHIR_RESOURCE_MEDICATION_ADMINISTRATION,
    FHIR_RESOURCE_MEDICATION_STATEMENT,
    FHIR_RESOURCE_OBSERVATION,
    FHIR_RESOURCE_PATIENT,
    FHIR_RESOURCE_PROCEDURE,
)

logger = logging.getLogger(__name__)

PATIENT_PREFIX = "pat-"
ENCOUNTER_PREFIX = "enc-"
MEDICATION_PREFIX = "med-"

_WORD_PATTERN = re.compile(r"[A-Z][a-z]*")
_PARTIAL_DATE_PATTERN = re.compile(r"^(\d{4})(?:-(\d{2}))?$")


def resource_type_prefix(resource_type: Optional[str]) -> Optional[str]:
    """Key prefix of a resource type, or None for types that have no prefix rule."""
    if not resource_type:
        return None
    words = _WORD_PATTERN.findall(resource_type)
    if len(words) == 1:
        if words[0] == FHIR_RESOURCE_CONSENT:
            return words[0][:4].lower() + "-"
        return words[0][:3].lower() + "-"
    if len(words) == 2:
        return (words[0][:2] + words[1][:1]).lower() + "-"

    logger.error(f"No prefix rule for resource type [{resource_type}], invalid resource. Please check!")
    return None


_TYPES_BY_PREFIX = {
    resource_type_prefix(resource_type): resource_type
    for resource_type in (
        FHIR_RESOURCE_PATIENT,
        FHIR_RESOURCE_ENCOUNTER,
        FHIR_RESOURCE_MEDICATION,
        FHIR_RESOURCE_MEDICATION_ADMINISTRATION,
        FHIR_RESOURCE_MEDICATION_STATEMENT,
        FHIR_RESOURCE_CONDITION,
        FHIR_RESOURCE_OBSERVATION,
        FHIR_RESOURCE_PROCEDURE,
        FHIR_RESOURCE_IMMUNIZATION,
        FHIR_RESOURCE_CONSENT,
        FHIR_RESOURCE_DIAGNOSTIC_REPORT,
    )
}


def split_key(key: str) -> tuple[Optional[str], str]:
    """Resource type and FHIR id of a prefixed key (``con-c1`` -> ``("Condition", "c1")``).

    The type is None when the key carries no known prefix.
    """
    prefix, separator, fhir_id = key.partition("-")
    resource_type = _TYPES_BY_PREFIX.get(prefix + separator)
    if resource_type is None:
        return None, key
    return resource_type, fhir_id


def extract_id(resource: dict) -> Optional[str]:
    """Prefixed logical id of a resource."""
    resource_id = resource.get("id")
    if not resource_id:
        logger.debug(f"Given [{resource.get('resourceType')}] resource has no identifying source value")
        return None
    prefix = resource_type_prefix(resource.get("resourceType"))
    return prefix + str(resource_id) if prefix else None


def extract_first_identifier(resource: dict) -> Optional[str]:
    """Prefixed value of the first non-blank identifier of a resource."""
    values = [identifier.get("value") for identifier in resource.get("identifier") or []]
    return _prefixed(resource, values)


def extract_identifier(
    resource: dict,
    type_code: str,
    identifier_type_system: str,
    identifier_systems: Iterable[str] = (),
) -> Optional[str]:
    """Prefixed identifier selected by its type coding, else by the configured identifier systems."""
    identifiers = resource.get("identifier") or []
    values = [
        identifier.get("value")
        for identifier in identifiers
        if any(
            coding.get("system") == identifier_type_system and coding.get("code") == type_code
            for coding in (identifier.get("type") or {}).get("coding") or []
        )
    ]
    if not values:
        for system in identifier_systems:
            values = [identifier.get("value") for identifier in identifiers if identifier.get("system") == system]
            if values:
                break
    return _prefixed(resource, values)


def _prefixed(resource: dict, values: list) -> Optional[str]:
    value = next((str(v) for v in values if v is not None and str(v).strip()), None)
    if value is None:
        return None
    prefix = resource_type_prefix(resource.get("resourceType"))
    return prefix + value if prefix else None


def reference_id_part(reference: Optional[str]) -> Optional[str]:
    """Id part of a relative or absolute reference (``Patient/7/_history/2`` -> ``7``)."""
    if not reference:
        return None
    parts = [part for part in reference.split("/") if part]
    if "_history" in parts:
        parts = parts[: parts.index("_history")]
    if not parts:
        return None
    return parts[-1]


def _reference_identifier(resource: dict, *elements: str) -> Optional[str]:
    for element in elements:
        value = ((resource.get(element) or {}).get("identifier") or {}).get("value")
        if value:
            return value
    return None


def _reference_logical_id(resource: dict, *elements: str) -> Optional[str]:
    for element in elements:
        reference = (resource.get(element) or {}).get("reference")
        if reference:
            return reference_id_part(reference)
    return None


def subject_reference_identifier(resource: dict) -> Optional[str]:
    value = _reference_identifier(resource, "subject", "patient")
    return PATIENT_PREFIX + value if value else None


def subject_reference_logical_id(resource: dict) -> Optional[str]:
    value = _reference_logical_id(resource, "subject", "patient")
    return PATIENT_PREFIX + value if value else None


def encounter_reference_identifier(resource: dict, element: str = "encounter") -> Optional[str]:
    value = _reference_identifier(resource, element)
    return ENCOUNTER_PREFIX + value if value else None


def encounter_reference_logical_id(resource: dict, element: str = "encounter") -> Optional[str]:
    value = _reference_logical_id(resource, element)
    return ENCOUNTER_PREFIX + value if value else None


def has_encounter_reference(resource: dict, element: str = "encounter") -> bool:
    reference = resource.get(element) or {}
    return bool(reference.get("reference") or (reference.get("identifier") or {}).get("value"))


def medication_reference_identifier(resource: dict) -> Optional[str]:
    value = _reference_identifier(resource, "medicationReference")
    return MEDICATION_PREFIX + value if value else None


def medication_reference_logical_id(resource: dict) -> Optional[str]:
    value = _reference_logical_id(resource, "medicationReference")
    return MEDICATION_PREFIX + value if value else None


# ============================================================================
# Dates
# ============================================================================

def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a FHIR date, dateTime or instant.

    Partial dates (``2021``, ``2021-03``) resolve to the first day. Offsets are dropped;
    the wall-clock time of the source is kept.
    """
    if not value or not isinstance(value, str):
        return None
    value = value.strip()
    partial = _PARTIAL_DATE_PATTERN.match(value)
    try:
        if partial:
            return datetime(int(partial.group(1)), int(partial.group(2) or 1), 1)
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        logger.debug(f"Unparseable FHIR date [{value}]")
        return None
    return parsed.replace(tzinfo=None)


def to_date(value: Optional[datetime]) -> Optional[date]:
    return value.date() if value is not None else None


def period_start(resource: dict, element: str = "period") -> Optional[datetime]:
    return parse_datetime((resource.get(element) or {}).get("start"))


def period_end(resource: dict, element: str = "period") -> Optional[datetime]:
    return parse_datetime((resource.get(element) or {}).get("end"))


def effective_datetime(resource: dict, prefix: str) -> Optional[datetime]:
    """Start of a ``<prefix>[x]`` choice element (DateTime, Period or Instant)."""
    start = parse_datetime(resource.get(f"{prefix}DateTime"))
    if start is None:
        start = period_start(resource, f"{prefix}Period")
    if start is None:
        start = parse_datetime(resource.get(f"{prefix}Instant"))
    return start


# ============================================================================
# Codings
# ============================================================================

def codings(codeable_concept: Optional[dict]) -> list[dict]:
    if not codeable_concept:
        return []
    return [coding for coding in codeable_concept.get("coding") or [] if coding.get("code")]


def first_coding(codeable_concept: Optional[dict], systems: Iterable[str] = ()) -> Optional[dict]:
    """First coding with a code, restricted to the given systems if any are given."""
    systems = tuple(systems)
    for coding in codings(codeable_concept):
        if not systems or coding.get("system") in systems:
            return coding
    return None


def all_codings(codeable_concepts: Optional[list[dict]]) -> list[dict]:
    result: list[dict] = []
    for codeable_concept in codeable_concepts or []:
        result.extend(codings(codeable_concept))
    return result


def quantity_value(quantity: Optional[dict]) -> Optional[float]:
    value: Any = (quantity or {}).get("value")
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
