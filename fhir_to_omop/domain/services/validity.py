"""Validity date of a coded value.

A code carries an optional version (for ICD-10-GM, OPS and ATC the catalogue year).
Concept validity is checked against the event date, unless the code was explicitly
taken from an older or newer catalogue year; then the last day of that year is used.
"""

import re
from datetime import date
from typing import Optional

_YEAR_PATTERN = re.compile(r"^\d{4}$")


def parse_version_year(version: Optional[str]) -> Optional[int]:
    """Return the catalogue year of a code version, or None if it is not a 4-digit year."""
    if not version:
        return None
    version = version.strip()
    if not _YEAR_PATTERN.match(version):
        return None
    return int(version)


def validity_date(version: Optional[str], event_date: Optional[date]) -> Optional[date]:
    """Compute the date against which concept validity is checked.

    Parameters:
        version: Declared code version (e.g. "2019")
        event_date: Date of the clinical event

    Returns:
        Optional[date]: None when there is no event date (no temporal filter),
            31 December of the version year when it differs from the event year,
            the event date otherwise
    """
    if event_date is None:
        return None

    version_year = parse_version_year(version)
    if version_year is None or version_year == event_date.year:
        return event_date

    return date(version_year, 12, 31)
