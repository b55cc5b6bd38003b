"""Reference Identity Cache.

Thread-safe key to surrogate-id mappings. Each ``IdMapping`` owns a counter starting
at 1; ``get_or_create`` is an atomic compute-if-absent, so chunks processed on
different worker threads can mint ids for entities they see first without a
round trip to a central allocator.

``IdentityIndex`` pairs two mappings (logical id, external identifier) for the
entities other resources reference and enforces that both keys of one entity
resolve to the same surrogate id.
"""

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Optional

from fhir_to_omop.domain.models import IdentityKind, IdentityRecord
from fhir_to_omop.domain.ports import IdentityConflictError

logger = logging.getLogger(__name__)


class IdMapping:
    """Concurrency-safe key to surrogate-id mapping with a monotonically increasing counter.

    Example Usage:
        ```python
        medications = IdMapping()
        medications.get_or_create("med-ident:med-1")   # 1
        medications.get_or_create("med-ident:med-2")   # 2
        medications.get_or_create("med-ident:med-1")   # 1
        ```
    """

    def __init__(self, name: str = "", start: int = 1):
        self.name = name
        self._start = start
        self._counter = start
        self._map: dict[str, int] = {}
        self._lock = Lock()

    def get_or_create(self, key: str) -> int:
        """Return the id of a key, allocating the next counter value if the key is new."""
        with self._lock:
            value = self._map.get(key)
            if value is None:
                value = self._counter
                self._counter += 1
                self._map[key] = value
            return value

    def get(self, key: str) -> Optional[int]:
        with self._lock:
            return self._map.get(key)

    def get_or_default(self, key: str, default: Optional[int] = None) -> Optional[int]:
        with self._lock:
            return self._map.get(key, default)

    def put(self, key: str, value: int) -> Optional[int]:
        """Store a known id for a key; returns the previous value (like dict assignment)."""
        with self._lock:
            previous = self._map.get(key)
            self._map[key] = value
            return previous

    def allocate(self) -> int:
        """Hand out the next counter value without binding a key."""
        with self._lock:
            value = self._counter
            self._counter += 1
            return value

    def advance(self, value: int) -> None:
        """Move the counter forward to at least ``value``; it never moves back."""
        with self._lock:
            self._counter = max(self._counter, value)

    def put_if_absent(self, key: str, value: int) -> Optional[int]:
        """Store the id unless the key is known; returns the value already stored, if any."""
        with self._lock:
            previous = self._map.get(key)
            if previous is None:
                self._map[key] = value
            return previous

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._map

    def clear(self) -> None:
        """Drop all keys. The counter keeps running so ids are never handed out twice."""
        with self._lock:
            self._map.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._map)

    @property
    def next_value(self) -> int:
        with self._lock:
            return self._counter


@dataclass
class IdMappings:
    """One independent IdMapping per entity kind; never shared across kinds."""

    persons: IdMapping = field(default_factory=lambda: IdMapping("persons"))
    locations: IdMapping = field(default_factory=lambda: IdMapping("locations"))
    visit_occurrences: IdMapping = field(default_factory=lambda: IdMapping("visit_occurrences"))
    visit_details: IdMapping = field(default_factory=lambda: IdMapping("visit_details"))
    medications: IdMapping = field(default_factory=lambda: IdMapping("medications"))

    def all(self) -> tuple[IdMapping, ...]:
        return (
            self.persons,
            self.locations,
            self.visit_occurrences,
            self.visit_details,
            self.medications,
        )


class IdentityIndex:
    """Two-key index (logical id, external identifier) to surrogate id for one identity kind.

    Within a run there is at most one surrogate id per logical id and per identifier,
    and when a record carries both keys they resolve to the same id. Registrations or
    lookups that would break this raise IdentityConflictError.
    """

    def __init__(
        self,
        kind: IdentityKind,
        by_logical_id: Optional[IdMapping] = None,
        by_identifier: Optional[IdMapping] = None,
    ):
        self.kind = kind
        self.by_logical_id = by_logical_id or IdMapping(f"{kind.value}_by_logical_id")
        self.by_identifier = by_identifier or IdMapping(f"{kind.value}_by_identifier")
        self._lock = Lock()

    def register(self, record: IdentityRecord) -> None:
        """Add an identity record to both key maps.

        Raises:
            IdentityConflictError: If either key is already bound to another surrogate id
        """
        with self._lock:
            self._bind(record.logical_id, record.external_identifier, record.surrogate_id)

    def _bind(self, logical_id: Optional[str], identifier: Optional[str], surrogate_id: int) -> None:
        for key, mapping in ((logical_id, self.by_logical_id), (identifier, self.by_identifier)):
            if not key:
                continue
            existing = mapping.get(key)
            if existing is not None and existing != surrogate_id:
                raise IdentityConflictError(
                    f"[{self.kind.value}] key {key} already bound to {existing}, cannot bind it to {surrogate_id}",
                    kind=self.kind.value,
                    logical_id=logical_id,
                    identifier=identifier,
                    ids=(existing, surrogate_id),
                )
        if logical_id:
            self.by_logical_id.put(logical_id, surrogate_id)
        if identifier:
            self.by_identifier.put(identifier, surrogate_id)

    def get_or_create(self, logical_id: Optional[str], identifier: Optional[str]) -> int:
        """Surrogate id bound to either key, or a new id from the logical-id counter bound to both.

        Raises:
            IdentityConflictError: If the keys are bound to different ids
        """
        with self._lock:
            surrogate_id = self.lookup(logical_id, identifier)
            if surrogate_id is None:
                surrogate_id = self.by_logical_id.allocate()
            self._bind(logical_id, identifier, surrogate_id)
            return surrogate_id

    def register_all(self, records: list[IdentityRecord]) -> int:
        for record in records:
            self.register(record)
        logger.debug(f"Registered {len(records)} [{self.kind.value}] identities in RAM")
        return len(records)

    def lookup(self, logical_id: Optional[str], identifier: Optional[str]) -> Optional[int]:
        """Surrogate id for either key; a hit on either wins, two hits must agree."""
        by_logical = self.by_logical_id.get(logical_id) if logical_id else None
        by_identifier = self.by_identifier.get(identifier) if identifier else None
        return merge_hits(self.kind, logical_id, identifier, by_logical, by_identifier)

    def clear(self) -> None:
        self.by_logical_id.clear()
        self.by_identifier.clear()

    def __len__(self) -> int:
        return max(len(self.by_logical_id), len(self.by_identifier))


def merge_hits(
    kind: IdentityKind,
    logical_id: Optional[str],
    identifier: Optional[str],
    by_logical: Optional[int],
    by_identifier: Optional[int],
) -> Optional[int]:
    """Combine the lookup results of both keys.

    Raises:
        IdentityConflictError: If both keys hit different surrogate ids
    """
    if by_logical is not None and by_identifier is not None and by_logical != by_identifier:
        logger.error(
            f"[{kind.value}] logical id {logical_id} resolves to {by_logical} but "
            f"identifier {identifier} resolves to {by_identifier}"
        )
        raise IdentityConflictError(
            f"[{kind.value}] logical id {logical_id} and identifier {identifier} "
            f"resolve to different ids ({by_logical} != {by_identifier})",
            kind=kind.value,
            logical_id=logical_id,
            identifier=identifier,
            ids=(by_logical, by_identifier),
        )
    return by_logical if by_logical is not None else by_identifier
