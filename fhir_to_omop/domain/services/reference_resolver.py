"""Reference Resolution Service.

Resolves the person / encounter a dependent resource refers to into the OMOP
surrogate id, using one of two strategies selected by the load mode:

    - Bulk load with RAM dictionaries: in-memory IdentityIndex built before the stage
    - Incremental load, or bulk load without RAM dictionaries: IdentityStore queries,
      read-through cached per key

In incremental mode an unresolved reference is not an error: the dependent resource
is rescheduled (its staging watermark moves one day ahead) and the result says
DEFERRED. In bulk mode it is an item skip (NOT_FOUND).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Callable, Optional

from fhir_to_omop.domain.constants import RESCHEDULE_DELAY_DAYS
from fhir_to_omop.domain.models import IdentityKind, LoadMode, MedicationIdMap
from fhir_to_omop.domain.ports import IdentityStore, NoReferenceError, RescheduleHook
from fhir_to_omop.domain.services.identity_cache import IdentityIndex, IdMapping, IdMappings, merge_hits

logger = logging.getLogger(__name__)

_REFERENCE_LABELS = {
    IdentityKind.PERSON: ("Patient Reference", "person"),
    IdentityKind.ENCOUNTER: ("Encounter Reference", "visit_occurrence"),
}


class ResolutionStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class ReferenceResolution:
    """Outcome of a reference lookup."""

    status: ResolutionStatus
    surrogate_id: Optional[int] = None

    @property
    def found(self) -> bool:
        return self.status == ResolutionStatus.FOUND

    @property
    def deferred(self) -> bool:
        return self.status == ResolutionStatus.DEFERRED

    @classmethod
    def of(cls, surrogate_id: int) -> "ReferenceResolution":
        return cls(ResolutionStatus.FOUND, surrogate_id)


NOT_FOUND = ReferenceResolution(ResolutionStatus.NOT_FOUND)
DEFERRED = ReferenceResolution(ResolutionStatus.DEFERRED)


class ReferenceResolver:
    """Resolves person and encounter references to OMOP surrogate ids.

    Parameters:
        mode: Load mode of the run
        dictionary_load_in_ram: Use in-memory dictionaries during bulk load
        identity_store: Lookup of persisted persons, encounters and medications
        reschedule_hook: Pushes unresolved resources to a later run (incremental mode)
        id_mappings: Shared per-kind id mappings (the logical-id side of the RAM indices)
        now: Clock used for the reschedule watermark

    Example Usage:
        ```python
        resolver = ReferenceResolver(LoadMode.INCREMENTAL, False, store, store)
        resolution = resolver.resolve_person_id("pat-mrn-9", "pat-7", "con-1")
        if resolution.found:
            person_id = resolution.surrogate_id
        ```
    """

    def __init__(
        self,
        mode: LoadMode,
        dictionary_load_in_ram: bool,
        identity_store: IdentityStore,
        reschedule_hook: RescheduleHook,
        id_mappings: Optional[IdMappings] = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.mode = mode
        self.dictionary_load_in_ram = dictionary_load_in_ram
        self.identity_store = identity_store
        self.reschedule_hook = reschedule_hook
        self.id_mappings = id_mappings or IdMappings()
        self._now = now

        self.indices = {
            IdentityKind.PERSON: IdentityIndex(IdentityKind.PERSON, by_logical_id=self.id_mappings.persons),
            IdentityKind.ENCOUNTER: IdentityIndex(
                IdentityKind.ENCOUNTER, by_logical_id=self.id_mappings.visit_occurrences
            ),
        }
        self._caches = {
            (kind, key_type): IdMapping(f"{kind.value}_{key_type}_cache")
            for kind in IdentityKind
            for key_type in ("logical_id", "identifier")
        }
        self._medications: dict[str, MedicationIdMap] = {}
        self._medication_lock = Lock()
        self._seeded: set[IdentityKind] = set()
        self._seed_lock = Lock()

    @property
    def uses_ram(self) -> bool:
        return self.mode == LoadMode.BULK and self.dictionary_load_in_ram

    # ------------------------------------------------------------------
    # Person / encounter references
    # ------------------------------------------------------------------

    def resolve_person_id(
        self,
        identifier: Optional[str],
        logical_id: Optional[str],
        resource_id: Optional[str],
    ) -> ReferenceResolution:
        """Resolve the person a resource belongs to.

        Raises:
            NoReferenceError: If neither an identifier nor a logical id is given
            IdentityConflictError: If both keys resolve to different person ids
        """
        return self._resolve(IdentityKind.PERSON, identifier, logical_id, resource_id)

    def resolve_encounter_id(
        self,
        identifier: Optional[str],
        logical_id: Optional[str],
        resource_id: Optional[str],
    ) -> ReferenceResolution:
        """Resolve the visit_occurrence a resource belongs to (see ``resolve_person_id``)."""
        return self._resolve(IdentityKind.ENCOUNTER, identifier, logical_id, resource_id)

    def _resolve(
        self,
        kind: IdentityKind,
        identifier: Optional[str],
        logical_id: Optional[str],
        resource_id: Optional[str],
    ) -> ReferenceResolution:
        label, table = _REFERENCE_LABELS[kind]
        if not identifier and not logical_id:
            logger.warning(f"Unable to extract [{label}] for {resource_id}. Skip resource")
            raise NoReferenceError(
                f"Unable to extract [{label}] for {resource_id}",
                resource_id=resource_id,
                reference_kind=kind.value,
            )

        surrogate_id = self.find_existing_id(kind, identifier, logical_id)
        if surrogate_id is not None:
            return ReferenceResolution.of(surrogate_id)

        if self.mode == LoadMode.INCREMENTAL and resource_id:
            after = self._now() + timedelta(days=RESCHEDULE_DELAY_DAYS)
            self.reschedule_hook.reschedule(resource_id, after)
            logger.warning(
                f"No [{table}] found for {resource_id}. This resource will be processed again tomorrow."
            )
            return DEFERRED

        logger.debug(f"No [{table}] found for {resource_id}")
        return NOT_FOUND

    def find_existing_id(
        self,
        kind: IdentityKind,
        identifier: Optional[str],
        logical_id: Optional[str],
    ) -> Optional[int]:
        """Surrogate id of an already known entity, without deferral.

        Used by the resolvers above and by mappers that update persons, encounters or
        medications in place during an incremental load.
        """
        if not identifier and not logical_id:
            return None

        index = self.indices.get(kind)
        if self.uses_ram and index is not None:
            return index.lookup(logical_id, identifier)

        by_logical = self._cached_lookup(kind, "logical_id", logical_id)
        by_identifier = self._cached_lookup(kind, "identifier", identifier)
        return merge_hits(kind, logical_id, identifier, by_logical, by_identifier)

    def assign_id(self, kind: IdentityKind, identifier: Optional[str], logical_id: Optional[str]) -> int:
        """Surrogate id of a person or encounter the current stage writes.

        An entity already persisted keeps its id. A new entity gets the next id after
        the highest persisted one, and every later copy of it in the stage (same logical
        id or identifier) gets that same id.

        Raises:
            IdentityConflictError: If the keys belong to different entities
        """
        if not self.uses_ram:
            surrogate_id = self.find_existing_id(kind, identifier, logical_id)
            if surrogate_id is not None:
                return surrogate_id

        index = self.indices[kind]
        with self._seed_lock:
            if kind not in self._seeded:
                index.by_logical_id.advance(self.identity_store.max_surrogate_id(kind) + 1)
                self._seeded.add(kind)
        return index.get_or_create(logical_id, identifier)

    def _cached_lookup(self, kind: IdentityKind, key_type: str, key: Optional[str]) -> Optional[int]:
        if not key:
            return None
        cache = self._caches[(kind, key_type)]
        cached = cache.get(key)
        if cached is not None:
            return cached

        if key_type == "logical_id":
            value = self.identity_store.find_by_logical_id(kind, key)
        else:
            value = self.identity_store.find_by_identifier(kind, key)

        # Misses are not cached: the entity may be committed later in the run
        if value is not None:
            cache.put(key, value)
        return value

    # ------------------------------------------------------------------
    # Medication references
    # ------------------------------------------------------------------

    def resolve_medication(self, identifier: Optional[str], logical_id: Optional[str]) -> Optional[MedicationIdMap]:
        """Stored medication_id_map row of a referenced Medication resource."""
        if not identifier and not logical_id:
            return None

        keys = [key for key in (logical_id, identifier) if key]
        with self._medication_lock:
            for key in keys:
                if key in self._medications:
                    return self._medications[key]

        if self.uses_ram:
            return None

        medication = self.identity_store.find_medication(logical_id, identifier)
        if medication is not None:
            self._remember_medication(medication)
        return medication

    def _remember_medication(self, medication: MedicationIdMap) -> None:
        with self._medication_lock:
            if medication.fhir_logical_id:
                self._medications[medication.fhir_logical_id] = medication
            if medication.fhir_identifier:
                self._medications[medication.fhir_identifier] = medication

    # ------------------------------------------------------------------
    # Stage lifecycle
    # ------------------------------------------------------------------

    def load_dictionaries(self, kinds: tuple[IdentityKind, ...]) -> dict[str, int]:
        """Build the RAM dictionaries of the given kinds from the identity store.

        Returns:
            dict: Number of loaded records per kind
        """
        loaded: dict[str, int] = {}
        for kind in kinds:
            if kind == IdentityKind.MEDICATION:
                medications = self.identity_store.load_medications()
                for medication in medications:
                    self._remember_medication(medication)
                loaded[kind.value] = len(medications)
            else:
                loaded[kind.value] = self.indices[kind].register_all(self.identity_store.load_identities(kind))
            logger.info(f"Loaded {loaded[kind.value]} [{kind.value}] references into RAM")
        return loaded

    def clear(self) -> None:
        """Drop RAM dictionaries and read-through caches at the end of a stage."""
        for index in self.indices.values():
            index.clear()
        for cache in self._caches.values():
            cache.clear()
        with self._medication_lock:
            self._medications.clear()
        with self._seed_lock:
            self._seeded.clear()
