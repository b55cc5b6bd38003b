"""Unit tests for ReferenceResolver."""

from datetime import datetime
from unittest.mock import Mock

import pytest

from fhir_to_omop.domain.models import IdentityKind, IdentityRecord, LoadMode, MedicationIdMap
from fhir_to_omop.domain.ports import IdentityConflictError, NoReferenceError
from fhir_to_omop.domain.services.reference_resolver import ReferenceResolver, ResolutionStatus

NOW = datetime(2024, 5, 1, 12, 0, 0)


@pytest.fixture
def store():
    store = Mock()
    store.find_by_logical_id.return_value = None
    store.find_by_identifier.return_value = None
    store.find_medication.return_value = None
    store.load_identities.return_value = []
    store.load_medications.return_value = []
    store.max_surrogate_id.return_value = 0
    return store


def make_resolver(store, mode=LoadMode.BULK, ram=True):
    return ReferenceResolver(mode, ram, identity_store=store, reschedule_hook=store, now=lambda: NOW)


class TestRamStrategy:
    """Test bulk load with RAM dictionaries."""

    def test_resolves_from_loaded_dictionary(self, store):
        """Test a person loaded before the stage is resolved without queries."""
        store.load_identities.return_value = [
            IdentityRecord(kind=IdentityKind.PERSON, surrogate_id=42, logical_id="pat-7", external_identifier="pat-mrn-7"),
        ]
        resolver = make_resolver(store)
        loaded = resolver.load_dictionaries((IdentityKind.PERSON,))

        resolution = resolver.resolve_person_id(None, "pat-7", "con-1")

        assert loaded == {"person": 1}
        assert resolution.found
        assert resolution.surrogate_id == 42
        store.find_by_logical_id.assert_not_called()

    def test_missing_reference_is_not_found(self, store):
        """Test an unknown person in bulk load is a skip, never a deferral."""
        resolver = make_resolver(store)

        resolution = resolver.resolve_person_id("pat-mrn-9", "pat-9", "con-1")

        assert resolution.status == ResolutionStatus.NOT_FOUND
        store.reschedule.assert_not_called()

    def test_clear_drops_dictionaries(self, store):
        """Test dictionaries do not outlive the stage."""
        store.load_identities.return_value = [
            IdentityRecord(kind=IdentityKind.ENCOUNTER, surrogate_id=5, logical_id="enc-1"),
        ]
        resolver = make_resolver(store)
        resolver.load_dictionaries((IdentityKind.ENCOUNTER,))
        resolver.clear()

        assert not resolver.resolve_encounter_id(None, "enc-1", "obs-1").found

    def test_medications_loaded_into_ram(self, store):
        """Test medication rows are found by logical id or identifier."""
        medication = MedicationIdMap(fhir_omop_id=3, atc="A10BA02", fhir_logical_id="med-1", fhir_identifier="med-ident-1")
        store.load_medications.return_value = [medication]
        resolver = make_resolver(store)
        resolver.load_dictionaries((IdentityKind.MEDICATION,))

        assert resolver.resolve_medication(None, "med-1").atc == "A10BA02"
        assert resolver.resolve_medication("med-ident-1", None).fhir_omop_id == 3
        assert resolver.resolve_medication("med-ident-2", "med-2") is None
        store.find_medication.assert_not_called()


class TestQueryStrategy:
    """Test incremental load and bulk load without RAM dictionaries."""

    def test_query_result_is_cached(self, store):
        """Test a hit is cached per key for the rest of the stage."""
        store.find_by_logical_id.return_value = 42
        resolver = make_resolver(store, mode=LoadMode.INCREMENTAL, ram=False)

        first = resolver.resolve_person_id(None, "pat-7", "con-1")
        second = resolver.resolve_person_id(None, "pat-7", "con-2")

        assert first.surrogate_id == second.surrogate_id == 42
        store.find_by_logical_id.assert_called_once_with(IdentityKind.PERSON, "pat-7")

    def test_miss_is_not_cached(self, store):
        """Test an entity committed later in the run is still found."""
        store.find_by_logical_id.side_effect = [None, 42]
        resolver = make_resolver(store, mode=LoadMode.BULK, ram=False)

        assert not resolver.resolve_person_id(None, "pat-7", "con-1").found
        assert resolver.resolve_person_id(None, "pat-7", "con-2").surrogate_id == 42

    def test_incremental_miss_is_deferred(self, store):
        """Test an unresolved reference reschedules the resource one day ahead."""
        resolver = make_resolver(store, mode=LoadMode.INCREMENTAL, ram=False)

        resolution = resolver.resolve_person_id("pat-mrn-9", "pat-9", "con-1")

        assert resolution.deferred
        store.reschedule.assert_called_once_with("con-1", datetime(2024, 5, 2, 12, 0, 0))

    def test_conflicting_keys_fail_loudly(self, store):
        """Test logical id and identifier pointing to different persons abort."""
        store.find_by_logical_id.return_value = 1
        store.find_by_identifier.return_value = 2
        resolver = make_resolver(store, mode=LoadMode.INCREMENTAL, ram=False)

        with pytest.raises(IdentityConflictError):
            resolver.resolve_person_id("pat-mrn-7", "pat-7", "con-1")

    def test_medication_query(self, store):
        """Test medication rows are queried and remembered."""
        store.find_medication.return_value = MedicationIdMap(fhir_omop_id=9, fhir_logical_id="med-1")
        resolver = make_resolver(store, mode=LoadMode.INCREMENTAL, ram=False)

        assert resolver.resolve_medication(None, "med-1").fhir_omop_id == 9
        assert resolver.resolve_medication(None, "med-1").fhir_omop_id == 9
        store.find_medication.assert_called_once_with("med-1", None)


class TestAssignId:
    """Test surrogate ids of staged persons and encounters."""

    def test_new_entity_follows_store_maximum(self, store):
        """Test a new person gets the id after the highest persisted one."""
        store.max_surrogate_id.return_value = 41
        resolver = make_resolver(store)

        assert resolver.assign_id(IdentityKind.PERSON, "pat-mrn-7", "pat-7") == 42
        assert resolver.assign_id(IdentityKind.PERSON, None, "pat-8") == 43
        store.max_surrogate_id.assert_called_once_with(IdentityKind.PERSON)

    def test_copies_share_one_id(self, store):
        """Test staging the same patient twice yields one person_id."""
        for mode, ram in ((LoadMode.BULK, True), (LoadMode.BULK, False), (LoadMode.INCREMENTAL, False)):
            resolver = make_resolver(store, mode=mode, ram=ram)

            first = resolver.assign_id(IdentityKind.PERSON, "pat-mrn-8", "pat-8")
            second = resolver.assign_id(IdentityKind.PERSON, "pat-mrn-8", "pat-8")

            assert first == second == 1

    def test_persisted_entity_keeps_id(self, store):
        """Test a stored encounter keeps its id without the RAM dictionaries."""
        store.find_by_logical_id.side_effect = lambda kind, key: 300 if key == "enc-E1" else None
        store.max_surrogate_id.return_value = 300
        resolver = make_resolver(store, mode=LoadMode.INCREMENTAL, ram=False)

        assert resolver.assign_id(IdentityKind.ENCOUNTER, None, "enc-E1") == 300
        assert resolver.assign_id(IdentityKind.ENCOUNTER, None, "enc-E2") == 301

    def test_loaded_entity_keeps_id_in_ram(self, store):
        """Test a person loaded into RAM keeps its id."""
        store.load_identities.return_value = [
            IdentityRecord(kind=IdentityKind.PERSON, surrogate_id=42, logical_id="pat-7"),
        ]
        store.max_surrogate_id.return_value = 42
        resolver = make_resolver(store)
        resolver.load_dictionaries((IdentityKind.PERSON,))

        assert resolver.assign_id(IdentityKind.PERSON, "pat-mrn-7", "pat-7") == 42
        assert resolver.resolve_person_id("pat-mrn-7", None, "con-1").surrogate_id == 42


class TestNoReference:
    """Test resources without any reference key."""

    def test_no_keys_raises(self, store):
        """Test a missing reference is reported, not looked up."""
        resolver = make_resolver(store)

        with pytest.raises(NoReferenceError) as exc_info:
            resolver.resolve_encounter_id(None, None, "obs-1")

        assert exc_info.value.reference_kind == "encounter"
        assert resolver.find_existing_id(IdentityKind.PERSON, None, None) is None
