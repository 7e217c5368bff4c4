"""Tests for the canonical resource store."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from fhir_fixtures import condition, immunization, observation, patient
from healthvault.etl.store import resource_key
from healthvault.schemas.resources import ConditionResource, ResourceType, parse_resource


def test_create_returns_deterministic_id(store, vault_session):
    stored_id = store.create(ResourceType.CONDITION, condition("c1"), vault_session.id)

    assert stored_id == resource_key(vault_session.id, ResourceType.CONDITION, "c1")
    assert store.get(ResourceType.CONDITION, stored_id)["id"] == "c1"


def test_repeat_create_is_a_noop(store, vault_session):
    first = store.create(ResourceType.CONDITION, condition("c1"), vault_session.id)
    second = store.create(ResourceType.CONDITION, condition("c1"), vault_session.id)

    assert first == second
    assert store.count(ResourceType.CONDITION, vault_session.id) == 1


def test_changed_payload_overwrites(store, vault_session):
    store.create(ResourceType.CONDITION, condition("c1", status="active"), vault_session.id)
    stored_id = store.create(ResourceType.CONDITION, condition("c1", status="resolved"), vault_session.id)

    payload = store.get(ResourceType.CONDITION, stored_id)
    assert payload["clinicalStatus"]["coding"][0]["code"] == "resolved"
    assert store.count(ResourceType.CONDITION) == 1


def test_same_source_id_in_another_session_is_a_separate_row(store, registry, vault_session):
    other = registry.create_session(provider_id="cerner", patient_external_id="pat-1")

    a = store.create(ResourceType.CONDITION, condition("c1"), vault_session.id)
    b = store.create(ResourceType.CONDITION, condition("c1"), other.id)

    assert a != b
    assert store.count(ResourceType.CONDITION) == 2


def test_create_accepts_typed_views(store, vault_session):
    resource = parse_resource(condition("c1"))
    assert isinstance(resource, ConditionResource)

    stored_id = store.create(ResourceType.CONDITION, resource, vault_session.id)
    assert store.get(ResourceType.CONDITION, stored_id) == condition("c1")


def test_unknown_fields_are_kept(store, vault_session):
    record = condition("c1")
    record["extension"] = [{"url": "http://example.org/ext", "valueString": "x"}]

    stored_id = store.create(ResourceType.CONDITION, record, vault_session.id)
    assert store.get(ResourceType.CONDITION, stored_id)["extension"] == record["extension"]


def test_record_without_id_is_rejected(store, vault_session):
    record = condition("c1")
    del record["id"]

    with pytest.raises(ValueError, match="no id"):
        store.create(ResourceType.CONDITION, record, vault_session.id)


def test_get_missing_returns_none(store, vault_session):
    missing = resource_key(vault_session.id, ResourceType.CONDITION, "nope")
    assert store.get(ResourceType.CONDITION, missing) is None


def test_list_by_patient_filters_patient_and_session(store, registry, vault_session):
    other = registry.create_session(provider_id="cerner", patient_external_id="pat-1")
    store.create(ResourceType.OBSERVATION, observation("o2"), vault_session.id)
    store.create(ResourceType.OBSERVATION, observation("o1"), vault_session.id)
    store.create(ResourceType.OBSERVATION, observation("o3", patient_id="pat-2"), vault_session.id)
    store.create(ResourceType.OBSERVATION, observation("o4"), other.id)

    scoped = store.list_by_patient(ResourceType.OBSERVATION, "pat-1", vault_session.id)
    assert [r["id"] for r in scoped] == ["o1", "o2"]
    assert len(store.list_by_patient(ResourceType.OBSERVATION, "pat-1")) == 3


def test_concurrent_creates_of_one_record_leave_one_row(store, vault_session):
    with ThreadPoolExecutor(max_workers=4) as pool:
        ids = list(
            pool.map(
                lambda _: store.create(ResourceType.OBSERVATION, observation("o1"), vault_session.id),
                range(8),
            )
        )

    assert len(set(ids)) == 1
    assert store.count(ResourceType.OBSERVATION, vault_session.id) == 1


def test_load_snapshot_builds_typed_views(store, vault_session):
    store.create(ResourceType.PATIENT, patient(), vault_session.id)
    store.create(ResourceType.CONDITION, condition("c1"), vault_session.id)
    store.create(ResourceType.OBSERVATION, observation("o1", value=7.2), vault_session.id)
    store.create(ResourceType.IMMUNIZATION, immunization("i1"), vault_session.id)

    snapshot = store.load_snapshot("pat-1", vault_session.id)

    assert snapshot.patient.gender == "female"
    assert [c.id for c in snapshot.conditions] == ["c1"]
    assert snapshot.observations[0].numeric_value == 7.2
    assert snapshot.immunizations[0].clinical_date.isoformat() == "2024-10-01"


def test_load_snapshot_for_unknown_patient_is_empty(store, vault_session):
    snapshot = store.load_snapshot("nobody", vault_session.id)

    assert snapshot.patient is None
    assert snapshot.conditions == []
    assert snapshot.observations == []


def test_versioned_subject_reference_is_listed_under_its_patient(store, vault_session):
    store.create(ResourceType.OBSERVATION, observation("o1", patient_id="pat-1/_history/2"), vault_session.id)

    listed = store.list_by_patient(ResourceType.OBSERVATION, "pat-1", vault_session.id)
    assert [r["id"] for r in listed] == ["o1"]
    assert store.load_snapshot("pat-1", vault_session.id).observations[0].id == "o1"


def test_payload_is_stored_exactly_as_sent(store, vault_session):
    record = observation("o1")
    record["valueQuantity"] = {"value": 120, "unit": "mm[Hg]"}
    record["component"] = [{"valueQuantity": {"value": "7.5"}}]

    stored_id = store.create(ResourceType.OBSERVATION, record, vault_session.id)

    stored = store.get(ResourceType.OBSERVATION, stored_id)
    assert stored == record
    assert isinstance(stored["valueQuantity"]["value"], int)
