"""Tests for the migration orchestrator: idempotency, isolation, retries and cancellation."""

import threading
import uuid
from collections import Counter

import pytest
from sqlalchemy.exc import DataError, OperationalError

from fhir_fixtures import FakeFetcher, condition, observation, patient, provider_records
from healthvault.etl.errors import (
    FetchError,
    InvalidSession,
    MigrationCancelled,
    SessionNotFound,
    WriteError,
)
from healthvault.etl.migration import TypeStatus
from healthvault.schemas.resources import ResourceType


def _flaky_create(store, monkeypatch, fail_for, exc_factory, times=None):
    """Make store.create raise for one source id; returns the attempt counter."""
    original = store.create
    attempts = Counter()
    lock = threading.Lock()

    def create(resource_type, record, source_session_id):
        if record.id == fail_for:
            with lock:
                attempts[fail_for] += 1
                n = attempts[fail_for]
            if times is None or n <= times:
                raise exc_factory()
        return original(resource_type, record, source_session_id)

    monkeypatch.setattr(store, "create", create)
    return attempts


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

def test_end_to_end_counts_and_rerun_adds_no_rows(orchestrator, registry, store, vault_session):
    fetcher = FakeFetcher(provider_records())

    result = orchestrator.migrate_session(vault_session.id, fetcher)

    assert result.complete
    assert result.counts["patients"] == 1
    assert result.counts["conditions"] == 5
    assert result.counts["observations"] == 12
    assert result.counts["medications"] == 3
    assert result.counts["allergies"] == 0
    assert result.outcomes[ResourceType.ALLERGY_INTOLERANCE].status is TypeStatus.EMPTY

    session = registry.get_session(vault_session.id)
    assert session.migrated is True
    assert session.migration_counts == result.counts

    again = orchestrator.migrate_session(vault_session.id, FakeFetcher(provider_records()))
    assert again.counts == result.counts
    assert store.count(ResourceType.CONDITION, vault_session.id) == 5
    assert store.count(ResourceType.OBSERVATION, vault_session.id) == 12
    assert store.count(ResourceType.MEDICATION_REQUEST, vault_session.id) == 3
    assert store.count(ResourceType.PATIENT, vault_session.id) == 1
    assert len(registry.list_runs(vault_session.id)) == 2


def test_migrate_accepts_collection_keys(orchestrator, vault_session):
    result = orchestrator.migrate(
        vault_session,
        patient(),
        {
            "conditions": [condition("c1"), condition("c2")],
            ResourceType.OBSERVATION: [observation("o1")],
        },
    )

    assert result.counts == {"patients": 1, "conditions": 2, "observations": 1}
    assert result.errors == {}


def test_duplicate_ids_in_one_collection_count_once(orchestrator, store, vault_session):
    result = orchestrator.migrate(vault_session, None, {"conditions": [condition("c1"), condition("c1")]})

    assert result.counts == {"conditions": 1}
    assert store.count(ResourceType.CONDITION) == 1


def test_later_duplicate_wins_deterministically(orchestrator, store, vault_session):
    records = [condition("c1", status="active"), condition("c2"), condition("c1", status="resolved")]

    for _ in range(5):
        result = orchestrator.migrate(vault_session, None, {"conditions": records})
        assert result.counts == {"conditions": 2}
        stored = store.list_by_patient(ResourceType.CONDITION, "pat-1", vault_session.id)
        c1 = next(r for r in stored if r["id"] == "c1")
        assert c1["clinicalStatus"]["coding"][0]["code"] == "resolved"


# ---------------------------------------------------------------------------
# Partial failure
# ---------------------------------------------------------------------------

def test_fetch_failure_is_isolated_to_its_type(orchestrator, registry, vault_session):
    fetcher = FakeFetcher(provider_records(), failing={"Observation"})

    result = orchestrator.migrate_session(vault_session.id, fetcher)

    assert not result.complete
    assert isinstance(result.errors["observations"], FetchError)
    assert set(result.errors) == {"observations"}
    assert result.counts["observations"] == 0
    assert result.counts["conditions"] == 5
    assert result.counts["medications"] == 3

    session = registry.get_session(vault_session.id)
    assert session.migrated is True
    assert "observations" in session.migration_errors
    assert registry.list_runs(vault_session.id)[0].status == "partial"


def test_unexpected_fetch_failure_is_isolated_to_its_type(orchestrator, registry, vault_session):
    class MalformedObservations(FakeFetcher):
        def fetch(self, handle, resource_type, patient_external_id=None):
            if resource_type is ResourceType.OBSERVATION:
                raise TypeError("'int' object is not iterable")
            return super().fetch(handle, resource_type, patient_external_id)

    result = orchestrator.migrate_session(vault_session.id, MalformedObservations(provider_records()))

    assert isinstance(result.errors["observations"], FetchError)
    assert result.counts["observations"] == 0
    assert result.counts["conditions"] == 5
    assert registry.get_session(vault_session.id).migrated is True


def test_scoped_retry_merges_into_previous_attempt(orchestrator, registry, vault_session):
    orchestrator.migrate_session(
        vault_session.id, FakeFetcher(provider_records(), failing={"Observation"})
    )

    retry_fetcher = FakeFetcher(provider_records())
    result = orchestrator.migrate_session(vault_session.id, retry_fetcher, types=["observations"])

    assert retry_fetcher.calls == [ResourceType.OBSERVATION]
    assert result.counts == {"observations": 12}
    session = registry.get_session(vault_session.id)
    assert session.migration_counts["observations"] == 12
    assert session.migration_counts["conditions"] == 5
    assert session.migration_errors == {}


def test_record_write_failure_does_not_stop_siblings(orchestrator, store, vault_session, monkeypatch):
    _flaky_create(
        store,
        monkeypatch,
        "o2",
        lambda: DataError("INSERT INTO observations", {}, Exception("value too long")),
    )
    observations = [observation(f"o{i}") for i in range(5)]

    result = orchestrator.migrate(
        vault_session, None, {"observations": observations, "conditions": [condition("c1")]}
    )

    error = result.errors["observations"]
    assert isinstance(error, WriteError)
    assert error.record_id == "o2"
    assert result.counts == {"observations": 4, "conditions": 1}
    assert result.outcomes[ResourceType.OBSERVATION].status is TypeStatus.PARTIAL
    assert result.outcomes[ResourceType.CONDITION].status is TypeStatus.SUCCESS


def test_invalid_records_become_write_errors(orchestrator, vault_session):
    bad = condition("c-bad")
    del bad["subject"]
    nameless = condition("c-nameless")
    del nameless["id"]

    result = orchestrator.migrate(
        vault_session, None, {"conditions": [condition("c1"), bad, nameless]}
    )

    error = result.errors["conditions"]
    assert isinstance(error, WriteError)
    assert set(error.failed_records) == {"c-bad", "None"}
    assert "1 more" in str(error)
    assert result.counts == {"conditions": 1}


def test_unexpected_type_failure_is_contained(orchestrator, store, vault_session, monkeypatch):
    _flaky_create(store, monkeypatch, "o1", lambda: RuntimeError("driver crashed"))

    result = orchestrator.migrate(
        vault_session, None, {"observations": [observation("o1")], "conditions": [condition("c1")]}
    )

    assert result.outcomes[ResourceType.OBSERVATION].status is TypeStatus.FAILED
    assert isinstance(result.errors["observations"], WriteError)
    assert result.counts["conditions"] == 1


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------

def test_transient_store_errors_are_retried(orchestrator, store, vault_session, monkeypatch):
    attempts = _flaky_create(
        store,
        monkeypatch,
        "o1",
        lambda: OperationalError("INSERT INTO observations", {}, Exception("database is locked")),
        times=2,
    )

    result = orchestrator.migrate(vault_session, None, {"observations": [observation("o1")]})

    assert result.complete
    assert result.counts == {"observations": 1}
    assert attempts["o1"] == 3


def test_retries_are_bounded(orchestrator, store, vault_session, monkeypatch):
    attempts = _flaky_create(
        store,
        monkeypatch,
        "o1",
        lambda: OperationalError("INSERT INTO observations", {}, Exception("database is locked")),
    )

    result = orchestrator.migrate(vault_session, None, {"observations": [observation("o1")]})

    assert attempts["o1"] == orchestrator.write_attempts
    assert isinstance(result.errors["observations"], WriteError)
    assert result.counts == {"observations": 0}


# ---------------------------------------------------------------------------
# Fatal conditions
# ---------------------------------------------------------------------------

def test_cancelled_attempt_leaves_session_unmigrated(orchestrator, registry, vault_session):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(MigrationCancelled):
        orchestrator.migrate(
            vault_session, patient(), {"conditions": [condition("c1")]}, cancel_event=cancel
        )

    session = registry.get_session(vault_session.id)
    assert session.migrated is False
    assert session.migration_counts is None
    assert registry.list_runs(vault_session.id) == []


def test_unknown_session_raises_before_fetching(orchestrator):
    fetcher = FakeFetcher(provider_records())

    with pytest.raises(SessionNotFound):
        orchestrator.migrate_session(uuid.uuid4(), fetcher)
    assert fetcher.calls == []


def test_missing_session_is_invalid(orchestrator):
    with pytest.raises(InvalidSession):
        orchestrator.migrate(None, patient(), {})


def test_session_without_fhir_server_is_invalid(orchestrator, registry):
    session = registry.create_session(provider_id="epic", patient_external_id="pat-1")

    with pytest.raises(InvalidSession):
        orchestrator.migrate_session(session.id, FakeFetcher(provider_records()))
    assert registry.get_session(session.id).migrated is False
