"""Tests for the HTTP API, with the database and FHIR source swapped out."""

import uuid

import pytest
from fastapi.testclient import TestClient

from fhir_fixtures import FakeFetcher, condition, observation, patient, provider_records
from healthvault.api.routes import get_fetcher
from healthvault.main import app
from healthvault.models.database import get_db, get_session_factory
from healthvault.models.records import AuditLog


@pytest.fixture
def fetcher():
    records = provider_records()
    records["Condition"].append(condition("cond-dm", code="44054006", onset="2019-05-01"))
    records["Observation"].append(observation("obs-a1c", "4548-4", "2024-02-01", value=10.4))
    return FakeFetcher(records)


@pytest.fixture
def client(session_factory, fetcher):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_fetcher] = lambda: fetcher
    yield TestClient(app)
    app.dependency_overrides.clear()


def _register(client, **overrides):
    body = {
        "provider_id": "epic",
        "patient_external_id": "pat-1",
        "fhir_server": "https://fhir.example.org/R4",
        "access_token": "secret-token",
        "scope": "patient/*.read",
        **overrides,
    }
    response = client.post("/api/v1/sessions", json=body)
    assert response.status_code == 201
    return response.json()


def test_health(client):
    response = client.get("/api/v1/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_register_session_never_returns_token(client):
    session = _register(client)

    assert session["migrated"] is False
    assert "secret-token" not in str(session)
    assert "access_token" not in session


def test_register_session_requires_patient(client):
    response = client.post("/api/v1/sessions", json={"provider_id": "epic", "fhir_server": "x"})
    assert response.status_code == 422


def test_get_unknown_session_is_404(client):
    assert client.get(f"/api/v1/sessions/{uuid.uuid4()}").status_code == 404


def test_migrate_then_read_status(client):
    session = _register(client)

    response = client.post(f"/api/v1/sessions/{session['id']}/migrate")
    assert response.status_code == 200
    result = response.json()
    assert result["complete"] is True
    assert result["counts"]["conditions"] == 6
    assert result["counts"]["observations"] == 13
    assert result["counts"]["allergies"] == 0
    assert result["types"]["conditions"]["status"] == "success"

    status = client.get(f"/api/v1/sessions/{session['id']}").json()
    assert status["migrated"] is True
    assert status["migration_counts"] == result["counts"]
    assert status["migration_errors"] == {}


def test_partial_migration_and_scoped_retry(client, fetcher):
    session = _register(client)
    fetcher.failing = {"Observation"}

    first = client.post(f"/api/v1/sessions/{session['id']}/migrate").json()
    assert first["complete"] is False
    assert "observations" in first["errors"]
    assert first["counts"]["observations"] == 0

    fetcher.failing = set()
    retry = client.post(f"/api/v1/sessions/{session['id']}/migrate", json={"types": ["Observation"]})
    assert retry.status_code == 200
    assert retry.json()["counts"] == {"observations": 13}

    status = client.get(f"/api/v1/sessions/{session['id']}").json()
    assert status["migration_counts"]["observations"] == 13
    assert status["migration_counts"]["conditions"] == 6
    assert status["migration_errors"] == {}


def test_retry_accepts_error_map_keys(client, fetcher):
    session = _register(client)
    fetcher.failing = {"Observation", "Condition"}
    first = client.post(f"/api/v1/sessions/{session['id']}/migrate").json()
    assert sorted(first["errors"]) == ["conditions", "observations"]

    fetcher.failing = set()
    retry = client.post(
        f"/api/v1/sessions/{session['id']}/migrate", json={"types": list(first["errors"])}
    )

    assert retry.status_code == 200
    assert retry.json()["counts"] == {"conditions": 6, "observations": 13}
    assert client.get(f"/api/v1/sessions/{session['id']}").json()["migration_errors"] == {}


def test_migrate_unknown_session_is_404(client):
    assert client.post(f"/api/v1/sessions/{uuid.uuid4()}/migrate").status_code == 404


def test_migrate_without_fhir_server_is_422(client, registry):
    session = registry.create_session(provider_id="epic", patient_external_id="pat-1")
    assert client.post(f"/api/v1/sessions/{session.id}/migrate").status_code == 422


def test_migrate_rejects_unknown_types(client):
    session = _register(client)
    response = client.post(f"/api/v1/sessions/{session['id']}/migrate", json={"types": ["Encounter"]})
    assert response.status_code == 422


def test_list_resources_by_either_name(client):
    session = _register(client)
    client.post(f"/api/v1/sessions/{session['id']}/migrate")

    by_key = client.get(f"/api/v1/sessions/{session['id']}/resources/medications").json()
    by_type = client.get(f"/api/v1/sessions/{session['id']}/resources/MedicationRequest").json()

    assert by_key == by_type
    assert by_key["total"] == 3
    assert {r["id"] for r in by_key["records"]} == {"med-0", "med-1", "med-2"}
    assert client.get(f"/api/v1/sessions/{session['id']}/resources/Encounter").status_code == 404


def test_care_gaps_filtered_by_status(client, session_factory):
    session = _register(client)
    client.post(f"/api/v1/sessions/{session['id']}/migrate")

    report = client.get(
        f"/api/v1/sessions/{session['id']}/care-gaps", params={"as_of": "2024-06-15"}
    ).json()
    gaps = {gap["measure_id"]: gap for gap in report["gaps"]}
    assert report["as_of"] == "2024-06-15"
    assert gaps["HEDIS-CDC-HbA1c"]["status"] == "satisfied"
    assert gaps["HEDIS-CDC-HbA1c-Control"]["status"] == "due"
    assert gaps["HEDIS-CCS"]["status"] == "due"

    due = client.get(
        f"/api/v1/sessions/{session['id']}/care-gaps",
        params={"as_of": "2024-06-15", "status": "due"},
    ).json()["gaps"]
    assert due
    assert all(gap["status"] == "due" for gap in due)

    with session_factory() as db:
        reads = db.query(AuditLog).filter(AuditLog.resource_type == "CareGaps").count()
    assert reads == 2


def test_care_gaps_before_migration_are_not_applicable_or_due(client):
    session = _register(client)

    gaps = client.get(f"/api/v1/sessions/{session['id']}/care-gaps").json()["gaps"]

    # nothing migrated yet, so no birth date and no evidence
    assert all(gap["status"] != "satisfied" for gap in gaps)


def test_care_gaps_unknown_session_is_404(client):
    assert client.get(f"/api/v1/sessions/{uuid.uuid4()}/care-gaps").status_code == 404
