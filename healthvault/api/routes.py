"""
FastAPI routes – the main API surface.

- Session registration, called by the provider authorization flow
- Migration trigger, optionally scoped to the types that failed last time
- Read access to migrated records and the patient's care gaps
"""

from __future__ import annotations

import logging
from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from healthvault.caregaps.catalog import GapStatus
from healthvault.config import settings
from healthvault.etl.errors import InvalidSession, MigrationCancelled, SessionNotFound
from healthvault.etl.fetcher import FhirResourceFetcher, ResourceFetcher
from healthvault.etl.migration import MigrationOrchestrator
from healthvault.etl.registry import SessionRegistry
from healthvault.etl.store import CanonicalStore
from healthvault.models.database import get_db, get_session_factory
from healthvault.models.records import FhirSession
from healthvault.schemas.api import (
    CareGapReport,
    CareGapResponse,
    HealthResponse,
    MigrateRequest,
    MigrationResponse,
    ResourceListResponse,
    SessionCreateRequest,
    SessionResponse,
    TypeSummary,
)
from healthvault.schemas.resources import ResourceType
from healthvault.services.audit import AuditAction, log_action

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_registry(factory: sessionmaker = Depends(get_session_factory)) -> SessionRegistry:
    return SessionRegistry(factory)


def get_store(factory: sessionmaker = Depends(get_session_factory)) -> CanonicalStore:
    return CanonicalStore(factory)


def get_fetcher() -> ResourceFetcher:
    return FhirResourceFetcher()


def get_orchestrator(
    store: CanonicalStore = Depends(get_store),
    registry: SessionRegistry = Depends(get_registry),
) -> MigrationOrchestrator:
    return MigrationOrchestrator(store, registry)


def _load_session(registry: SessionRegistry, session_id: UUID) -> FhirSession:
    try:
        return registry.get_session(session_id)
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database")
        db_status = "disconnected"
    return HealthResponse(
        status="healthy",
        environment=settings.ENVIRONMENT,
        database=db_status,
    )


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@router.post("/sessions", response_model=SessionResponse, status_code=201)
def create_session(
    request: SessionCreateRequest, registry: SessionRegistry = Depends(get_registry)
):
    """Register a provider connection; the access token is stored encrypted."""
    session = registry.create_session(
        provider_id=request.provider_id,
        patient_external_id=request.patient_external_id,
        fhir_server=request.fhir_server,
        access_token=request.access_token,
        scope=request.scope,
    )
    return SessionResponse.model_validate(session)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session(session_id: UUID, registry: SessionRegistry = Depends(get_registry)):
    return SessionResponse.model_validate(_load_session(registry, session_id))


# ---------------------------------------------------------------------------
# Migration trigger
# ---------------------------------------------------------------------------

@router.post("/sessions/{session_id}/migrate", response_model=MigrationResponse)
def migrate_session(
    session_id: UUID,
    request: MigrateRequest | None = None,
    orchestrator: MigrationOrchestrator = Depends(get_orchestrator),
    fetcher: ResourceFetcher = Depends(get_fetcher),
):
    """
    Copy the patient's records from the provider into the vault.

    A partial migration is still a 200: per-type failures are listed in
    ``errors`` and can be retried by posting ``{"types": [...]}``.
    """
    types = request.types if request is not None else None
    try:
        result = orchestrator.migrate_session(session_id, fetcher, types)
    except SessionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidSession as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except MigrationCancelled as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    return MigrationResponse(
        session_id=result.session_id,
        complete=result.complete,
        counts=result.counts,
        errors=result.error_summary(),
        types={
            rt.collection_key: TypeSummary(
                status=outcome.status.value,
                received=outcome.received,
                written=outcome.written,
                duration_ms=outcome.duration_ms,
                error=str(outcome.error) if outcome.error is not None else None,
            )
            for rt, outcome in result.outcomes.items()
        },
    )


# ---------------------------------------------------------------------------
# Migrated records
# ---------------------------------------------------------------------------

@router.get("/sessions/{session_id}/resources/{resource_type}", response_model=ResourceListResponse)
def list_resources(
    session_id: UUID,
    resource_type: str,
    registry: SessionRegistry = Depends(get_registry),
    store: CanonicalStore = Depends(get_store),
):
    """Records of one type (``Condition`` or ``conditions``) migrated by this session."""
    try:
        rt = ResourceType.from_key(resource_type)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    session = _load_session(registry, session_id)
    records = store.list_by_patient(rt, session.patient_external_id, session.id)
    return ResourceListResponse(
        resource_type=rt,
        patient_id=session.patient_external_id,
        total=len(records),
        records=records,
    )


# ---------------------------------------------------------------------------
# Care gaps
# ---------------------------------------------------------------------------

@router.get("/sessions/{session_id}/care-gaps", response_model=CareGapReport)
def get_care_gaps(
    session_id: UUID,
    status: GapStatus | None = Query(default=None),
    as_of: date | None = Query(default=None),
    registry: SessionRegistry = Depends(get_registry),
    store: CanonicalStore = Depends(get_store),
    db: Session = Depends(get_db),
):
    """Evaluate every measure against the records this session migrated."""
    session = _load_session(registry, session_id)
    as_of = as_of or date.today()
    snapshot = store.load_snapshot(session.patient_external_id, session.id)
    gaps = snapshot.evaluate(as_of=as_of)
    if status is not None:
        gaps = [gap for gap in gaps if gap.status is status]

    log_action(
        db,
        actor="api_user",
        action=AuditAction.READ,
        resource_type="CareGaps",
        resource_id=session.id,
        detail={"as_of": as_of.isoformat(), "status": status.value if status else None},
    )
    db.commit()

    return CareGapReport(
        session_id=session.id,
        patient_id=session.patient_external_id,
        as_of=as_of,
        gaps=[
            CareGapResponse(
                measure_id=gap.measure_id,
                title=gap.title,
                description=gap.description,
                category=gap.category,
                status=gap.status,
                priority=gap.priority,
                recommended_action=gap.recommended_action,
                due_date=gap.due_date,
                last_performed_date=gap.last_performed_date,
                reason=gap.reason,
            )
            for gap in gaps
        ],
    )
