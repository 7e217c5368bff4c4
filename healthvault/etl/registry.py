"""
Session registry: the authoritative record of each provider connection and
its migration status.

Migration status is written once per attempt, by ``record_migration``, after
every per-type write has settled. Callers never see a half-updated session.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.orm import sessionmaker

from healthvault.etl.errors import SessionNotFound
from healthvault.etl.fetcher import SessionHandle
from healthvault.models.records import FhirSession, MigrationRun
from healthvault.services.audit import AuditAction, log_action
from healthvault.services.encryption import EncryptionService

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(self, session_factory: sessionmaker, encryption: EncryptionService | None = None):
        self._session_factory = session_factory
        self._encryption = encryption or EncryptionService()

    def create_session(
        self,
        *,
        provider_id: str,
        patient_external_id: str,
        fhir_server: str | None = None,
        access_token: str | None = None,
        scope: str | None = None,
        actor: str = "auth_flow",
    ) -> FhirSession:
        """Register a connection handed over by the authorization flow."""
        with self._session_factory() as db:
            session = FhirSession(
                provider_id=provider_id,
                patient_external_id=patient_external_id,
                fhir_server=fhir_server,
                scope=scope,
                encrypted_access_token=self._encryption.encrypt(access_token or "") or None,
                migrated=False,
            )
            db.add(session)
            db.flush()
            log_action(
                db,
                actor=actor,
                action=AuditAction.CREATE,
                resource_type="FhirSession",
                resource_id=session.id,
                detail={"provider": provider_id},
            )
            db.commit()
            db.refresh(session)
            db.expunge(session)
            return session

    def get_session(self, session_id: UUID) -> FhirSession:
        with self._session_factory() as db:
            session = db.get(FhirSession, session_id)
            if session is None:
                raise SessionNotFound(session_id)
            db.expunge(session)
            return session

    def handle_for(self, session: FhirSession) -> SessionHandle:
        """Decrypt the stored credential into a handle the fetchers can use."""
        return SessionHandle(
            fhir_server=session.fhir_server or "",
            patient_external_id=session.patient_external_id,
            access_token=self._encryption.decrypt(session.encrypted_access_token or "") or None,
        )

    def record_migration(
        self,
        session_id: UUID,
        *,
        counts: dict[str, int],
        errors: dict[str, str],
        started_at: datetime,
        merge: bool = False,
        actor: str = "migration_orchestrator",
    ) -> FhirSession:
        """
        Mark the session migrated with this attempt's counts, and append the
        attempt to the run history. One transaction.

        With ``merge`` (a retry scoped to some types) the attempted types
        replace their previous entries and every other type keeps its last
        known count and error.
        """
        now = datetime.now(timezone.utc)
        with self._session_factory() as db:
            session = db.get(FhirSession, session_id)
            if session is None:
                raise SessionNotFound(session_id)

            if merge:
                prior_errors = {
                    key: value
                    for key, value in (session.migration_errors or {}).items()
                    if key not in counts
                }
                session.migration_counts = {**(session.migration_counts or {}), **counts}
                session.migration_errors = {**prior_errors, **errors}
            else:
                session.migration_counts = dict(counts)
                session.migration_errors = dict(errors)
            session.migrated = True
            session.migration_date = now

            if not errors:
                status = "completed"
            elif any(counts.values()):
                status = "partial"
            else:
                status = "failed"
            db.add(
                MigrationRun(
                    session_id=session_id,
                    status=status,
                    started_at=started_at,
                    completed_at=now,
                    counts=dict(counts),
                    errors=dict(errors),
                )
            )
            log_action(
                db,
                actor=actor,
                action=AuditAction.MIGRATE,
                resource_type="FhirSession",
                resource_id=session_id,
                detail={"status": status, "counts": counts, "failed_types": sorted(errors)},
            )
            db.commit()
            db.refresh(session)
            db.expunge(session)
            logger.info("Session %s marked migrated (%s)", session_id, status)
            return session

    def list_runs(self, session_id: UUID) -> list[MigrationRun]:
        with self._session_factory() as db:
            runs = (
                db.query(MigrationRun)
                .filter(MigrationRun.session_id == session_id)
                .order_by(MigrationRun.completed_at)
                .all()
            )
            for run in runs:
                db.expunge(run)
            return runs
