"""
Migration orchestrator: copies one patient's resources from a provider
session into the canonical store.

- Every resource type is migrated independently on a bounded pool; within a
  type, record writes run on their own bounded pool.
- A failure is recorded against its type (FetchError) or record (WriteError)
  and never aborts the rest of the migration. Partial success is a normal
  result.
- Once every type has settled, the session registry is updated exactly once.
  Only a session that cannot be loaded, or an attempt cancelled before that
  point, leaves the session unmigrated.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence
from uuid import UUID

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from healthvault.config import settings
from healthvault.etl.errors import (
    FetchError,
    InvalidSession,
    MigrationCancelled,
    MigrationError,
    WriteError,
)
from healthvault.etl.fetcher import ResourceFetcher, fetch_all
from healthvault.etl.registry import SessionRegistry
from healthvault.etl.store import CanonicalStore
from healthvault.models.records import FhirSession
from healthvault.schemas.resources import FhirResource, ResourceType, parse_resource
from healthvault.services.encryption import CredentialDecryptionError
from healthvault.services.validation import validate_resource

logger = logging.getLogger(__name__)

ResourceCollections = Mapping[ResourceType | str, Sequence[FhirResource | dict[str, Any]]]


class TypeStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    EMPTY = "empty"


@dataclass
class TypeOutcome:
    """What happened to one resource type during a migration attempt."""

    resource_type: ResourceType
    received: int = 0
    written: int = 0
    status: TypeStatus = TypeStatus.EMPTY
    error: MigrationError | None = None
    duration_ms: float = 0.0


@dataclass
class MigrationResult:
    session_id: UUID
    counts: dict[str, int] = field(default_factory=dict)
    errors: dict[str, MigrationError] = field(default_factory=dict)
    outcomes: dict[ResourceType, TypeOutcome] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.errors

    def error_summary(self) -> dict[str, str]:
        return {key: str(error) for key, error in self.errors.items()}


class MigrationOrchestrator:
    """
    Usage:
        orchestrator = MigrationOrchestrator(store, registry)
        result = orchestrator.migrate(session, patient, {ResourceType.CONDITION: conditions})
        result.counts   # {"patients": 1, "conditions": 5}
        result.errors   # {} or {"observations": FetchError(...)}
    """

    def __init__(
        self,
        store: CanonicalStore,
        registry: SessionRegistry,
        type_workers: int | None = None,
        record_workers: int | None = None,
        write_attempts: int | None = None,
    ):
        self.store = store
        self.registry = registry
        self.type_workers = type_workers or settings.MIGRATION_TYPE_WORKERS
        self.record_workers = record_workers or settings.MIGRATION_RECORD_WORKERS
        self.write_attempts = write_attempts or settings.MIGRATION_WRITE_ATTEMPTS

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def migrate(
        self,
        session: FhirSession,
        patient: FhirResource | dict[str, Any] | None,
        resource_collections: ResourceCollections,
        *,
        fetch_errors: Mapping[ResourceType, FetchError] | None = None,
        cancel_event: threading.Event | None = None,
        merge: bool = False,
    ) -> MigrationResult:
        """
        Write every record of every collection, then mark the session migrated.

        ``fetch_errors`` carries types that could not be read; they are counted
        as 0 and reported in ``errors``. Raises SessionNotFound / InvalidSession
        before any write, and MigrationCancelled if ``cancel_event`` fires
        before the session update.
        """
        if session is None or session.id is None:
            raise InvalidSession("migration requires a persisted session")
        # Confirms the session still exists before anything is written.
        self.registry.get_session(session.id)

        started_at = datetime.now(timezone.utc)
        work = _normalize_collections(resource_collections)
        if patient is not None and ResourceType.PATIENT not in work:
            work[ResourceType.PATIENT] = [patient]
        fetch_errors = dict(fetch_errors or {})

        logger.info(
            "Migrating session %s: %s",
            session.id,
            ", ".join(f"{rt.value}={len(records)}" for rt, records in work.items()) or "nothing",
        )

        outcomes: dict[ResourceType, TypeOutcome] = {}
        with ThreadPoolExecutor(
            max_workers=self.type_workers, thread_name_prefix="migrate-type"
        ) as pool:
            futures = {
                rt: pool.submit(self._migrate_type, session.id, rt, records, cancel_event)
                for rt, records in work.items()
            }
            # Barrier: every type settles before the session is touched.
            for resource_type, future in futures.items():
                try:
                    outcomes[resource_type] = future.result()
                except Exception as exc:
                    logger.exception("Unexpected failure migrating %s", resource_type.value)
                    outcomes[resource_type] = TypeOutcome(
                        resource_type=resource_type,
                        received=len(work[resource_type]),
                        status=TypeStatus.FAILED,
                        error=WriteError(resource_type, None, exc),
                    )

        if cancel_event is not None and cancel_event.is_set():
            logger.warning("Migration of session %s cancelled; session left unchanged", session.id)
            raise MigrationCancelled(f"migration of session {session.id} was cancelled")

        for resource_type, error in fetch_errors.items():
            outcomes[resource_type] = TypeOutcome(
                resource_type=resource_type, status=TypeStatus.FAILED, error=error
            )

        result = MigrationResult(session_id=session.id, outcomes=outcomes)
        for resource_type, outcome in outcomes.items():
            result.counts[resource_type.collection_key] = outcome.written
            if outcome.error is not None:
                result.errors[resource_type.collection_key] = outcome.error

        self.registry.record_migration(
            session.id,
            counts=result.counts,
            errors=result.error_summary(),
            started_at=started_at,
            merge=merge,
        )
        logger.info(
            "Migration of session %s finished: counts=%s failed=%s",
            session.id,
            result.counts,
            sorted(result.errors),
        )
        return result

    def migrate_session(
        self,
        session_id: UUID,
        fetcher: ResourceFetcher,
        types: Iterable[ResourceType | str] | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> MigrationResult:
        """
        Fetch and migrate a registered session.

        With ``types`` only those resource types are fetched and migrated and
        the session's stored counts are merged rather than replaced, which is
        how a retry of just the failed types works.
        """
        session = self.registry.get_session(session_id)
        if not session.fhir_server or not session.patient_external_id:
            raise InvalidSession(f"session {session_id} has no FHIR server or patient")
        try:
            handle = self.registry.handle_for(session)
        except CredentialDecryptionError as exc:
            raise InvalidSession(str(exc)) from exc

        scoped = types is not None
        selected = (
            [ResourceType.from_key(t) if isinstance(t, str) else t for t in types]
            if scoped
            else list(ResourceType)
        )
        collections, errors = fetch_all(fetcher, handle, selected, max_workers=self.type_workers)

        patient = None
        patients = collections.pop(ResourceType.PATIENT, None)
        if patients:
            patient = patients[0]
        elif patients is not None:
            # The server answered but sent nothing back for Patient/{id}.
            collections[ResourceType.PATIENT] = []

        return self.migrate(
            session,
            patient,
            collections,
            fetch_errors=errors,
            cancel_event=cancel_event,
            merge=scoped,
        )

    # ------------------------------------------------------------------
    # Per-type work
    # ------------------------------------------------------------------

    def _migrate_type(
        self,
        session_id: UUID,
        resource_type: ResourceType,
        records: Sequence[FhirResource | dict[str, Any]],
        cancel_event: threading.Event | None,
    ) -> TypeOutcome:
        outcome = TypeOutcome(resource_type=resource_type, received=len(records))
        start = time.perf_counter()
        write_error: WriteError | None = None

        def fail(record_id: str | None, cause: Exception | str) -> None:
            nonlocal write_error
            logger.warning("Could not migrate %s/%s: %s", resource_type.value, record_id, cause)
            if write_error is None:
                write_error = WriteError(resource_type, record_id, cause)
            else:
                write_error.add(record_id, cause)

        valid: list[FhirResource] = []
        for record in records:
            try:
                resource = record if isinstance(record, FhirResource) else parse_resource(record)
            except ValueError as exc:
                fail(_record_id(record), exc)
                continue
            problems = validate_resource(resource_type, resource.payload())
            if problems:
                fail(resource.id, "; ".join(problems))
            else:
                valid.append(resource)

        # Same source id twice in one collection: the later record wins.
        latest: dict[str, FhirResource] = {}
        for resource in valid:
            latest[resource.id] = resource
        valid = list(latest.values())

        stored_ids = set()
        if valid:
            with ThreadPoolExecutor(
                max_workers=self.record_workers,
                thread_name_prefix=f"migrate-{resource_type.collection_key}",
            ) as pool:
                futures = [
                    (resource, pool.submit(self._write_record, session_id, resource_type, resource, cancel_event))
                    for resource in valid
                ]
                for resource, future in futures:
                    try:
                        stored_id = future.result()
                    except (SQLAlchemyError, ValueError) as exc:
                        fail(resource.id, exc)
                        continue
                    if stored_id is not None:
                        stored_ids.add(stored_id)

        outcome.written = len(stored_ids)
        outcome.error = write_error
        if write_error is not None:
            outcome.status = TypeStatus.PARTIAL if outcome.written else TypeStatus.FAILED
        elif outcome.written:
            outcome.status = TypeStatus.SUCCESS
        outcome.duration_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "Migrated %s: %d/%d written in %.1fms",
            resource_type.value,
            outcome.written,
            outcome.received,
            outcome.duration_ms,
        )
        return outcome

    def _write_record(
        self,
        session_id: UUID,
        resource_type: ResourceType,
        resource: FhirResource,
        cancel_event: threading.Event | None,
    ) -> UUID | None:
        if cancel_event is not None and cancel_event.is_set():
            return None
        retrying = Retrying(
            stop=stop_after_attempt(self.write_attempts),
            wait=wait_exponential(multiplier=0.1, max=2),
            retry=retry_if_exception_type(OperationalError),
            reraise=True,
        )
        return retrying(self.store.create, resource_type, resource, session_id)


def _normalize_collections(
    collections: ResourceCollections,
) -> dict[ResourceType, list[FhirResource | dict[str, Any]]]:
    work: dict[ResourceType, list[FhirResource | dict[str, Any]]] = {}
    for key, records in (collections or {}).items():
        resource_type = key if isinstance(key, ResourceType) else ResourceType.from_key(key)
        work.setdefault(resource_type, []).extend(records or [])
    return work


def _record_id(record: Any) -> str | None:
    if isinstance(record, dict):
        return record.get("id")
    return getattr(record, "id", None)
