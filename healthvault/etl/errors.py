"""
Migration error taxonomy.

FetchError and WriteError are per-type / per-record outcomes: they are
collected into MigrationResult.errors and never raised past the
orchestrator. SessionNotFound, InvalidSession and MigrationCancelled are
fatal for the attempt and propagate to the caller.
"""

from __future__ import annotations

from healthvault.schemas.resources import ResourceType


class MigrationError(Exception):
    """Base class for everything the migration engine reports."""


class FetchError(MigrationError):
    """Reading one resource type from the external source failed."""

    def __init__(self, resource_type: ResourceType, cause: Exception | str):
        self.resource_type = resource_type
        self.cause = cause
        super().__init__(f"Failed to fetch {resource_type.value}: {cause}")


class WriteError(MigrationError):
    """
    One or more records of a type could not be persisted.

    ``failed_records`` maps the source id of each failed record to its cause;
    ``record_id``/``cause`` describe the first failure.
    """

    def __init__(self, resource_type: ResourceType, record_id: str | None, cause: Exception | str):
        self.resource_type = resource_type
        self.record_id = record_id
        self.cause = cause
        self.failed_records: dict[str, str] = {str(record_id): str(cause)}
        super().__init__(f"Failed to write {resource_type.value}/{record_id}: {cause}")

    def add(self, record_id: str | None, cause: Exception | str) -> None:
        self.failed_records[str(record_id)] = str(cause)

    def __str__(self) -> str:
        extra = len(self.failed_records) - 1
        base = super().__str__()
        return f"{base} (+{extra} more)" if extra > 0 else base


class SessionNotFound(MigrationError):
    def __init__(self, session_id):
        self.session_id = session_id
        super().__init__(f"FHIR session {session_id} not found")


class InvalidSession(MigrationError):
    """The session exists but cannot be used to migrate (e.g. no patient id)."""


class MigrationCancelled(MigrationError):
    """The attempt was cancelled before the final session update."""
