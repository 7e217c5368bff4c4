"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from healthvault.caregaps.catalog import GapStatus, Priority
from healthvault.schemas.resources import ResourceType


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionCreateRequest(BaseModel):
    """Handed over by the provider authorization flow once a patient connects."""
    provider_id: str = Field(..., min_length=1, max_length=128)
    patient_external_id: str = Field(..., min_length=1, max_length=128)
    fhir_server: str = Field(..., min_length=1)
    access_token: str | None = None
    scope: str | None = None


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_id: str
    patient_external_id: str
    fhir_server: str | None
    migrated: bool
    migration_date: datetime | None = None
    migration_counts: dict[str, int] | None = None
    migration_errors: dict[str, str] | None = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------

class MigrateRequest(BaseModel):
    """
    Omit ``types`` to migrate everything; list types to retry just those.
    FHIR names (``Observation``) and error-map keys (``observations``) both work.
    """
    types: list[ResourceType] | None = None

    @field_validator("types", mode="before")
    @classmethod
    def _normalize_types(cls, value):
        if isinstance(value, list):
            return [ResourceType.from_key(v) if isinstance(v, str) else v for v in value]
        return value


class TypeSummary(BaseModel):
    status: str
    received: int
    written: int
    duration_ms: float | None = None
    error: str | None = None


class MigrationResponse(BaseModel):
    session_id: UUID
    complete: bool
    counts: dict[str, int]
    errors: dict[str, str] = {}
    types: dict[str, TypeSummary] = {}


# ---------------------------------------------------------------------------
# Records and care gaps
# ---------------------------------------------------------------------------

class ResourceListResponse(BaseModel):
    resource_type: ResourceType
    patient_id: str
    total: int
    records: list[dict[str, Any]]


class CareGapResponse(BaseModel):
    measure_id: str
    title: str
    description: str
    category: str
    status: GapStatus
    priority: Priority
    recommended_action: str
    due_date: date | None = None
    last_performed_date: date | None = None
    reason: str | None = None


class CareGapReport(BaseModel):
    session_id: UUID
    patient_id: str
    as_of: date
    gaps: list[CareGapResponse]


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
