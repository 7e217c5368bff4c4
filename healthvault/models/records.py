"""
Persistence model for the local health vault.

- fhir_sessions: one row per authorized provider connection, including the
  migration status the orchestrator writes at the end of each attempt
- one table per clinical resource type, keyed so the same source resource
  from the same session is stored exactly once
- migration_runs: history of every migration attempt
- audit_log: immutable compliance trail
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declared_attr

from healthvault.models.database import Base
from healthvault.schemas.resources import ResourceType

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# FHIR session – one authorized connection to an external provider
# ---------------------------------------------------------------------------
class FhirSession(Base):
    __tablename__ = "fhir_sessions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id = Column(String(128), nullable=False, comment="Provider slug, e.g. epic")
    patient_external_id = Column(String(128), nullable=False, comment="Patient id at the source")
    fhir_server = Column(Text, nullable=True, comment="Base URL of the provider FHIR API")
    scope = Column(Text, nullable=True)
    encrypted_access_token = Column(Text, nullable=True, comment="Fernet-encrypted bearer token")

    migrated = Column(Boolean, default=False, nullable=False)
    migration_date = Column(DateTime(timezone=True), nullable=True)
    migration_counts = Column(JsonType, nullable=True, comment="Per-type written record counts")
    migration_errors = Column(JsonType, nullable=True, comment="Per-type error summary of the last attempt")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_fhir_sessions_patient", "patient_external_id"),)


# ---------------------------------------------------------------------------
# Clinical resources – one table per FHIR resource type
# ---------------------------------------------------------------------------
class ResourceRecordMixin:
    """Columns shared by every canonical resource table."""

    id = Column(Uuid, primary_key=True, comment="Deterministic id derived from the idempotency key")
    external_id = Column(String(128), nullable=False, comment="Logical id at the source")
    patient_id = Column(String(128), nullable=True, comment="Source patient the resource belongs to")
    payload = Column(JsonType, nullable=False, comment="Full FHIR JSON payload")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @declared_attr
    def source_session_id(cls):
        return Column(Uuid, ForeignKey("fhir_sessions.id"), nullable=False)

    @declared_attr.directive
    def __table_args__(cls):
        return (
            UniqueConstraint(
                "source_session_id", "external_id", name=f"uq_{cls.__tablename__}_source_key"
            ),
            Index(f"ix_{cls.__tablename__}_patient", "patient_id"),
        )


class PatientRecord(ResourceRecordMixin, Base):
    __tablename__ = "patients"


class ConditionRecord(ResourceRecordMixin, Base):
    __tablename__ = "conditions"


class ObservationRecord(ResourceRecordMixin, Base):
    __tablename__ = "observations"


class MedicationRequestRecord(ResourceRecordMixin, Base):
    __tablename__ = "medication_requests"


class AllergyIntoleranceRecord(ResourceRecordMixin, Base):
    __tablename__ = "allergy_intolerances"


class ImmunizationRecord(ResourceRecordMixin, Base):
    __tablename__ = "immunizations"


class CoverageRecord(ResourceRecordMixin, Base):
    __tablename__ = "coverages"


class ClaimRecord(ResourceRecordMixin, Base):
    __tablename__ = "claims"


class ExplanationOfBenefitRecord(ResourceRecordMixin, Base):
    __tablename__ = "explanation_of_benefits"


RESOURCE_MODELS: dict[ResourceType, type[ResourceRecordMixin]] = {
    ResourceType.PATIENT: PatientRecord,
    ResourceType.CONDITION: ConditionRecord,
    ResourceType.OBSERVATION: ObservationRecord,
    ResourceType.MEDICATION_REQUEST: MedicationRequestRecord,
    ResourceType.ALLERGY_INTOLERANCE: AllergyIntoleranceRecord,
    ResourceType.IMMUNIZATION: ImmunizationRecord,
    ResourceType.COVERAGE: CoverageRecord,
    ResourceType.CLAIM: ClaimRecord,
    ResourceType.EXPLANATION_OF_BENEFIT: ExplanationOfBenefitRecord,
}


# ---------------------------------------------------------------------------
# Audit Log – immutable compliance trail
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    actor = Column(String(128), nullable=False, comment="User or service identity")
    action = Column(String(64), nullable=False, comment="create | read | migrate | evaluate")
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(String(128), nullable=False)
    detail = Column(JsonType, comment="Context for the action")
    timestamp = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_timestamp", "timestamp"),)


# ---------------------------------------------------------------------------
# Migration Run – history of every migration attempt
# ---------------------------------------------------------------------------
class MigrationRun(Base):
    __tablename__ = "migration_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, ForeignKey("fhir_sessions.id"), nullable=False)
    status = Column(String(16), nullable=False, comment="completed | partial | failed")
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=False)
    counts = Column(JsonType, default=dict)
    errors = Column(JsonType, default=dict)

    __table_args__ = (Index("ix_migration_runs_session", "session_id"),)
