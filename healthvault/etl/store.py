"""
Canonical store for migrated FHIR resources.

The only component with write authority over the resource tables. Every
create is a single-record transaction keyed by
(source session, resource type, source id); the stored id is a UUID derived
from that key, so repeating a create can never produce a second row.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from healthvault.caregaps.snapshot import PatientSnapshot, typed_views
from healthvault.models.records import RESOURCE_MODELS
from healthvault.schemas.resources import (
    ConditionResource,
    FhirResource,
    ImmunizationResource,
    ObservationResource,
    PatientResource,
    ResourceType,
    parse_resource,
)

logger = logging.getLogger(__name__)

_KEY_NAMESPACE = uuid.UUID("6f1c7a52-5d1e-4b8f-9a55-3f0e2d6b9c41")


def resource_key(source_session_id: UUID, resource_type: ResourceType, external_id: str) -> UUID:
    """Deterministic stored id for one source resource."""
    return uuid.uuid5(_KEY_NAMESPACE, f"{source_session_id}/{resource_type.value}/{external_id}")


class CanonicalStore:
    """SQLAlchemy-backed store; opens one short-lived session per operation."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(
        self,
        resource_type: ResourceType,
        record: FhirResource | dict[str, Any],
        source_session_id: UUID,
    ) -> UUID:
        """
        Idempotent create. A repeat with the same key and payload is a no-op;
        a repeat with a changed payload overwrites it (last write wins).
        Returns the stored id.
        """
        resource = record if isinstance(record, FhirResource) else parse_resource(record)
        payload = resource.payload()
        external_id = resource.id
        if not external_id:
            raise ValueError(f"{resource_type.value} record has no id")

        stored_id = resource_key(source_session_id, resource_type, external_id)
        fields = {"patient_id": resource.patient_id(), "payload": payload}

        with self._session_factory() as db:
            try:
                with db.begin():
                    self._upsert(db, resource_type, stored_id, source_session_id, external_id, fields)
            except IntegrityError:
                # A concurrent writer inserted the same key first; apply ours on top.
                with db.begin():
                    if not self._overwrite(db, resource_type, stored_id, fields):
                        raise
        return stored_id

    def _upsert(
        self,
        db: Session,
        resource_type: ResourceType,
        stored_id: UUID,
        source_session_id: UUID,
        external_id: str,
        fields: dict[str, Any],
    ) -> None:
        if self._overwrite(db, resource_type, stored_id, fields):
            return
        model = RESOURCE_MODELS[resource_type]
        db.add(
            model(
                id=stored_id,
                source_session_id=source_session_id,
                external_id=external_id,
                **fields,
            )
        )
        db.flush()

    def _overwrite(
        self, db: Session, resource_type: ResourceType, stored_id: UUID, fields: dict[str, Any]
    ) -> bool:
        existing = db.get(RESOURCE_MODELS[resource_type], stored_id)
        if existing is None:
            return False
        if existing.payload != fields["payload"] or existing.patient_id != fields["patient_id"]:
            logger.debug("Overwriting %s/%s with newer payload", resource_type.value, existing.external_id)
            existing.payload = fields["payload"]
            existing.patient_id = fields["patient_id"]
        return True

    def get(self, resource_type: ResourceType, stored_id: UUID) -> dict[str, Any] | None:
        with self._session_factory() as db:
            row = db.get(RESOURCE_MODELS[resource_type], stored_id)
            return dict(row.payload) if row is not None else None

    def list_by_patient(
        self,
        resource_type: ResourceType,
        patient_id: str,
        source_session_id: UUID | None = None,
    ) -> list[dict[str, Any]]:
        """Payloads of every stored resource of one type for a patient."""
        model = RESOURCE_MODELS[resource_type]
        stmt = select(model).where(model.patient_id == patient_id)
        if source_session_id is not None:
            stmt = stmt.where(model.source_session_id == source_session_id)
        stmt = stmt.order_by(model.source_session_id, model.external_id)
        with self._session_factory() as db:
            return [dict(row.payload) for row in db.scalars(stmt)]

    def load_snapshot(self, patient_id: str, source_session_id: UUID | None = None) -> PatientSnapshot:
        """Everything the care-gap evaluator reads for one patient."""
        patients = typed_views(
            self.list_by_patient(ResourceType.PATIENT, patient_id, source_session_id), PatientResource
        )
        return PatientSnapshot(
            patient_id=patient_id,
            # several sessions may hold a copy; list order makes the pick stable
            patient=patients[-1] if patients else None,
            conditions=typed_views(
                self.list_by_patient(ResourceType.CONDITION, patient_id, source_session_id),
                ConditionResource,
            ),
            observations=typed_views(
                self.list_by_patient(ResourceType.OBSERVATION, patient_id, source_session_id),
                ObservationResource,
            ),
            immunizations=typed_views(
                self.list_by_patient(ResourceType.IMMUNIZATION, patient_id, source_session_id),
                ImmunizationResource,
            ),
        )

    def count(self, resource_type: ResourceType, source_session_id: UUID | None = None) -> int:
        model = RESOURCE_MODELS[resource_type]
        stmt = select(func.count()).select_from(model)
        if source_session_id is not None:
            stmt = stmt.where(model.source_session_id == source_session_id)
        with self._session_factory() as db:
            return int(db.scalar(stmt) or 0)
