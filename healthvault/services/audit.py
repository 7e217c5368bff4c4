"""
Audit trail for sessions, migrations and care-gap reads.

Entries are added to the caller's transaction so the audit row commits or
rolls back together with the change it describes.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from healthvault.models.records import AuditLog

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    CREATE = "create"
    READ = "read"
    MIGRATE = "migrate"


def log_action(
    db: Session,
    *,
    actor: str,
    action: AuditAction,
    resource_type: str,
    resource_id: UUID | str,
    detail: dict[str, Any] | None = None,
) -> AuditLog:
    entry = AuditLog(
        actor=actor,
        action=action.value,
        resource_type=resource_type,
        resource_id=str(resource_id),
        detail=detail,
    )
    db.add(entry)
    db.flush()
    logger.info("AUDIT: %s %s %s/%s", actor, action.value, resource_type, resource_id)
    return entry


def audit_trail(db: Session, resource_id: UUID | str) -> list[AuditLog]:
    """Every entry recorded against one resource, oldest first."""
    stmt = (
        select(AuditLog)
        .where(AuditLog.resource_id == str(resource_id))
        .order_by(AuditLog.timestamp, AuditLog.action)
    )
    return list(db.scalars(stmt))
