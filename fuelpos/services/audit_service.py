from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from fuelpos.auth import Principal
from fuelpos.config import settings
from fuelpos.models import AuditLog

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def record(
        self,
        *,
        action: str,
        entity_type: str,
        entity_id: object,
        description: str,
        old_values: dict | None = None,
        new_values: dict | None = None,
        scope: dict | None = None,
        actor: Principal | None = None,
    ) -> None: ...


def _jsonable(value: object) -> object:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def log_audit(
    db: Session,
    *,
    action: str,
    entity_type: str,
    entity_id: object,
    description: str,
    old_values: dict | None = None,
    new_values: dict | None = None,
    scope: dict | None = None,
    actor: Principal | None = None,
) -> None:
    scope = scope or {}
    db.add(
        AuditLog(
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            description=description,
            old_values=_jsonable(old_values) if old_values is not None else None,
            new_values=_jsonable(new_values) if new_values is not None else None,
            branch_id=scope.get('branch_id'),
            actor_id=actor.id if actor else None,
            actor_name=actor.display_name if actor else None,
            actor_role=actor.role.value if actor else None,
            meta=_jsonable(scope),
            created_at=datetime.now().astimezone(),
        )
    )


class DbAuditSink:
    """Writes audit rows in a SAVEPOINT so a failed insert never aborts the domain write."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def record(self, **event) -> None:
        try:
            with self.db.begin_nested():
                log_audit(self.db, **event)
        except Exception:
            logger.warning(
                'Audit log failed: action=%s entity=%s id=%s',
                event.get('action'),
                event.get('entity_type'),
                event.get('entity_id'),
                exc_info=True,
            )


class NullAuditSink:
    def record(self, **event) -> None:
        logger.debug('Audit disabled, dropping %s event', event.get('action'))


def get_audit_sink(db: Session) -> AuditSink:
    if not settings.audit_enabled:
        return NullAuditSink()
    return DbAuditSink(db)


def list_audit_logs(
    db: Session,
    *,
    entity_type: str | None = None,
    entity_id: object = None,
    branch_id: int | None = None,
    limit: int = 50,
) -> list[dict]:
    query = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.where(AuditLog.entity_id == str(entity_id))
    if branch_id:
        query = query.where(AuditLog.branch_id == branch_id)

    return [
        {
            'id': row.id,
            'action': row.action,
            'entity_type': row.entity_type,
            'entity_id': row.entity_id,
            'description': row.description,
            'old_values': row.old_values,
            'new_values': row.new_values,
            'branch_id': row.branch_id,
            'actor_name': row.actor_name,
            'actor_role': row.actor_role,
            'created_at': row.created_at,
        }
        for row in db.execute(query).scalars().all()
    ]
