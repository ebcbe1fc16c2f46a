# Overview: Structured audit records written inside the caller's transaction.

"""
Audit Invariants (authoritative)

- Append-only: no updates or deletes of existing records.
- Written in the same DB transaction as the change they record (flush, never commit).
- old_values/new_values are flat {field: scalar}; datetimes are stored as ISO-8601 'Z'.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from ..models import AuditAction, AuditRecord
from tillpoint.time_utils import to_utc_z, utcnow


_SCALARS = (str, int, float, bool, type(None))


def _normalize_fields(values: Optional[dict]) -> Optional[dict]:
    if values is None:
        return None
    normalized = {}
    for key, value in values.items():
        if isinstance(value, datetime):
            value = to_utc_z(value)
        elif isinstance(value, date):
            value = value.isoformat()
        elif not isinstance(value, _SCALARS):
            raise TypeError(f"Audit field {key!r} must be a scalar, got {type(value).__name__}")
        normalized[str(key)] = value
    return normalized


def record_audit(
    session,
    *,
    entity_type: str,
    entity_id: int,
    actor_id: str,
    action: AuditAction,
    old_values: Optional[dict] = None,
    new_values: Optional[dict] = None,
) -> AuditRecord:
    record = AuditRecord(
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=str(actor_id),
        action=AuditAction(action),
        old_values=_normalize_fields(old_values),
        new_values=_normalize_fields(new_values),
        occurred_at=utcnow(),
    )
    session.add(record)
    session.flush()
    return record


def history_for(session, entity_type: str, entity_id: int) -> list[AuditRecord]:
    return (
        session.query(AuditRecord)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(AuditRecord.occurred_at, AuditRecord.id)
        .all()
    )
