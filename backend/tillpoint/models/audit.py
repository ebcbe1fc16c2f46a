from __future__ import annotations

import enum

from ..extensions import db
from tillpoint.time_utils import to_utc_z


class AuditAction(str, enum.Enum):
    SALE_COMPLETED = "SALE_COMPLETED"
    SALE_PENDING_PAYMENT = "SALE_PENDING_PAYMENT"
    SALE_PAYMENT_FAILED = "SALE_PAYMENT_FAILED"
    SALE_VOIDED = "SALE_VOIDED"
    SALE_REFUNDED = "SALE_REFUNDED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    STOCK_IN = "STOCK_IN"
    STOCK_RESTORED = "STOCK_RESTORED"
    CATALOG_PATCHED = "CATALOG_PATCHED"
    REFUND_RECORDED = "REFUND_RECORDED"


class AuditRecord(db.Model):
    """
    Append-only structured audit trail.

    old_values/new_values hold flat {field: scalar} maps so the history stays
    machine-inspectable. Records are written in the same transaction as the
    change they describe and are never updated or deleted.
    """
    __tablename__ = "audit_records"
    __table_args__ = (
        db.Index("ix_audit_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    actor_id = db.Column(db.String(64), nullable=False, index=True)
    action = db.Column(db.Enum(AuditAction, native_enum=False, length=32), nullable=False, index=True)
    old_values = db.Column(db.JSON, nullable=True)
    new_values = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "action": self.action.value,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class DocumentSequence(db.Model):
    """
    Atomic per-type document sequences.

    Sale numbers are allocated by a row-locked increment, one per sequence.
    """
    __tablename__ = "document_sequences"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False, unique=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
