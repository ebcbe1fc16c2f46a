from __future__ import annotations

from ..extensions import db
from tillpoint.time_utils import to_utc_z


# Item types
SYNC_SALE = "sale"
SYNC_STOCK_ENTRY = "stock_entry"
SYNC_REFUND = "refund"
SYNC_CATALOG_PATCH = "catalog_patch"

VALID_SYNC_TYPES = [SYNC_SALE, SYNC_STOCK_ENTRY, SYNC_REFUND, SYNC_CATALOG_PATCH]

# Lifecycle
SYNC_PENDING = "pending"
SYNC_PROCESSING = "processing"
SYNC_COMPLETED = "completed"
SYNC_FAILED = "failed"


class SyncQueueItem(db.Model):
    """
    Durable record of a mutation captured while disconnected.

    LIFECYCLE: pending -> processing -> completed
                                     -> pending (retry_count < max_retries)
                                     -> failed  (dead letter, never retried automatically)
    """
    __tablename__ = "sync_queue_items"
    __table_args__ = (
        db.Index("ix_sync_queue_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(32), nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=False)

    idempotency_key = db.Column(db.String(128), nullable=False, unique=True)
    actor_id = db.Column(db.String(64), nullable=False)

    retry_count = db.Column(db.Integer, nullable=False, default=0)
    max_retries = db.Column(db.Integer, nullable=False, default=3)
    status = db.Column(db.String(16), nullable=False, default=SYNC_PENDING, index=True)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<SyncQueueItem id={self.id} type={self.type} status={self.status} retries={self.retry_count}/{self.max_retries}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "idempotency_key": self.idempotency_key,
            "actor_id": self.actor_id,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "status": self.status,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "claimed_at": to_utc_z(self.claimed_at),
            "completed_at": to_utc_z(self.completed_at),
        }
