# Overview: Durable offline mutation queue with per-item claiming, bounded retry and dead-lettering.

"""
Offline Sync Queue

LIFECYCLE: pending -> processing -> completed
                                 -> pending  (retry_count < max_retries)
                                 -> failed   (retry_count reaches max_retries; dead letter)

GUARANTEES:
- Exactly-once effect per idempotency key: every handler is idempotent on
  the item's key, so re-running an item whose handler committed but whose
  status update did not (crash, stale claim) has no second effect.
- Claiming is a conditional UPDATE (pending -> processing); only the caller
  that flips the row runs the handler.
- One item's failure never blocks the others in the same pass.
- Dead letters are never retried automatically; requeue() is the manual path.
- drain() passes do not overlap: the pass holds the drain lock and a second
  caller skips instead of waiting.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, func, or_, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, NotFoundError, RetryExhausted, ValidationError
from ..identity import Actor
from ..models import SyncQueueItem
from ..models.sync import (
    SYNC_COMPLETED,
    SYNC_FAILED,
    SYNC_PENDING,
    SYNC_PROCESSING,
    VALID_SYNC_TYPES,
)
from tillpoint.time_utils import utcnow
from .concurrency import lock_for_update, write_transaction

logger = logging.getLogger(__name__)

# handler(payload, actor, idempotency_key); raising means the attempt failed
SyncHandler = Callable[[dict, Actor, str], object]

MAX_ERROR_LENGTH = 1000


@dataclass
class DrainReport:
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    skipped: int = 0
    released: int = 0
    dead_lettered: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "retried": self.retried,
            "skipped": self.skipped,
            "released": self.released,
            "dead_lettered": [err.to_dict() for err in self.dead_lettered],
        }


class SyncQueue:
    def __init__(
        self,
        session,
        handlers: dict[str, SyncHandler],
        *,
        max_retries: int = 3,
        retention_days: int = 7,
        batch_size: int = 50,
        stale_claim_seconds: int = 300,
        drain_lock: Optional[threading.Lock] = None,
    ):
        self.session = session
        self.handlers = handlers
        self.max_retries = max_retries
        self.retention = timedelta(days=retention_days)
        self.batch_size = batch_size
        self.stale_claim = timedelta(seconds=stale_claim_seconds)
        self.drain_lock = drain_lock or threading.Lock()

    # -------------------------------------------------------------------------
    # producers
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        item_type: str,
        payload: dict,
        actor: Actor,
        idempotency_key: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> tuple[SyncQueueItem, bool]:
        """
        Persist one offline mutation. Returns (item, created); an already
        known idempotency key returns the existing item with created=False.
        """
        if item_type not in VALID_SYNC_TYPES:
            raise ValidationError(
                f"Unknown sync type: {item_type}. Must be one of {VALID_SYNC_TYPES}",
                details={"field": "type"},
            )
        if not isinstance(payload, dict):
            raise ValidationError("Sync payload must be an object", details={"field": "payload"})
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Sync payload is not JSON-serializable: {exc}", details={"field": "payload"}) from exc
        if max_retries is not None and (not isinstance(max_retries, int) or max_retries < 1):
            raise ValidationError("max_retries must be a positive integer", details={"field": "max_retries"})

        key = idempotency_key or uuid.uuid4().hex

        def _op():
            existing = self.session.query(SyncQueueItem).filter_by(idempotency_key=key).first()
            if existing is not None:
                return existing, False
            now = utcnow()
            item = SyncQueueItem(
                type=item_type,
                payload=payload,
                idempotency_key=key,
                actor_id=actor.id,
                retry_count=0,
                max_retries=max_retries or self.max_retries,
                status=SYNC_PENDING,
                created_at=now,
                updated_at=now,
            )
            self.session.add(item)
            self.session.flush()
            return item, True

        try:
            item, created = write_transaction(self.session, _op)
        except IntegrityError:
            existing = self.session.query(SyncQueueItem).filter_by(idempotency_key=key).first()
            if existing is None:
                raise
            return existing, False

        if created:
            logger.debug("Enqueued sync item %s (%s) key=%s", item.id, item_type, key)
        return item, created

    # -------------------------------------------------------------------------
    # drain
    # -------------------------------------------------------------------------

    def drain(self, limit: Optional[int] = None) -> Optional[DrainReport]:
        """
        Run one drain pass. Returns None when another pass holds the lock.
        """
        if not self.drain_lock.acquire(blocking=False):
            logger.debug("Drain pass skipped; another pass is running")
            return None
        try:
            return self._drain(limit or self.batch_size)
        finally:
            self.drain_lock.release()

    def _drain(self, limit: int) -> DrainReport:
        report = DrainReport()
        report.released = self.release_stale_claims()

        item_ids = [
            item_id for (item_id,) in self.session.query(SyncQueueItem.id)
            .filter(SyncQueueItem.status == SYNC_PENDING)
            .order_by(SyncQueueItem.created_at, SyncQueueItem.id)
            .limit(limit)
            .all()
        ]
        self.session.rollback()

        for item_id in item_ids:
            if not self._claim(item_id):
                report.skipped += 1
                continue
            report.claimed += 1

            item = self.session.get(SyncQueueItem, item_id)
            item_type = item.type
            payload = dict(item.payload or {})
            actor = Actor(id=item.actor_id)
            key = item.idempotency_key
            self.session.rollback()

            try:
                handler = self.handlers.get(item_type)
                if handler is None:
                    raise ValidationError(f"No handler for sync type: {item_type}")
                handler(payload, actor, key)
            except Exception as exc:
                self.session.rollback()
                dead = self._record_failure(item_id, exc)
                if dead is not None:
                    report.dead_lettered.append(dead)
                else:
                    report.retried += 1
                continue

            self._mark_completed(item_id)
            report.completed += 1

        if report.claimed or report.released:
            logger.info(
                "Sync drain pass: claimed=%s completed=%s retried=%s dead=%s released=%s",
                report.claimed, report.completed, report.retried, len(report.dead_lettered), report.released,
            )
        return report

    def _claim(self, item_id: int) -> bool:
        def _op():
            now = utcnow()
            result = self.session.execute(
                update(SyncQueueItem)
                .where(SyncQueueItem.id == item_id, SyncQueueItem.status == SYNC_PENDING)
                .values(status=SYNC_PROCESSING, claimed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return write_transaction(self.session, _op)

    def _mark_completed(self, item_id: int) -> None:
        def _op():
            now = utcnow()
            self.session.execute(
                update(SyncQueueItem)
                .where(SyncQueueItem.id == item_id, SyncQueueItem.status == SYNC_PROCESSING)
                .values(status=SYNC_COMPLETED, completed_at=now, updated_at=now, claimed_at=None, last_error=None)
                .execution_options(synchronize_session=False)
            )

        write_transaction(self.session, _op)

    def _record_failure(self, item_id: int, exc: Exception) -> Optional[RetryExhausted]:
        message = (getattr(exc, "message", None) or str(exc) or type(exc).__name__)[:MAX_ERROR_LENGTH]

        def _op():
            item = lock_for_update(self.session.query(SyncQueueItem).filter_by(id=item_id)).first()
            item.retry_count += 1
            item.last_error = message
            item.claimed_at = None
            item.updated_at = utcnow()
            if item.retry_count >= item.max_retries:
                item.status = SYNC_FAILED
            else:
                item.status = SYNC_PENDING
            return item.status, item.retry_count, item.max_retries, item.type

        status, attempts, max_retries, item_type = write_transaction(self.session, _op)
        if status == SYNC_FAILED:
            logger.error(
                "Sync item %s (%s) dead-lettered after %s attempts: %s",
                item_id, item_type, attempts, message,
            )
            return RetryExhausted(
                f"Sync item {item_id} failed {attempts} times",
                details={"item_id": item_id, "type": item_type, "attempts": attempts, "last_error": message},
            )

        logger.warning(
            "Sync item %s (%s) failed attempt %s/%s: %s",
            item_id, item_type, attempts, max_retries, message,
        )
        return None

    # -------------------------------------------------------------------------
    # maintenance
    # -------------------------------------------------------------------------

    def release_stale_claims(self, now: Optional[datetime] = None) -> int:
        """Return processing items whose claim is older than the stale window to pending."""
        cutoff = (now or utcnow()) - self.stale_claim

        def _op():
            result = self.session.execute(
                update(SyncQueueItem)
                .where(
                    SyncQueueItem.status == SYNC_PROCESSING,
                    or_(SyncQueueItem.claimed_at.is_(None), SyncQueueItem.claimed_at < cutoff),
                )
                .values(status=SYNC_PENDING, claimed_at=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        released = write_transaction(self.session, _op)
        if released:
            logger.warning("Released %s stale sync claim(s)", released)
        return released

    def purge(self, now: Optional[datetime] = None) -> int:
        """Delete completed and dead-lettered items last touched before the retention window."""
        cutoff = (now or utcnow()) - self.retention

        def _op():
            result = self.session.execute(
                delete(SyncQueueItem)
                .where(
                    SyncQueueItem.status.in_([SYNC_COMPLETED, SYNC_FAILED]),
                    SyncQueueItem.updated_at < cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

        purged = write_transaction(self.session, _op)
        if purged:
            logger.info("Purged %s sync item(s) older than %s", purged, cutoff.isoformat())
        return purged

    def status_counts(self) -> dict:
        counts = {status: 0 for status in (SYNC_PENDING, SYNC_PROCESSING, SYNC_COMPLETED, SYNC_FAILED)}
        rows = (
            self.session.query(SyncQueueItem.status, func.count(SyncQueueItem.id))
            .group_by(SyncQueueItem.status)
            .all()
        )
        for status, count in rows:
            counts[status] = count
        counts["total"] = sum(counts.values())
        return counts

    def dead_letters(self, limit: int = 100) -> list[SyncQueueItem]:
        return (
            self.session.query(SyncQueueItem)
            .filter(SyncQueueItem.status == SYNC_FAILED)
            .order_by(SyncQueueItem.updated_at.desc(), SyncQueueItem.id.desc())
            .limit(limit)
            .all()
        )

    def requeue(self, item_id: int) -> SyncQueueItem:
        """Manually put a dead letter back in line with its retry count reset."""
        def _op():
            item = lock_for_update(self.session.query(SyncQueueItem).filter_by(id=item_id)).first()
            if item is None:
                raise NotFoundError("Sync item not found", details={"item_id": item_id})
            if item.status != SYNC_FAILED:
                raise ConflictError(f"Only failed items can be requeued (status is {item.status})")
            item.status = SYNC_PENDING
            item.retry_count = 0
            item.claimed_at = None
            item.updated_at = utcnow()
            return item

        item = write_transaction(self.session, _op)
        logger.info("Sync item %s requeued", item_id)
        return item
