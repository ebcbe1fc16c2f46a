# Overview: Background thread that drains the offline sync queue on an interval or on demand.

from __future__ import annotations

import logging
import threading
from typing import Optional

from ..extensions import db
from .sync_queue import DrainReport
from .wiring import build_components

logger = logging.getLogger(__name__)


class SyncWorker:
    """
    Runs a drain pass every interval seconds; trigger() wakes it early
    (e.g. when connectivity is restored). Each pass also expires stale
    pending payments when expire_payments is set.

    Passes share the app-scoped drain lock with HTTP and CLI drains, so no
    two passes overlap anywhere in the process.
    """

    def __init__(self, app, interval: Optional[float] = None, *, expire_payments: bool = True):
        self.app = app
        self.interval = interval if interval is not None else app.config["SYNC_DRAIN_INTERVAL_SECONDS"]
        self.expire_payments = expire_payments
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._loop, name="tillpoint-sync-worker", daemon=True)
        self._thread.start()
        logger.info("Sync worker started (interval=%ss)", self.interval)

    def stop(self, timeout: Optional[float] = 10) -> None:
        self._stopping.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sync worker stopped")

    def trigger(self) -> None:
        self._wake.set()

    def run_once(self) -> Optional[DrainReport]:
        with self.app.app_context():
            try:
                components = build_components(self.app)
                report = components.sync_queue.drain()
                if self.expire_payments:
                    components.orchestrator.expire_pending_payments()
                return report
            finally:
                db.session.remove()

    def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                self.run_once()
            except Exception:
                # The next pass retries.
                logger.exception("Sync drain pass failed")
            self._wake.wait(self.interval)
            self._wake.clear()
