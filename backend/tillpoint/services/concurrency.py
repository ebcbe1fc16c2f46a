# Overview: Service-layer helpers for row locking, write transactions and retry on contention.

from __future__ import annotations

import logging
import time

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write() covers it there.
    """
    return query.with_for_update()


def begin_write(session) -> None:
    """
    Take the database write lock at the start of a unit of work.

    SQLite serializes writers on the whole file; BEGIN IMMEDIATE acquires the
    reserved lock up front so two writers never deadlock upgrading a shared
    lock. Other dialects rely on row locks and conditional updates instead.
    """
    if session.get_bind().dialect.name == "sqlite":
        session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(session, func, *, attempts: int = 5, backoff_base: float = 0.05):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other exception rolls the session
    back before propagating, so no partial unit of work survives.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            logger.debug("Retrying after contention (attempt %s): %s", attempt + 1, exc)
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            session.rollback()
            raise
    if last_exc:
        raise last_exc


def write_transaction(session, func, *, attempts: int = 5, backoff_base: float = 0.05):
    """Run func inside a write-locked transaction and commit it, retrying on contention."""
    def _op():
        begin_write(session)
        result = func()
        session.commit()
        return result

    return run_with_retry(session, _op, attempts=attempts, backoff_base=backoff_base)
