# Overview: Unit-of-work helpers: row locking, SQLite write locks, and boundary retry.

from __future__ import annotations

import logging
import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrencyConflictError
from ..extensions import db


logger = logging.getLogger(__name__)

_LOCK_MARKERS = ("lock", "deadlock", "serializ")


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def begin_write_transaction() -> None:
    """
    Take the database write lock up front on SQLite.

    Other backends rely on lock_for_update; SQLite has no row locks, so the
    read-modify-write of quantities and balances is serialized by opening the
    transaction with BEGIN IMMEDIATE.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.dbapi_connection
    if not raw.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def _is_lock_error(exc: Exception) -> bool:
    if isinstance(exc, (StaleDataError, ConcurrencyConflictError)):
        return True
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in _LOCK_MARKERS)


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.05):
    """
    Execute a unit of work; roll the session back on any failure.

    Lock contention (OperationalError on locks/deadlocks, StaleDataError from
    optimistic version checks, ConcurrencyConflictError) is retried. When the
    attempts run out it surfaces as ConcurrencyConflictError. Every other
    exception is re-raised unchanged after the rollback.
    """
    if attempts is None:
        attempts = current_app.config.get("CONCURRENCY_RETRY_ATTEMPTS", 2)

    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError, ConcurrencyConflictError) as exc:
            db.session.rollback()
            if not _is_lock_error(exc):
                raise
            if attempt >= attempts - 1:
                logger.warning("Giving up after %d attempts: %s", attempts, exc)
                if isinstance(exc, ConcurrencyConflictError):
                    raise
                raise ConcurrencyConflictError(
                    "Concurrent update conflict, retry the request",
                    details={"cause": type(exc).__name__},
                ) from exc
            logger.info("Retrying after concurrency conflict (attempt %d): %s", attempt + 1, exc)
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
