# Overview: Retry, locking and deadline helpers shared by the stock engine and the ledgers.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..exceptions import OperationTimeout, StorageUnavailable, TransientConflict
from ..extensions import db

# Substrings of driver messages that mean "another writer holds the row/table"
_LOCK_MARKERS = (
    "database is locked",
    "database table is locked",
    "deadlock",
    "could not serialize",
    "lock wait timeout",
)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Version columns cover SQLite.
    """
    return query.with_for_update()


def deadline_after(timeout: float | None) -> float | None:
    """Convert a caller timeout in seconds into an absolute monotonic deadline."""
    if timeout is None:
        return None
    return time.monotonic() + timeout


def check_deadline(deadline: float | None) -> None:
    """Raise OperationTimeout if the deadline passed. Call before commit so nothing is applied late."""
    if deadline is not None and time.monotonic() >= deadline:
        raise OperationTimeout("Operation deadline expired before commit; nothing was applied")


def _is_lock_conflict(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker in message for marker in _LOCK_MARKERS)


def run_with_retry(
    func,
    *,
    attempts: int | None = None,
    backoff_base: float | None = None,
    deadline: float | None = None,
):
    """
    Execute a DB operation with retry on concurrency-related failures.

    - StaleDataError (optimistic version conflict) and lock errors are retried
      with exponential backoff, then surface as TransientConflict.
    - Other OperationalError / disconnects surface as StorageUnavailable.
    - Any failure rolls the session back first, so no partial effect survives.
    """
    if attempts is None:
        attempts = current_app.config.get("DB_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = current_app.config.get("DB_RETRY_BACKOFF", 0.05)
    attempts = max(1, attempts)
    last_exc = None

    for attempt in range(attempts):
        try:
            check_deadline(deadline)
            return func()
        except StaleDataError as exc:
            db.session.rollback()
            last_exc = exc
        except OperationalError as exc:
            db.session.rollback()
            if not _is_lock_conflict(exc):
                raise StorageUnavailable("Database unavailable") from exc
            last_exc = exc
        except DBAPIError as exc:
            db.session.rollback()
            if exc.connection_invalidated:
                raise StorageUnavailable("Database connection lost") from exc
            raise
        except Exception:
            db.session.rollback()
            raise

        if attempt < attempts - 1:
            current_app.logger.debug("Concurrent update conflict, retrying (attempt %s/%s)", attempt + 1, attempts)
            time.sleep(backoff_base * (2 ** attempt))

    raise TransientConflict(
        f"Concurrent update conflict persisted after {attempts} attempts",
        details={"attempts": attempts},
    ) from last_exc


def commit_or_timeout(deadline: float | None) -> None:
    """Commit the current session unless the caller deadline already passed."""
    check_deadline(deadline)
    db.session.commit()
