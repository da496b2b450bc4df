# Overview: Locking and retry helpers shared by every state-changing service.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from .exceptions import NotFoundError


def lock_for_update(query):
    """
    SELECT ... FOR UPDATE on the given query.

    NOTE: SQLite ignores FOR UPDATE; serialization there comes from the
    database-level write lock plus version_id checks.
    """
    return query.with_for_update()


def get_locked(model, pk: int, *, label: str | None = None):
    """Load one row by primary key under a row lock or raise NotFoundError."""
    query = db.session.query(model).filter_by(id=pk).populate_existing()
    row = lock_for_update(query).first()
    if row is None:
        raise NotFoundError(f"{label or model.__name__} {pk} not found")
    return row


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.05):
    """
    Run a unit of work, retrying on lock and optimistic-version failures.

    `func` must be safe to call again from scratch: it re-reads everything
    it needs and commits at the end. Domain errors are not retried; the
    session is rolled back and the error propagates.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                current_app.logger.warning(
                    "Unit of work failed after %s attempts: %s", attempts, exc
                )
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
