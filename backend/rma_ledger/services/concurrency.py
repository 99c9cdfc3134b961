# Overview: Retry and locking helpers shared by the return workflow, ledger and sequences.

from __future__ import annotations

import time

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


# Lock contention and optimistic-lock conflicts
DEFAULT_RETRY_ERRORS = (OperationalError, StaleDataError)

# Plus a racing first insert of a unique counter row
SEQUENCE_RETRY_ERRORS = (OperationalError, StaleDataError, IntegrityError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(
    func,
    *,
    attempts: int = 3,
    backoff_base: float = 0.1,
    retry_on: tuple = DEFAULT_RETRY_ERRORS,
):
    """
    Execute a DB operation with retry on concurrency-related failures.

    The session is rolled back before every retry, so func always re-runs
    from a clean transaction and nothing it did in the failed attempt
    survives. func must therefore do all of its own reads.

    Any other exception also rolls back before propagating, so a domain
    error raised half way through func never leaves writes pending in the
    session.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc
