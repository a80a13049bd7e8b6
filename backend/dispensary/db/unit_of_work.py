"""
Transaction boundary for every mutating operation.

A unit of work owns one session: commit on success, rollback on any
exception, close always. Audit entries deferred on the session are written
only after the commit. ``run_in_transaction`` adds the conflict policy:
lock waits that time out, serialization failures and stale version counters
are retried with exponential backoff, then surface as ConcurrentConflict.
Storage constraint failures surface as InvariantViolation and are never
retried.
"""
import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from dispensary.core.audit import AuditLog, discard_deferred, emit_deferred
from dispensary.core.config import settings
from dispensary.core.context import Actor
from dispensary.core.errors import ConcurrentConflict, InvariantViolation

logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available
_PG_CONFLICT_CODES = {"40001", "40P01", "55P03"}


def is_lock_conflict(exc: OperationalError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _PG_CONFLICT_CODES:
        return True
    message = str(orig).lower()
    return "database is locked" in message or "could not obtain lock" in message


@contextmanager
def unit_of_work(session_factory: sessionmaker) -> Iterator[Session]:
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        discard_deferred(db)
        db.rollback()
        raise
    else:
        emit_deferred(db)
    finally:
        db.close()


def run_in_transaction(
    session_factory: sessionmaker,
    work: Callable[[Session], T],
    operation: str,
    actor: Optional[Actor] = None,
) -> T:
    """
    Run ``work`` in a fresh unit of work, retrying lock contention.

    ``work`` must build any value it returns before the commit; ORM
    instances are expired once the session closes.
    """
    attempts = settings.MAX_CONFLICT_RETRIES + 1
    for attempt in range(1, attempts + 1):
        try:
            with unit_of_work(session_factory) as db:
                return work(db)
        except InvariantViolation as e:
            AuditLog.log_invariant_violation(operation, e.message, actor)
            raise
        except IntegrityError as e:
            detail = str(e.orig)
            AuditLog.log_invariant_violation(operation, detail, actor)
            raise InvariantViolation(f"Storage constraint rejected {operation}: {detail}") from e
        except (OperationalError, StaleDataError, ConcurrentConflict) as e:
            if isinstance(e, OperationalError) and not is_lock_conflict(e):
                raise
            if attempt == attempts:
                logger.warning(f"{operation}: giving up after {attempt} attempt(s): {e}")
                if isinstance(e, ConcurrentConflict):
                    raise
                raise ConcurrentConflict(
                    f"{operation} conflicted with a concurrent update; retry the request",
                    attempts=attempt,
                ) from e
            delay = settings.RETRY_BACKOFF_SECONDS * (2 ** (attempt - 1))
            logger.info(f"{operation}: conflict on attempt {attempt}/{attempts}, retrying in {delay:.3f}s")
            time.sleep(delay)
    raise AssertionError("unreachable")
