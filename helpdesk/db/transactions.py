"""Transaction helpers shared by service modules."""

from __future__ import annotations

import logging
from typing import Callable, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PG_UNIQUE_VIOLATION = "23505"


def is_unique_violation(exc: IntegrityError) -> bool:
    """True when the integrity error is a unique/primary-key collision."""
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate:
        return sqlstate == _PG_UNIQUE_VIOLATION
    message = str(orig if orig is not None else exc)
    return "UNIQUE constraint failed" in message or "duplicate key value" in message


def run_with_unique_retry(
    db: Session,
    operation: Callable[[int], T],
    *,
    attempts: int,
) -> T:
    """
    Run ``operation`` in a transaction, retrying on uniqueness violations only.

    ``operation`` receives the 1-based attempt number and must leave its work
    pending on ``db``; this helper commits on success. Any other exception rolls
    back and propagates immediately. After the last attempt the final
    IntegrityError is re-raised.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(1, attempts + 1):
        try:
            result = operation(attempt)
            db.commit()
            return result
        except IntegrityError as exc:
            db.rollback()
            if not is_unique_violation(exc) or attempt == attempts:
                raise
            logger.warning(
                "Uniqueness conflict on attempt %s/%s, retrying", attempt, attempts
            )
        except Exception:
            db.rollback()
            raise
    raise AssertionError("unreachable")
