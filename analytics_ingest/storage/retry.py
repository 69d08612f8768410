"""Deadlock / serialization-failure retry for store transactions."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL: deadlock_detected, serialization_failure
_RETRYABLE_SQLSTATES = {"40P01", "40001"}


def is_retryable(error: DBAPIError) -> bool:
    orig = getattr(error, "orig", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _RETRYABLE_SQLSTATES:
        return True
    # SQLite writer contention
    return "database is locked" in str(orig or error).lower()


def run_in_transaction(
    engine: Engine,
    work: Callable[[Connection], T],
    max_retries: int = 3,
) -> T:
    """Run ``work`` in its own transaction, retrying the whole transaction on deadlocks.

    A deadlock aborts the transaction, so the retry always starts a fresh one.
    """
    for attempt in range(1, max_retries + 1):
        try:
            with engine.begin() as conn:
                return work(conn)
        except DBAPIError as e:
            if is_retryable(e) and attempt < max_retries:
                delay = min(1000 * (2 ** (attempt - 1)), 5000)
                jitter = random.uniform(0, delay * 0.1)
                total_delay = (delay + jitter) / 1000.0
                logger.warning(
                    "DB deadlock detected (attempt %d/%d), retrying in %.2fs...",
                    attempt, max_retries, total_delay,
                )
                time.sleep(total_delay)
                continue
            logger.error("DB transaction failed (attempt %d/%d): %s", attempt, max_retries, e)
            raise
    raise RuntimeError("unreachable: retry loop exited without result")
