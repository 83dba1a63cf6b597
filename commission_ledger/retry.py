from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from typing import TypeVar

from commission_ledger.errors import TransientInfraError

T = TypeVar("T")

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (
    sqlite3.OperationalError,
    TimeoutError,
    ConnectionError,
    OSError,
)


def _log_retry(operation: str) -> Callable[[int, float, Exception], None]:
    def _on_retry(attempt: int, delay: float, exc: Exception) -> None:
        logger.warning("%s failed (attempt %s), retrying in %.2fs: %s", operation, attempt, delay, exc)

    return _on_retry


def with_retry(
    func: Callable[[], T],
    *,
    operation: str = "operation",
    attempts: int = 3,
    base_delay_seconds: float = 0.2,
    max_delay_seconds: float = 2.0,
    on_retry: Callable[[int, float, Exception], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    on_retry = on_retry or _log_retry(operation)
    last_exc: Exception | None = None
    for attempt in range(1, max(attempts, 1) + 1):
        try:
            return func()
        except TRANSIENT_ERRORS as exc:
            last_exc = exc
            if attempt >= attempts:
                break
            delay = min(base_delay_seconds * (2 ** (attempt - 1)), max_delay_seconds)
            on_retry(attempt, delay, exc)
            sleep(delay)
    raise TransientInfraError(operation, max(attempts, 1), last_exc) from last_exc
