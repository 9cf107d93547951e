"""
Classification of database call outcomes.

Shared by the batch runner and the stress runner: a call either succeeded,
failed with a database/network error, or was cut short by a deadline or
cancellation.
"""

from __future__ import annotations

import asyncio
from enum import Enum


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


_CANCELLATION_TYPES = (TimeoutError, asyncio.TimeoutError, asyncio.CancelledError)


def is_cancellation(exc: BaseException | None) -> bool:
    """True if exc is, or wraps, a deadline expiry or cancellation signal."""
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, _CANCELLATION_TYPES):
            return True
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return False


def classify_error(exc: BaseException | None) -> Outcome:
    if exc is None:
        return Outcome.SUCCESS
    if is_cancellation(exc):
        return Outcome.CANCELLED
    return Outcome.FAILED
