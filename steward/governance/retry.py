"""Bounded exponential backoff for transient persistence conflicts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError

from steward.governance.errors import InternalError, TransientConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientConflict,
    IntegrityError,
    OperationalError,
)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    max_attempts: int = 3,
    backoff_base_seconds: float = 0.05,
) -> T:
    """Run ``operation`` until it succeeds or the attempt budget is spent.

    Only :data:`TRANSIENT_ERRORS` are retried; anything else propagates
    unchanged. Exhaustion surfaces as :class:`InternalError`.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except TRANSIENT_ERRORS as exc:
            if attempt >= max_attempts:
                logger.error("%s failed after %d attempts: %s", label, attempt, exc)
                raise InternalError(f"{label} failed after {attempt} attempts") from exc
            delay = backoff_base_seconds * (2 ** (attempt - 1))
            logger.warning(
                "%s conflicted (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                max_attempts,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
    raise InternalError(f"{label} failed")  # pragma: no cover
