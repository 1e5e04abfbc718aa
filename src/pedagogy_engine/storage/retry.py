"""Bounded store calls with a single retry."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from pedagogy_engine.errors import ConflictError, NotFoundError, StoreError

logger = structlog.get_logger()

T = TypeVar("T")


async def call_store(
    operation: Callable[[], Awaitable[T]],
    *,
    timeout: float,
    backoff: float,
    name: str,
) -> T:
    """Run ``operation`` under ``timeout``; retry once after ``backoff`` on failure.

    NotFoundError and ConflictError are answers, not failures, and are raised
    immediately. A timeout counts as a StoreError.

    Raises:
        StoreError: If both attempts fail.
    """
    backoff_delays = [0, backoff]
    last_error: StoreError | None = None

    for attempt, delay in enumerate(backoff_delays, start=1):
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except (NotFoundError, ConflictError):
            raise
        except StoreError as e:
            last_error = e
        except asyncio.TimeoutError:
            last_error = StoreError("Store call timed out", {"operation": name, "timeout": timeout})
        logger.warning("store_call_failed", operation=name, attempt=attempt, error=str(last_error))

    assert last_error is not None
    raise last_error
