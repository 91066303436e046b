"""Dispatch loop: one backend call, classified and retried."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import httpx

from .errors import BridgeError, TransportFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

UNAUTHORIZED_STATUS = (401, 402)


def classify_error(exc: BaseException) -> BridgeError:
    """Map an exception raised during an attempt onto the error taxonomy.

    Only transport errors that never produced a response (and are not
    timeouts) are retryable.
    """
    if isinstance(exc, BridgeError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in UNAUTHORIZED_STATUS:
            return TransportFailure(".unauthorized")
        return TransportFailure(".response-error", status)
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return TransportFailure(".request-timeout")
    if isinstance(exc, httpx.TransportError):
        return TransportFailure(".request-failed", type(exc).__name__, retryable=True)
    return TransportFailure(".unknown-error")


async def dispatch(
    attempt: Callable[[], Awaitable[T]],
    max_retry_count: int = 3,
    request_id: str = "",
) -> T:
    """Run `attempt` until it succeeds or fails terminally.

    `max_retry_count` is the total number of attempts. Raises the classified
    BridgeError once retries are spent.
    """
    attempts = max(1, max_retry_count or 1)
    for count in range(1, attempts + 1):
        try:
            return await attempt()
        except Exception as e:
            failure = classify_error(e)
            if failure.key == ".unknown-error":
                logger.exception(f"[Dispatch {request_id}] Unexpected failure on attempt {count}/{attempts}")
            if getattr(failure, "retryable", False) and count < attempts:
                logger.warning(f"[Dispatch {request_id}] Attempt {count}/{attempts} failed ({failure.params[0]}), retrying...")
                continue
            logger.error(f"❌ [Dispatch {request_id}] FAILED after {count} attempt(s): {failure.key} {failure.params}")
            if failure is e:
                raise
            raise failure from e
    raise AssertionError("unreachable")
