"""
Ingestion Error Taxonomy
========================

Exception types raised by the ingestion core and the helpers that decide
whether a failure is worth retrying.

- NetworkError: timeouts, refused connections, throttling responses (retryable)
- ItemNotFoundError: the source reports the item does not exist
- ParseError: payload shape not recognized (skip the item)
- ValidationError: business-rule rejection (skip the item)
- StorageError: database or blob failure (retryable only when transient)
- RunAbortedError: fatal run-level failure
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP status codes that indicate the source is explicitly throttling us
THROTTLE_STATUS_CODES = frozenset({429, 503})


class IngestionError(Exception):
    """Base class for all ingestion errors."""

    retryable: bool = False

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause


class NetworkError(IngestionError):
    """A request to a source failed at the transport or HTTP level."""

    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        url: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status_code = status_code
        self.url = url

    @property
    def is_throttled(self) -> bool:
        return self.status_code in THROTTLE_STATUS_CODES


class ItemNotFoundError(NetworkError):
    """The source has no item for the requested key (HTTP 404 or equivalent)."""

    retryable = False

    def __init__(self, external_id: str, *, url: str | None = None) -> None:
        super().__init__(f"Item not found: {external_id}", status_code=404, url=url)
        self.external_id = external_id


class ParseError(IngestionError):
    """The raw payload could not be turned into a normalized record."""


class ValidationError(IngestionError):
    """A normalized record was rejected by a business rule."""

    def __init__(self, message: str, *, field: str | None = None, value: Any = None) -> None:
        super().__init__(message)
        self.field = field
        self.value = value


class StorageError(IngestionError):
    """A database or blob storage operation failed."""

    def __init__(
        self, message: str, *, transient: bool = False, cause: Exception | None = None
    ) -> None:
        super().__init__(message, cause=cause)
        self.transient = transient

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient


class RunAbortedError(IngestionError):
    """A run cannot continue (no storage connection, circuit breaker tripped)."""


def classify_storage_error(exc: Exception) -> StorageError:
    """
    Wrap a SQLAlchemy exception in a StorageError.

    Connectivity failures are marked transient. Everything else, including
    constraint violations that slipped past an upsert, is permanent.

    Args:
        exc: The original exception

    Returns:
        StorageError describing the failure
    """
    if isinstance(exc, StorageError):
        return exc
    if isinstance(exc, (DisconnectionError, InterfaceError)):
        transient = True
    elif isinstance(exc, OperationalError):
        # sqlite also reports schema problems as OperationalError
        text = str(exc).lower()
        transient = bool(exc.connection_invalidated) or any(
            marker in text for marker in ("locked", "connect", "timeout")
        )
    else:
        transient = False
    return StorageError(str(exc), transient=transient, cause=exc)


def is_retryable(exc: BaseException) -> bool:
    """Check whether an exception should be retried."""
    if isinstance(exc, IngestionError):
        return bool(exc.retryable)
    return False


async def with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    on_retry: Callable[[BaseException, int], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call an async function, retrying retryable failures with backoff.

    The delay doubles on every attempt, gets up to 30% random jitter and
    is capped at max_delay.

    Args:
        func: Zero-argument coroutine function to call
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay
        should_retry: Predicate deciding whether an error is retryable
        on_retry: Optional callback invoked with (error, attempt) before sleeping
        sleep: Sleep function (injectable for tests)

    Returns:
        The function's result
    """
    attempt = 0
    while True:
        try:
            return await func()
        except Exception as e:
            if attempt >= max_retries or not should_retry(e):
                raise
            attempt += 1
            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            delay += delay * 0.3 * random.random()
            delay = min(delay, max_delay)
            logger.warning(f"Retrying after error ({attempt}/{max_retries}) in {delay:.2f}s: {e}")
            if on_retry is not None:
                on_retry(e, attempt)
            await sleep(delay)
