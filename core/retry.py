"""
Retry with exponential backoff and jitter for transient store/network failures.
"""
import asyncio
import inspect
import logging
import os
import random
from typing import Any, Awaitable, Callable, List, Optional, Union

from sqlalchemy.exc import DBAPIError, DisconnectionError, TimeoutError as PoolTimeoutError

from core.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_RETRIES = int(os.environ.get("RETRY_MAX_RETRIES", "3"))
BASE_DELAY = float(os.environ.get("RETRY_BASE_DELAY", "0.1"))   # seconds
MAX_DELAY = float(os.environ.get("RETRY_MAX_DELAY", "10.0"))    # seconds

# PostgreSQL SQLSTATE codes worth another attempt
RETRYABLE_ERROR_CODES = {
    # connection
    "08000", "08001", "08003", "08004", "08006",
    # lock / serialization
    "40001", "40P01", "55P03",
    # resources
    "53100", "53200", "53300", "54000",
    # PostgREST gateway
    "PGRST000",
    # socket level
    "ECONNRESET", "ETIMEDOUT", "ECONNREFUSED", "EPIPE",
}

RETRYABLE_HTTP_STATUSES = {408, 429, 500, 502, 503, 504}

TRANSIENT_MESSAGE_PATTERNS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "rate limit",
    "too many requests",
    "temporarily unavailable",
    "service unavailable",
    "database is locked",
)

Operation = Callable[[], Union[Any, Awaitable[Any]]]


def _error_code(error: BaseException) -> Optional[str]:
    if isinstance(error, DBAPIError):
        # SQLAlchemy's own .code is a docs link id, the SQLSTATE is on the driver error
        code = getattr(error.orig, "pgcode", None) or getattr(error.orig, "sqlstate", None)
    else:
        code = getattr(error, "code", None)
    return str(code) if code is not None else None


def is_retryable_error(error: BaseException) -> bool:
    """Classify an error as transient (retry) or fatal (surface immediately)."""
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True

    if isinstance(error, (DisconnectionError, PoolTimeoutError)):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True

    code = _error_code(error)
    if code and code in RETRYABLE_ERROR_CODES:
        return True

    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    if status is not None:
        try:
            if int(status) in RETRYABLE_HTTP_STATUSES:
                return True
        except (TypeError, ValueError):
            pass

    if not isinstance(error, ValidationError):
        message = str(error).lower()
        if any(pattern in message for pattern in TRANSIENT_MESSAGE_PATTERNS):
            return True

    return False


def backoff_delay(attempt: int, base_delay: float = BASE_DELAY, max_delay: float = MAX_DELAY) -> float:
    """Delay before retry number `attempt` (0-based), jitter applied multiplicatively."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay * random.uniform(0.5, 1.5)


async def with_retry(
    operation: Operation,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    max_delay: float = MAX_DELAY,
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    operation_name: str = "operation",
):
    """
    Run `operation` until it succeeds, retrying transient failures.

    The operation may be a plain callable or return an awaitable. After
    `max_retries` retries, or on the first non-retryable error, the original
    exception is re-raised as-is.
    """
    attempt = 0
    while True:
        try:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            retryable = should_retry(e)
            if attempt >= max_retries or not retryable:
                logger.error(
                    "[RETRY] %s failed after %d attempt(s) (retryable=%s): %r",
                    operation_name, attempt + 1, retryable, e,
                )
                raise

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "[RETRY] %s failed (attempt %d/%d), retrying in %.3fs: %r",
                operation_name, attempt + 1, max_retries + 1, delay, e,
            )
            await asyncio.sleep(delay)
            attempt += 1


async def with_retry_all(operations: List[Operation], **options) -> List[Any]:
    """Run operations concurrently, each with its own retries; failures come back as {"error": exc}."""
    name = options.pop("operation_name", "operation")

    async def _run(index: int, op: Operation):
        try:
            return await with_retry(op, operation_name=f"{name}[{index}]", **options)
        except Exception as e:
            return {"error": e}

    return await asyncio.gather(*(_run(i, op) for i, op in enumerate(operations)))
