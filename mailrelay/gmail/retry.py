"""Gmail API error classification and read-side retry with exponential backoff.

Reads (list/get) are retried here on transient network and 5xx failures.
Sends are never retried here: the forward dispatcher owns that loop and only
backs off on rate-limit errors, see ``is_rate_limit_error``.
"""

from __future__ import annotations

import json
import logging
import socket
import time
from typing import Any

from googleapiclient.errors import HttpError

logger = logging.getLogger(__name__)

# Transient error types that should trigger a retry
_TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    socket.gaierror,
    ConnectionError,
    ConnectionResetError,
    TimeoutError,
    OSError,
    BrokenPipeError,
)

# HTTP status codes worth retrying
_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

# Gmail error reasons that mean "slow down", usually sent with 403
_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}

# Defaults
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0  # seconds


def _is_retryable(exc: BaseException) -> bool:
    """Check whether an exception is transient and worth retrying."""
    if isinstance(exc, _TRANSIENT_EXCEPTIONS):
        return True
    if isinstance(exc, HttpError) and exc.resp.status in _RETRYABLE_STATUS_CODES:
        return True
    # httplib2 wraps socket errors in its own exception hierarchy
    cause = exc.__cause__ or exc.__context__
    if cause and isinstance(cause, _TRANSIENT_EXCEPTIONS):
        return True
    return False


def _error_reasons(exc: HttpError) -> set[str]:
    try:
        payload = json.loads(exc.content.decode("utf-8"))
    except (ValueError, AttributeError, UnicodeDecodeError):
        return set()
    errors = payload.get("error", {}).get("errors", []) if isinstance(payload, dict) else []
    return {e.get("reason", "") for e in errors if isinstance(e, dict)}


def is_rate_limit_error(exc: BaseException) -> bool:
    """True for quota / rate-limit class failures (back off, then try again)."""
    if isinstance(exc, HttpError):
        if exc.resp.status == 429:
            return True
        if exc.resp.status == 403 and _error_reasons(exc) & _RATE_LIMIT_REASONS:
            return True
    text = str(exc).lower()
    return "quota" in text or "rate limit" in text or "ratelimit" in text


def execute_with_retry(
    request: Any,
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    operation: str = "API call",
) -> Any:
    """Execute a Google API request with retry on transient network errors.

    Wraps ``request.execute()`` with exponential backoff. Only retries on
    network-level failures (DNS, connection, timeout) and server errors
    (429, 5xx). Client errors (4xx) are raised immediately.

    Args:
        request: A Google API request object (has an ``.execute()`` method).
        max_retries: Maximum number of retry attempts after the first failure.
        base_delay: Base delay in seconds (doubled each retry).
        operation: Human-readable label for log messages.

    Returns:
        The result of ``request.execute()``.
    """
    last_exc: BaseException | None = None
    for attempt in range(1 + max_retries):
        try:
            return request.execute()
        except Exception as exc:
            last_exc = exc
            if not _is_retryable(exc):
                raise
            if attempt < max_retries:
                delay = base_delay * (2**attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    operation,
                    attempt + 1,
                    1 + max_retries,
                    delay,
                    exc,
                )
                time.sleep(delay)
            else:
                logger.error(
                    "%s failed after %d attempts: %s",
                    operation,
                    1 + max_retries,
                    exc,
                )
    raise last_exc  # type: ignore[misc]
