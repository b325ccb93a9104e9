from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from typing import TypeVar

from board_transcripts.services.ingestion_errors import (
    IngestionCancelledError,
    ProviderRequestError,
)
from board_transcripts.services.provider_http import (
    ProviderHttpError,
    TransportError,
    raise_if_cancelled,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_PROVIDER_ERROR_CODES = frozenset(
    {"unknownerror", "generalexception", "servererror"},
)
DOWNLOAD_MAX_ATTEMPTS = 5
TRANSIENT_DOWNLOAD_STATUS_CODES = frozenset({408, 429})


def is_transient_error_code(code: str | None) -> bool:
    return bool(code) and code.strip().lower() in TRANSIENT_PROVIDER_ERROR_CODES


def is_fallback_worthy(failure: Exception) -> bool:
    """Default predicate: HTTP 404/400/429/5xx or a transient provider code."""
    if isinstance(failure, ProviderHttpError):
        if failure.status_code in {400, 404, 429} or 500 <= failure.status_code < 600:
            return True
        return any(is_transient_error_code(code) for code in failure.error_codes)
    if isinstance(failure, TransportError):
        return failure.is_transient
    return False


def execute_with_fallback(
    variants: Sequence[Callable[[], T]],
    should_retry: Callable[[Exception], bool] = is_fallback_worthy,
    *,
    cancel_event: threading.Event | None = None,
) -> T:
    """Run request variants in order, moving on only when ``should_retry`` allows it.

    A retryable failure from the final variant is re-raised unchanged, as is any
    non-retryable failure. Cancellation is never treated as retryable.
    """
    if not variants:
        raise ValueError("At least one request variant is required.")

    last_index = len(variants) - 1
    for index, variant in enumerate(variants):
        raise_if_cancelled(cancel_event)
        try:
            return variant()
        except IngestionCancelledError:
            raise
        except (ProviderHttpError, TransportError) as exc:
            if index == last_index or not should_retry(exc):
                raise
            logger.debug(
                "Request variant failed, trying next variant=%s/%s error=%s",
                index + 1,
                len(variants),
                exc,
            )
    raise AssertionError("unreachable")


def is_transient_download_failure(failure: Exception) -> bool:
    if isinstance(failure, ProviderHttpError):
        return (
            failure.status_code in TRANSIENT_DOWNLOAD_STATUS_CODES
            or 500 <= failure.status_code < 600
        )
    if isinstance(failure, TransportError):
        return failure.is_transient
    return False


def download_retry_delay(attempt: int) -> float:
    return float(2 ** (attempt - 1))


def download_with_backoff(
    send: Callable[[], T],
    *,
    description: str = "transcript download",
    max_attempts: int = DOWNLOAD_MAX_ATTEMPTS,
    cancel_event: threading.Event | None = None,
    wait: Callable[[float], None] | None = None,
) -> T:
    """Retry a single long-lived download with exponential backoff.

    ``wait`` defaults to an interruptible sleep on ``cancel_event`` so that a
    caller-initiated cancellation ends the backoff immediately.
    """
    event = cancel_event or threading.Event()
    sleep = wait or event.wait
    last_error: Exception | None = None

    for attempt in range(1, max_attempts + 1):
        raise_if_cancelled(cancel_event)
        try:
            return send()
        except IngestionCancelledError:
            raise
        except (ProviderHttpError, TransportError) as exc:
            if not is_transient_download_failure(exc):
                raise
            last_error = exc
            if attempt == max_attempts:
                break
            logger.warning(
                "Transient failure during %s attempt=%s/%s error=%s",
                description,
                attempt,
                max_attempts,
                exc,
            )
            sleep(download_retry_delay(attempt))

    raise_if_cancelled(cancel_event)
    status_code = last_error.status_code if isinstance(last_error, ProviderHttpError) else None
    raise ProviderRequestError(
        f"Failed to complete {description} after {max_attempts} attempts: {last_error}",
        status_code=status_code,
    ) from last_error
