"""
Shared retry policy for AWS service calls.

Both the Bedrock adapter and the Well-Architected Tool evaluator retry
only on a small set of transient AWS error codes, with exponential
backoff. This module holds that loop once so the two clients cannot
drift apart.

Backoff:
    delay(attempt) = min(base_delay * 2**attempt, max_delay)
    1s, 2s, 4s, ... capped at 32s by default

A policy with ``max_retries=3`` makes at most four attempts. When the
last attempt still fails with a retryable code, ``MaxRetriesExceededError``
is raised with the final service error as its cause.

Usage:
    from waffle.retry import RetryPolicy, retry_with_backoff, WAFR_RETRYABLE_CODES

    policy = RetryPolicy(retryable_codes=WAFR_RETRYABLE_CODES)
    response = retry_with_backoff(
        lambda: client.list_answers(WorkloadId=workload_id, ...),
        operation="ListAnswers",
        policy=policy,
        cancel_event=cancel_event,
    )
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

from waffle.errors import MaxRetriesExceededError, OperationCancelledError
from waffle.logging_config import get_logger, log_with_context

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 32.0

# Synthetic code reported for botocore socket timeouts
REQUEST_TIMEOUT_CODE = "RequestTimeout"

BEDROCK_RETRYABLE_CODES: frozenset[str] = frozenset(
    {
        "ThrottlingException",
        "ServiceUnavailableException",
        "ModelTimeoutException",
        REQUEST_TIMEOUT_CODE,
    }
)

WAFR_RETRYABLE_CODES: frozenset[str] = frozenset(
    {
        "ThrottlingException",
        "ServiceUnavailableException",
        "InternalServerException",
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Which errors to retry and how long to wait between attempts.

    Attributes:
        retryable_codes: AWS error codes that trigger a retry
        max_retries: Retries after the first attempt
        base_delay: First backoff in seconds
        max_delay: Backoff cap in seconds
    """

    retryable_codes: frozenset[str]
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = INITIAL_BACKOFF_SECONDS
    max_delay: float = MAX_BACKOFF_SECONDS

    def backoff(self, attempt: int) -> float:
        """
        Delay before retry number ``attempt + 1``.

        Args:
            attempt: Zero-based index of the attempt that just failed

        Returns:
            Seconds to wait
        """
        return float(min(self.base_delay * (2**attempt), self.max_delay))


def get_error_code(exc: BaseException) -> str | None:
    """
    Extract the AWS error code from a botocore exception.

    Args:
        exc: Exception raised by a boto3 client call

    Returns:
        Error code (e.g. "ThrottlingException"), ``RequestTimeout`` for
        socket timeouts, or None when no code applies
    """
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code")
        return str(code) if code else None
    if isinstance(exc, (ReadTimeoutError, ConnectTimeoutError)):
        return REQUEST_TIMEOUT_CODE
    return None


def get_error_message(exc: BaseException) -> str:
    """Return the service-provided message of a botocore exception, or str(exc)."""
    if isinstance(exc, ClientError):
        message = exc.response.get("Error", {}).get("Message")
        if message:
            return str(message)
    return str(exc)


def _wait(seconds: float, operation: str, cancel_event: threading.Event | None) -> None:
    if cancel_event is None:
        time.sleep(seconds)
        return
    if cancel_event.wait(seconds):
        raise OperationCancelledError(operation)


def retry_with_backoff(
    func: Callable[[], T],
    operation: str,
    policy: RetryPolicy,
    cancel_event: threading.Event | None = None,
    on_retry: Callable[[str, int, float], None] | None = None,
) -> T:
    """
    Call ``func`` and retry it on retryable AWS errors.

    Non-retryable errors propagate unchanged on the first occurrence.

    Args:
        func: Zero-argument callable performing one attempt
        operation: Operation name for logs and errors
        policy: Retry policy to apply
        cancel_event: Optional event; when set, pending backoff is cut short
        on_retry: Optional callback ``(error_code, attempt, backoff)``
            invoked before each backoff wait

    Returns:
        Result of the first successful attempt

    Raises:
        MaxRetriesExceededError: Retryable errors persisted past the limit
        OperationCancelledError: ``cancel_event`` was set
        ClientError: Non-retryable service error
        BotoCoreError: Non-retryable client-side error
    """
    attempt = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError(operation)

        try:
            return func()
        except (ClientError, BotoCoreError) as exc:
            code = get_error_code(exc)
            if code is None or code not in policy.retryable_codes:
                raise

            if attempt >= policy.max_retries:
                log_with_context(
                    logger,
                    "error",
                    "Retries exhausted",
                    operation=operation,
                    error_code=code,
                    max_retries=policy.max_retries,
                )
                raise MaxRetriesExceededError(
                    f"{operation}: max retries ({policy.max_retries}) exceeded"
                ) from exc

            backoff = policy.backoff(attempt)
            log_with_context(
                logger,
                "warning",
                "Transient error, retrying",
                operation=operation,
                error_code=code,
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                backoff_seconds=backoff,
            )
            if on_retry is not None:
                on_retry(code, attempt + 1, backoff)

            _wait(backoff, operation, cancel_event)
            attempt += 1
