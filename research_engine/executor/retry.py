"""Transient-vs-fatal classification of step executor errors.

Typed TransientProviderError / FatalProviderError are taken at face value.
Anything else is classified by message content: quota and billing
exhaustion is fatal even when the message also looks transient (a 429
carrying "insufficient_quota" must not be retried). Unrecognized errors are
fatal; only known-transient conditions earn a retry.
"""

import logging
from enum import Enum

from research_engine.config import MAX_TRANSIENT_RETRIES
from research_engine.executor.errors import (
    EmptySynthesisError,
    FatalProviderError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

TRANSIENT_PATTERNS = (
    "429",
    "rate limit",
    "rate_limit",
    "timeout",
    "timed out",
    "temporary failure",
    "enotfound",
    "eai_again",
    "fetch failed",
    "connection",
    "try again",
    "503",
    "overloaded",
)

FATAL_PATTERNS = (
    "insufficient_quota",
    "exceeded your current quota",
    "quota",
    "billing",
    "payment required",
    "credit balance",
)


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


def classify_error(error: BaseException) -> ErrorClass:
    """Classify an adapter error as transient (retry) or fatal (fail the run)."""
    if isinstance(error, EmptySynthesisError):
        return ErrorClass.FATAL
    message = str(error).lower()
    if isinstance(error, FatalProviderError) or any(p in message for p in FATAL_PATTERNS):
        return ErrorClass.FATAL
    if isinstance(error, (TransientProviderError, TimeoutError, ConnectionError)):
        return ErrorClass.TRANSIENT
    if any(p in message for p in TRANSIENT_PATTERNS):
        return ErrorClass.TRANSIENT
    return ErrorClass.FATAL


def is_retryable(error: BaseException) -> bool:
    return classify_error(error) is ErrorClass.TRANSIENT


def retry_exhausted(consecutive_failures: int, ceiling: int = MAX_TRANSIENT_RETRIES) -> bool:
    """Whether one more transient failure exceeds the ceiling.

    `consecutive_failures` counts failures already recorded on the step.
    With ceiling 3, the 4th consecutive transient failure is terminal.
    """
    return consecutive_failures >= ceiling
