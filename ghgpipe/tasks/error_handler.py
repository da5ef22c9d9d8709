"""Error handling: categorize stage failures and decide on retry.

Every stage failure is scoped to its job.  Brokers ask ``should_retry()``
after each failed attempt; a job that may not be retried is dead-lettered
with its payload and log attached.

Error categories
----------------
TRANSIENT_IO     : network, transport, model endpoint down; retryable
DATA             : unreadable document; retryable (upstream flakiness)
SCHEMA_VIOLATION : model output not parseable / not schema-valid; retryable
PUBLISH          : review channel rejected or dropped the message; retryable
INVARIANT        : caller-side contract broken; never retried
UNKNOWN          : uncategorized; retryable within the stage budget
"""
from __future__ import annotations

from enum import Enum

import httpx


class ErrorCategory(str, Enum):
    TRANSIENT_IO = "transient_io"
    DATA = "data"
    SCHEMA_VIOLATION = "schema_violation"
    PUBLISH = "publish"
    INVARIANT = "invariant"
    UNKNOWN = "unknown"


class PipelineError(Exception):
    """Base class for failures raised by stage handlers."""

    category: ErrorCategory = ErrorCategory.UNKNOWN


class FetchError(PipelineError):
    category = ErrorCategory.TRANSIENT_IO

    def __init__(self, message: str, url: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class ConversionError(PipelineError):
    category = ErrorCategory.DATA


class SchemaViolationError(PipelineError):
    """The model answered, but not with a schema-valid record.

    ``raw_response`` is kept so the dead-letter entry can be triaged by hand.
    """

    category = ErrorCategory.SCHEMA_VIOLATION

    def __init__(self, message: str, raw_response: str = "") -> None:
        super().__init__(message)
        self.raw_response = raw_response


class ReviewChannelError(PipelineError):
    category = ErrorCategory.PUBLISH


class InvariantViolationError(PipelineError):
    category = ErrorCategory.INVARIANT


_RETRYABLE: frozenset[ErrorCategory] = frozenset({
    ErrorCategory.TRANSIENT_IO,
    ErrorCategory.DATA,
    ErrorCategory.SCHEMA_VIOLATION,
    ErrorCategory.PUBLISH,
    ErrorCategory.UNKNOWN,
})


def categorize(error: BaseException) -> ErrorCategory:
    """Map an exception to its ErrorCategory."""
    if isinstance(error, PipelineError):
        return error.category
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return ErrorCategory.TRANSIENT_IO
    if isinstance(error, httpx.HTTPStatusError):
        return ErrorCategory.TRANSIENT_IO
    return ErrorCategory.UNKNOWN


def should_retry(category: ErrorCategory, attempt: int, max_attempts: int) -> bool:
    """Return True if the category is retryable and *attempt* is within budget."""
    return category in _RETRYABLE and attempt < max_attempts


def backoff_delay(attempt: int, base_s: float) -> float:
    """Exponential back-off before attempt ``attempt + 1``: base, 2*base, 4*base..."""
    return base_s * (2 ** (attempt - 1))


def describe(error: BaseException, limit: int = 2000) -> str:
    """One-line description of *error* for job logs and dead-letter rows."""
    text = f"{type(error).__name__}: {error}"
    raw = getattr(error, "raw_response", None)
    if raw:
        text = f"{text} | raw_response={raw}"
    return text[:limit]
