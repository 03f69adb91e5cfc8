"""
Error taxonomy for job execution and creation.

Anything a handler raises counts as a failed attempt. Plain exceptions and
RetryableJobError are transient and retried with backoff until the job runs
out of attempts; NonRetryableJobError skips straight to the dead letter queue.
"""

import re
from typing import Any

_ERROR_CODE_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")


class JobError(Exception):
    """Base class for failures raised while processing jobs."""

    default_error_code = "JOB_ERROR"
    retryable = True

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(self.message)


class RetryableJobError(JobError):
    """Transient failure, e.g. a dependency that is temporarily unavailable."""

    default_error_code = "RETRYABLE_ERROR"


class NonRetryableJobError(JobError):
    """Permanent failure; retrying cannot succeed (malformed input, missing object)."""

    default_error_code = "NON_RETRYABLE_ERROR"
    retryable = False


class HandlerNotFoundError(NonRetryableJobError):
    """No registered handler supports the job type: a deployment gap."""

    default_error_code = "NO_HANDLER"


class JobCreationError(JobError):
    """A job could neither be inserted nor read back after a lost insert race."""

    default_error_code = "JOB_CREATION_FAILED"


def is_retryable(error: BaseException) -> bool:
    """Whether a failed attempt may be retried."""
    return getattr(error, "retryable", True)


def extract_error_code(error: BaseException) -> str:
    """
    Derive a stable, low-cardinality error code for dead letter triage.

    Prefers JobError.error_code, then an UPPER_SNAKE prefix in the message
    ("PDF_ENCRYPTED: password protected"), then the exception class name.
    """
    if isinstance(error, JobError):
        return error.error_code

    message = str(error)
    if ":" in message:
        candidate = message.split(":", 1)[0].strip()
        if _ERROR_CODE_PATTERN.match(candidate):
            return candidate

    return type(error).__name__.upper()
