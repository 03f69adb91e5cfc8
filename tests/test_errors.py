import pytest

from filevault.v1.infra.jobs.errors import (
    HandlerNotFoundError,
    JobError,
    NonRetryableJobError,
    RetryableJobError,
    extract_error_code,
    is_retryable,
)


class CorruptPageError(Exception):
    pass


@pytest.mark.parametrize(
    "error, code",
    [
        (RuntimeError("PDF_ENCRYPTED: password protected"), "PDF_ENCRYPTED"),
        (ValueError("S3_NOT_FOUND: key missing"), "S3_NOT_FOUND"),
        (RuntimeError("Connection reset: peer closed"), "RUNTIMEERROR"),
        (CorruptPageError("page 3 unreadable"), "CORRUPTPAGEERROR"),
        (RuntimeError(""), "RUNTIMEERROR"),
        (NonRetryableJobError("gone", error_code="OBJECT_GONE"), "OBJECT_GONE"),
        (HandlerNotFoundError("nothing"), "NO_HANDLER"),
    ],
)
def test_extract_error_code(error, code):
    assert extract_error_code(error) == code


def test_retryability():
    assert is_retryable(RuntimeError("boom"))
    assert is_retryable(RetryableJobError("later"))
    assert not is_retryable(NonRetryableJobError("never"))
    assert not is_retryable(HandlerNotFoundError("missing"))


def test_job_error_defaults():
    error = JobError("failed")
    assert error.message == "failed"
    assert error.error_code == "JOB_ERROR"
    assert error.details == {}
    assert str(error) == "failed"
