"""
Standardised error handling for venuemap.
"""

from venuemap.core.constants import ErrorCode, RETRYABLE_ERRORS, MAX_ERROR_MESSAGE_LEN


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None,
                 stage: str | None = None, attempts: int = 1):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        self.stage = stage
        self.attempts = attempts
        super().__init__(f"[{code}] {message}")


class RetryExhaustedError(JobError):
    """Raised by the retry policy once an operation has run out of attempts."""

    def __init__(self, last_error: BaseException, attempts: int):
        self.last_error = last_error
        if isinstance(last_error, JobError):
            code = last_error.code
            message = last_error.message
            retryable = last_error.retryable
            stage = last_error.stage
        else:
            code = ErrorCode.UNEXPECTED
            message = f"{type(last_error).__name__}: {last_error}"
            retryable = True
            stage = None
        super().__init__(code, f"{message} (after {attempts} attempt(s))",
                         retryable=retryable, stage=stage, attempts=attempts)


def error_code_of(error: BaseException) -> str:
    if isinstance(error, JobError):
        return error.code
    return ErrorCode.UNEXPECTED


def error_summary(error: BaseException) -> str:
    """Message suitable for persisting on a failed record."""
    if isinstance(error, JobError):
        text = error.message
        if error.stage:
            text = f"{error.stage}: {text}"
    else:
        text = f"{type(error).__name__}: {error}"
    return text[:MAX_ERROR_MESSAGE_LEN]
