from __future__ import annotations


class MirrorError(RuntimeError):
    code = "MIRROR_ERROR"


class ConfigurationError(MirrorError):
    code = "CONFIGURATION_ERROR"


class ListingError(MirrorError):
    code = "LISTING_FAILED"

    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class UnsafePlanError(MirrorError):
    code = "UNSAFE_PLAN"


class TransferError(MirrorError):
    code = "TRANSFER_FAILED"
    retryable = False


class RetryableTransferError(TransferError):
    code = "TRANSFER_RETRYABLE"
    retryable = True


class ContentMismatchError(RetryableTransferError):
    code = "CONTENT_MISMATCH"


class FatalTransferError(TransferError):
    code = "TRANSFER_FATAL"
    retryable = False


class SourceVanishedError(FatalTransferError):
    code = "SOURCE_VANISHED"


class JobLockedError(MirrorError):
    code = "JOB_LOCKED"


class RetryExhaustedError(MirrorError):
    code = "RETRY_EXHAUSTED"

    def __init__(self, last_error: BaseException, *, attempts: int, delays: list[float]):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts
        self.delays = delays


def error_code(exc: BaseException) -> str:
    if isinstance(exc, RetryExhaustedError):
        return error_code(exc.last_error)
    code = getattr(exc, "code", None)
    if isinstance(code, str):
        return code
    if isinstance(exc, PermissionError):
        return "PERMISSION_DENIED"
    if isinstance(exc, OSError):
        return "IO_ERROR"
    return type(exc).__name__.upper()
