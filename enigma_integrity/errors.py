"""Error taxonomy for integrity, backup and restore operations."""

from typing import Optional


class IntegrityError(Exception):
    """Base exception for file integrity errors."""

    def __init__(
        self,
        message: str,
        code: str = "INTEGRITY_ERROR",
        file_path: Optional[str] = None,
        operation: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.code = code
        self.file_path = str(file_path) if file_path is not None else None
        self.operation = operation
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": str(self),
            "file_path": self.file_path,
            "operation": self.operation,
            "cause": repr(self.cause) if self.cause else None,
        }


class ChecksumError(IntegrityError):
    """Unreadable, oversized or timed-out source file during hashing."""

    def __init__(self, message: str, file_path: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message, "CHECKSUM_ERROR", file_path, "checksum", cause)


class ChecksumTimeoutError(ChecksumError):
    def __init__(self, timeout: float, file_path: Optional[str] = None):
        super().__init__(f"Checksum calculation timed out after {timeout}s", file_path)
        self.code = "CHECKSUM_TIMEOUT"
        self.timeout = timeout


class ValidationError(IntegrityError):
    """Failure while comparing or batch-validating files.

    A checksum mismatch is not an error; it is reported as an invalid
    ``ValidationOutcome``.
    """

    def __init__(self, message: str, file_path: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message, "VALIDATION_ERROR", file_path, "validation", cause)


class RollbackError(IntegrityError):
    """Backup precondition failure, artifact corruption or restore verification failure."""

    def __init__(self, message: str, file_path: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message, "ROLLBACK_ERROR", file_path, "rollback", cause)


class ConfigError(IntegrityError, ValueError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, "CONFIG_ERROR", None, "configuration", cause)
