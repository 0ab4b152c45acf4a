"""Custom exceptions for NoteVault.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_ALREADY_EXISTS = 1002
    NOTE_DISPOSED = 1003

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_RESTORE_FAILED = 4004

    # Consistency errors (5xxx)
    FRONTMATTER_MISSING = 5001
    HASH_LINE_MISSING = 5002

    # Sync errors (6xxx)
    SYNC_WATCHER_FAILED = 6001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    PATH_OUTSIDE_VAULT = 7002
    PATH_NOT_FOUND = 7003
    INVALID_EXTENSION = 7004
    EMPTY_IDENTIFIER = 7005


class NoteVaultError(Exception):
    """Base exception for all NoteVault errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NoteNotFoundError(NoteVaultError):
    """Raised when a note file cannot be found on disk."""

    def __init__(self, path: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note file '{path}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"path": path}
        )
        self.path = path


class ValidationError(NoteVaultError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class PathValidationError(ValidationError):
    """Raised when a path is missing, malformed, or outside the vault."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.PATH_OUTSIDE_VAULT
    ):
        super().__init__(message, field="path", value=path, code=code)
        self.path = path


class StorageError(NoteVaultError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.replace("\\", "/").split("/")[-1]
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class ConsistencyError(NoteVaultError):
    """Raised when a note file lacks structure that a previous load established.

    The GUID and hash writers edit the frontmatter block in place; if the
    block or its ``hash:`` line has disappeared the file no longer matches
    the in-memory note.
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.FRONTMATTER_MISSING
    ):
        details = {}
        if path:
            details["path"] = path
        super().__init__(message, code=code, details=details)
        self.path = path


class SyncError(NoteVaultError):
    """Raised when the file system watcher cannot be managed."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.SYNC_WATCHER_FAILED,
        original_error: Optional[Exception] = None
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]
        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error
