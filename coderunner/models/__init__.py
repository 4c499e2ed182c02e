"""Data models for the code runner."""

from .errors import (
    ErrorType,
    ErrorDetail,
    ErrorResponse,
    CodeRunnerException,
    ValidationError,
    CompilationError,
    ExecutionRuntimeError,
    ExecutionTimeoutError,
    ResourceExceededError,
    SessionNotFoundError,
    SessionFileNotFoundError,
    SessionConflictError,
    CapacityExceededError,
    AuthenticationRequiredError,
    ServiceUnavailableError,
)
from .files import UploadedFile, GeneratedFile, SessionFileInfo, FileListResponse
from .validation import SecurityViolation, ValidationReport, ViolationKind
from .execution import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    ExecuteCodeRequest,
    LanguageInfo,
)
from .session import SessionKind

__all__ = [
    # Error models
    "ErrorType",
    "ErrorDetail",
    "ErrorResponse",
    "CodeRunnerException",
    "ValidationError",
    "CompilationError",
    "ExecutionRuntimeError",
    "ExecutionTimeoutError",
    "ResourceExceededError",
    "SessionNotFoundError",
    "SessionFileNotFoundError",
    "SessionConflictError",
    "CapacityExceededError",
    "AuthenticationRequiredError",
    "ServiceUnavailableError",
    # File models
    "UploadedFile",
    "GeneratedFile",
    "SessionFileInfo",
    "FileListResponse",
    # Validation
    "SecurityViolation",
    "ValidationReport",
    "ViolationKind",
    # Execution models
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionState",
    "ExecutionStatus",
    "ExecuteCodeRequest",
    "LanguageInfo",
    # Sessions
    "SessionKind",
]
