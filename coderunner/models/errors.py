"""Error models and exception classes for the code runner."""

import time
from typing import Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class ErrorType(str, Enum):
    """Error type enumeration."""

    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    RESOURCE_NOT_FOUND = "resource_not_found"
    RESOURCE_CONFLICT = "resource_conflict"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    EXECUTION_FAILED = "execution_failed"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    INTERNAL_SERVER = "internal_server"
    SERVICE_UNAVAILABLE = "service_unavailable"


class ErrorDetail(BaseModel):
    """Detailed error information."""

    field: Optional[str] = Field(None, description="Field name for validation errors")
    message: str = Field(..., description="Human-readable error message")
    code: Optional[str] = Field(None, description="Machine-readable error code")


class ErrorResponse(BaseModel):
    """Standardized error response model."""

    model_config = ConfigDict(use_enum_values=True)

    error: str = Field(..., description="Main error message")
    error_type: ErrorType = Field(..., description="Error category")
    details: Optional[List[ErrorDetail]] = Field(
        None, description="Additional error details"
    )
    result: Optional[dict] = Field(
        None, description="Partial execution result, when the program was started"
    )
    request_id: Optional[str] = Field(
        None, description="Request identifier for tracking"
    )
    timestamp: float = Field(default_factory=time.time, description="Error timestamp")


# Custom Exception Classes


class CodeRunnerException(Exception):
    """Base exception for the code runner."""

    def __init__(
        self,
        message: str,
        error_type: ErrorType = ErrorType.INTERNAL_SERVER,
        status_code: int = 500,
        details: Optional[List[ErrorDetail]] = None,
        request_id: Optional[str] = None,
    ):
        self.message = message
        self.error_type = error_type
        self.status_code = status_code
        self.details = details or []
        self.request_id = request_id
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert exception to error response model."""
        return ErrorResponse(
            error=self.message,
            error_type=self.error_type,
            details=self.details if self.details else None,
            request_id=self.request_id,
        )


class ValidationError(CodeRunnerException):
    """Request validation errors.

    Raised before any sandbox is provisioned. ``violations`` holds the
    security violations that caused the rejection, when there are any.
    """

    def __init__(
        self, message: str = "Validation failed", violations: Optional[list] = None, **kwargs
    ):
        self.violations = list(violations or [])
        super().__init__(
            message=message, error_type=ErrorType.VALIDATION, status_code=400, **kwargs
        )


class ExecutionOutcomeError(CodeRunnerException):
    """Base for failures of a program that was actually started.

    Carries the (possibly partial) execution result so callers still get
    whatever output the program produced.
    """

    def __init__(self, message: str, result: Any = None, **kwargs):
        self.result = result
        super().__init__(message=message, **kwargs)

    def to_response(self) -> ErrorResponse:
        response = super().to_response()
        if self.result is not None:
            response.result = self.result.model_dump(mode="json")
        return response


class CompilationError(ExecutionOutcomeError):
    """The compiler or interpreter front-end rejected the program."""

    def __init__(self, message: str = "Compilation failed", result: Any = None, **kwargs):
        super().__init__(
            message=message,
            result=result,
            error_type=ErrorType.EXECUTION_FAILED,
            status_code=422,
            **kwargs,
        )


class ExecutionRuntimeError(ExecutionOutcomeError):
    """The program ran and exited with a non-zero status."""

    def __init__(self, message: str = "Program exited with an error", result: Any = None, **kwargs):
        super().__init__(
            message=message,
            result=result,
            error_type=ErrorType.EXECUTION_FAILED,
            status_code=422,
            **kwargs,
        )


class ExecutionTimeoutError(ExecutionOutcomeError):
    """Wall-clock limit exceeded; the sandbox was force-killed."""

    def __init__(self, timeout_ms: int, result: Any = None, **kwargs):
        self.timeout_ms = timeout_ms
        super().__init__(
            message=f"Execution timed out after {timeout_ms} ms",
            result=result,
            error_type=ErrorType.TIMEOUT,
            status_code=408,
            **kwargs,
        )


class ResourceExceededError(ExecutionOutcomeError):
    """Memory or process-count ceiling tripped inside the sandbox."""

    def __init__(self, message: str = "Resource limit exceeded", result: Any = None, **kwargs):
        super().__init__(
            message=message,
            result=result,
            error_type=ErrorType.RESOURCE_EXHAUSTED,
            status_code=413,
            **kwargs,
        )


class SessionNotFoundError(CodeRunnerException):
    """Unknown or expired session id."""

    def __init__(self, session_id: str, **kwargs):
        self.session_id = session_id
        super().__init__(
            message=f"Session not found: {session_id}",
            error_type=ErrorType.RESOURCE_NOT_FOUND,
            status_code=404,
            **kwargs,
        )


class SessionFileNotFoundError(CodeRunnerException):
    """Requested file does not exist in the session's output directory."""

    def __init__(self, session_id: str, filename: str, **kwargs):
        super().__init__(
            message=f"File not found: {filename}",
            error_type=ErrorType.RESOURCE_NOT_FOUND,
            status_code=404,
            **kwargs,
        )


class SessionConflictError(CodeRunnerException):
    """Session id already live, or a run is already active for it."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_type=ErrorType.RESOURCE_CONFLICT,
            status_code=409,
            **kwargs,
        )


class CapacityExceededError(CodeRunnerException):
    """A session or concurrency cap has been reached."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_type=ErrorType.RATE_LIMITED,
            status_code=429,
            **kwargs,
        )


class AuthenticationRequiredError(CodeRunnerException):
    """No verified user identity was supplied with the request."""

    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(
            message=message,
            error_type=ErrorType.AUTHENTICATION,
            status_code=401,
            **kwargs,
        )


class ServiceUnavailableError(CodeRunnerException):
    """Service unavailable errors."""

    def __init__(self, service: str, message: str = None, **kwargs):
        error_message = message or f"{service} service is currently unavailable"
        super().__init__(
            message=error_message,
            error_type=ErrorType.SERVICE_UNAVAILABLE,
            status_code=503,
            **kwargs,
        )
