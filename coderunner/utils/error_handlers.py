"""Global error handlers for the code runner API.

Every error leaves the service as an ``ErrorResponse`` body. Failures of a
program that actually ran also carry its partial ``result``.
"""

# Standard library imports
import traceback
from typing import Dict, Optional, Union

# Third-party imports
import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

# Local application imports
from ..models.errors import (
    CodeRunnerException,
    ErrorDetail,
    ErrorResponse,
    ErrorType,
    ExecutionOutcomeError,
    ValidationError,
)
from .id_generator import generate_request_id
from .request_helpers import get_client_ip

logger = structlog.get_logger(__name__)

# Error category reported for framework-raised HTTP errors
STATUS_ERROR_TYPES = {
    400: ErrorType.VALIDATION,
    401: ErrorType.AUTHENTICATION,
    403: ErrorType.AUTHORIZATION,
    404: ErrorType.RESOURCE_NOT_FOUND,
    405: ErrorType.VALIDATION,
    409: ErrorType.RESOURCE_CONFLICT,
    413: ErrorType.RESOURCE_EXHAUSTED,
    415: ErrorType.VALIDATION,
    422: ErrorType.VALIDATION,
    429: ErrorType.RATE_LIMITED,
    500: ErrorType.INTERNAL_SERVER,
    502: ErrorType.SERVICE_UNAVAILABLE,
    503: ErrorType.SERVICE_UNAVAILABLE,
    504: ErrorType.TIMEOUT,
}


def _request_fields(request: Request, request_id: str) -> Dict[str, str]:
    return {
        "request_id": request_id,
        "path": request.url.path,
        "method": request.method,
        "client_ip": get_client_ip(request),
    }


def _respond(
    status_code: int, body: ErrorResponse, headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content=body.model_dump(mode="json"), headers=headers
    )


async def code_runner_exception_handler(
    request: Request, exc: CodeRunnerException
) -> JSONResponse:
    """Log a domain error at the level its cause deserves and render it."""
    exc.request_id = exc.request_id or generate_request_id()
    fields = _request_fields(request, exc.request_id)
    fields.update(
        error_type=exc.error_type.value,
        status_code=exc.status_code,
        message=exc.message,
    )
    if exc.details:
        fields["details"] = [d.model_dump() for d in exc.details]
    if isinstance(exc, ValidationError) and exc.violations:
        fields["violations"] = len(exc.violations)

    if exc.status_code >= 500:
        logger.error("Server error occurred", **fields)
    elif isinstance(exc, ExecutionOutcomeError):
        # The program failed, not the request
        logger.info("Execution finished unsuccessfully", **fields)
    else:
        logger.warning("Client error occurred", **fields)

    return _respond(exc.status_code, exc.to_response())


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    request_id = generate_request_id()
    logger.warning(
        "HTTP exception occurred",
        status_code=exc.status_code,
        detail=exc.detail,
        **_request_fields(request, request_id),
    )
    body = ErrorResponse(
        error=str(exc.detail),
        error_type=STATUS_ERROR_TYPES.get(exc.status_code, ErrorType.INTERNAL_SERVER),
        request_id=request_id,
    )
    return _respond(exc.status_code, body, headers=getattr(exc, "headers", None))


async def validation_exception_handler(
    request: Request, exc: Union[RequestValidationError, PydanticValidationError]
) -> JSONResponse:
    """Report each malformed field of a request body or query."""
    request_id = generate_request_id()
    details = [
        ErrorDetail(
            field=" -> ".join(str(loc) for loc in error["loc"]),
            message=error["msg"],
            code=error["type"],
        )
        for error in exc.errors()
    ]
    logger.warning(
        "Validation error occurred",
        validation_errors=[d.model_dump() for d in details],
        **_request_fields(request, request_id),
    )
    body = ErrorResponse(
        error="Request validation failed",
        error_type=ErrorType.VALIDATION,
        details=details,
        request_id=request_id,
    )
    return _respond(422, body)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected exceptions in full; the client only gets an id."""
    request_id = generate_request_id()
    logger.error(
        "Unexpected exception occurred",
        exception_type=type(exc).__name__,
        exception_message=str(exc),
        traceback=traceback.format_exc(),
        **_request_fields(request, request_id),
    )
    body = ErrorResponse(
        error="An unexpected error occurred",
        error_type=ErrorType.INTERNAL_SERVER,
        request_id=request_id,
    )
    return _respond(500, body)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CodeRunnerException, code_runner_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(PydanticValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
