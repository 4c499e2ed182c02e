"""Unit tests for the global exception handlers."""

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel

from coderunner.models import (
    CapacityExceededError,
    ExecutionResult,
    ExecutionStatus,
    SessionConflictError,
    SessionNotFoundError,
    ValidationError,
)
from coderunner.models.errors import ErrorDetail
from coderunner.utils.error_handlers import register_exception_handlers


class Body(BaseModel):
    count: int


def _failed_result(status, **kwargs):
    return ExecutionResult(
        session_id="s-1", language="python", status=status, **kwargs
    )


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/invalid")
    async def invalid():
        raise ValidationError(
            "Code failed validation",
            details=[ErrorDetail(field="code", message="eval", code="forbidden_pattern")],
        )

    @app.get("/missing")
    async def missing():
        raise SessionNotFoundError("abc")

    @app.get("/busy")
    async def busy():
        raise SessionConflictError("Session already has an active run")

    @app.get("/full")
    async def full():
        raise CapacityExceededError("Too many terminals")

    @app.get("/timeout")
    async def timeout():
        _failed_result(
            ExecutionStatus.TIMED_OUT, stdout="partial", timed_out=True, duration_ms=2000
        ).raise_for_status()

    @app.get("/runtime")
    async def runtime():
        _failed_result(
            ExecutionStatus.RUNTIME_ERROR, stderr="ZeroDivisionError", exit_code=1
        ).raise_for_status()

    @app.get("/http")
    async def http():
        raise HTTPException(status_code=403, detail="Forbidden")

    @app.post("/body")
    async def body(payload: Body):
        return payload

    @app.get("/crash")
    async def crash():
        raise RuntimeError("secret internal detail")

    return TestClient(app, raise_server_exceptions=False)


class TestCodeRunnerExceptions:
    """Test domain errors map to status codes and bodies."""

    @pytest.mark.parametrize(
        "path,status,error_type",
        [
            ("/invalid", 400, "validation"),
            ("/missing", 404, "resource_not_found"),
            ("/busy", 409, "resource_conflict"),
            ("/full", 429, "rate_limited"),
            ("/timeout", 408, "timeout"),
            ("/runtime", 422, "execution_failed"),
        ],
    )
    def test_status_mapping(self, client, path, status, error_type):
        """Test each error kind has its own status and type."""
        response = client.get(path)
        assert response.status_code == status
        body = response.json()
        assert body["error_type"] == error_type
        assert body["request_id"]

    def test_validation_details(self, client):
        """Test validation details reach the client."""
        body = client.get("/invalid").json()
        assert body["details"][0]["code"] == "forbidden_pattern"
        assert body["result"] is None

    def test_outcome_carries_partial_result(self, client):
        """Test a timed-out run still returns the output it produced."""
        body = client.get("/timeout").json()
        assert body["result"]["stdout"] == "partial"
        assert body["result"]["timed_out"] is True

    def test_runtime_error_message(self, client):
        """Test the runtime error names the exit code."""
        body = client.get("/runtime").json()
        assert body["error"] == "Program exited with code 1"
        assert body["result"]["stderr"] == "ZeroDivisionError"


class TestFrameworkExceptions:
    """Test framework and unexpected errors."""

    def test_http_exception(self, client):
        """Test HTTPException gets the standard error body."""
        response = client.get("/http")
        assert response.status_code == 403
        assert response.json()["error_type"] == "authorization"

    def test_request_validation(self, client):
        """Test body validation failures list the offending field."""
        response = client.post("/body", json={"count": "many"})
        assert response.status_code == 422
        details = response.json()["details"]
        assert details[0]["field"] == "body -> count"

    def test_unexpected_exception_hidden(self, client):
        """Test unexpected errors do not leak their message."""
        response = client.get("/crash")
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "An unexpected error occurred"
        assert "secret" not in response.text
