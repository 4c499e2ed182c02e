"""Security and request logging middleware for the code runner API."""

# Standard library imports
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict

# Third-party imports
import structlog
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.requests import HTTPConnection

# Local application imports
from ..dependencies.auth import is_valid_api_key
from ..utils.request_helpers import extract_api_key, get_client_ip

logger = structlog.get_logger(__name__)

# WebSocket close code for policy violations (RFC 6455)
WS_POLICY_VIOLATION = 1008


class AuthFailureTracker:
    """Counts failed authentications per client IP over a sliding window."""

    def __init__(self, max_failures: int = 20, window_seconds: float = 60.0):
        self.max_failures = max_failures
        self.window_seconds = window_seconds
        self._failures: Dict[str, Deque[float]] = defaultdict(deque)

    def _prune(self, client_ip: str, now: float) -> Deque[float]:
        failures = self._failures[client_ip]
        while failures and now - failures[0] > self.window_seconds:
            failures.popleft()
        if not failures:
            del self._failures[client_ip]
        return failures

    def is_blocked(self, client_ip: str) -> bool:
        if client_ip not in self._failures:
            return False
        return len(self._prune(client_ip, time.monotonic())) >= self.max_failures

    def record_failure(self, client_ip: str) -> None:
        self._failures[client_ip].append(time.monotonic())


_BASE_SECURITY_HEADERS = {
    b"x-content-type-options": b"nosniff",
    b"x-frame-options": b"DENY",
    b"referrer-policy": b"strict-origin-when-cross-origin",
    b"strict-transport-security": b"max-age=31536000; includeSubDomains",
}

# Swagger UI pulls its assets from a CDN
_DOCS_CSP = (
    b"default-src 'self'; "
    b"script-src 'self' 'unsafe-inline' cdn.jsdelivr.net; "
    b"style-src 'self' 'unsafe-inline' cdn.jsdelivr.net; "
    b"img-src 'self' data: fastapi.tiangolo.com;"
)
_API_CSP = b"default-src 'none'"
_DOCS_PATHS = frozenset({"/docs", "/redoc", "/openapi.json"})

_ALLOWED_CONTENT_TYPES = (
    "application/json",
    "multipart/form-data",
    "application/x-www-form-urlencoded",
)


def _with_security_headers(message: dict, path: str) -> None:
    """Add hardening headers to a response start message in place."""
    if message["type"] != "http.response.start":
        return
    headers = dict(message.get("headers", []))
    headers.update(_BASE_SECURITY_HEADERS)
    headers[b"content-security-policy"] = _DOCS_CSP if path in _DOCS_PATHS else _API_CSP
    message["headers"] = list(headers.items())


class SecurityMiddleware:
    """Authentication, content-type checks and security headers.

    Plain ASGI so WebSocket handshakes pass through the same API key check
    as HTTP requests.
    """

    def __init__(self, app: Callable, failure_tracker: AuthFailureTracker = None):
        self.app = app
        self.failure_tracker = failure_tracker or AuthFailureTracker()
        self.excluded_paths = {"/health"} | _DOCS_PATHS

    async def __call__(self, scope: dict, receive: Callable, send: Callable):
        if scope["type"] == "websocket":
            await self._handle_websocket(scope, receive, send)
            return
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        path = scope.get("path", "")

        async def send_wrapper(message):
            _with_security_headers(message, path)
            await send(message)

        try:
            self._validate_content_type(request)
            if not self._should_skip_auth(request):
                self._authenticate(request, scope)
        except HTTPException as e:
            response = JSONResponse(
                status_code=e.status_code,
                content={"error": e.detail, "timestamp": time.time()},
            )
            await response(scope, receive, send_wrapper)
            return

        await self.app(scope, receive, send_wrapper)

    async def _handle_websocket(self, scope: dict, receive: Callable, send: Callable):
        conn = HTTPConnection(scope)
        try:
            self._authenticate(conn, scope)
        except HTTPException as e:
            logger.warning(
                "WebSocket connection rejected",
                path=conn.url.path,
                reason=e.detail,
            )
            # Handshake must be read before the close can be sent
            await receive()
            await send({"type": "websocket.close", "code": WS_POLICY_VIOLATION})
            return
        await self.app(scope, receive, send)

    def _validate_content_type(self, request: Request) -> None:
        if request.method not in ("POST", "PUT", "PATCH"):
            return
        content_type = request.headers.get("content-type", "")
        # Bodiless POSTs (e.g. terminal creation) carry no content type
        if content_type and not any(t in content_type for t in _ALLOWED_CONTENT_TYPES):
            raise HTTPException(
                status_code=415, detail=f"Unsupported content type: {content_type}"
            )

    def _should_skip_auth(self, request: Request) -> bool:
        return request.url.path in self.excluded_paths or request.method == "OPTIONS"

    def _authenticate(self, conn: HTTPConnection, scope: dict) -> None:
        """API key check with per-IP throttling of repeated failures.

        Admin routes are authorized by their own master-key dependency.
        """
        if conn.url.path.startswith("/api/v1/admin"):
            return

        client_ip = get_client_ip(conn)
        if self.failure_tracker.is_blocked(client_ip):
            raise HTTPException(
                status_code=429,
                detail="Too many authentication failures. Please try again later.",
            )

        api_key = extract_api_key(conn)
        if not api_key or not is_valid_api_key(api_key):
            self.failure_tracker.record_failure(client_ip)
            logger.warning(
                "Authentication failed",
                path=conn.url.path,
                client_ip=client_ip,
                key_provided=bool(api_key),
            )
            raise HTTPException(status_code=401, detail="Invalid or missing API key")

        scope["state"] = scope.get("state", {})
        scope["state"]["authenticated"] = True
        scope["state"]["api_key"] = api_key


class RequestLoggingMiddleware:
    """Logs one line per HTTP request with its status and duration.

    Health checks are logged once, then skipped.
    """

    def __init__(self, app: Callable):
        self.app = app
        self.health_logged = False

    def _should_log(self, path: str) -> bool:
        if path != "/health":
            return True
        if self.health_logged:
            return False
        self.health_logged = True
        return True

    async def __call__(self, scope: dict, receive: Callable, send: Callable):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method, path = scope.get("method", ""), scope.get("path", "")
        log_request = self._should_log(path)
        started = time.monotonic()
        status = None

        async def send_wrapper(message):
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            if log_request:
                logger.error("Request failed", method=method, path=path, error=str(e))
            raise
        finally:
            if log_request:
                fields = dict(
                    method=method,
                    path=path,
                    status=status,
                    duration_ms=round((time.monotonic() - started) * 1000, 2),
                )
                if status and status >= 500:
                    logger.error("Request failed", **fields)
                elif status and status >= 400:
                    logger.warning("Request error", **fields)
                else:
                    logger.debug("Request processed", **fields)
