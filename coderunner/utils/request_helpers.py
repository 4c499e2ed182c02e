"""Shared request helper utilities.

These utilities consolidate common request handling patterns used across
the middleware, dependencies and WebSocket layers. They accept any
``HTTPConnection`` so plain requests and WebSocket handshakes share them.
"""

from typing import Optional

from starlette.requests import HTTPConnection


def extract_api_key(conn: HTTPConnection) -> Optional[str]:
    """Extract API key from request headers.

    Checks in order:
    1. x-api-key header (preferred)
    2. Authorization header with Bearer or ApiKey token
    3. ``api_key`` query parameter, WebSocket handshakes only

    Returns:
        API key string or None if not found
    """
    api_key = conn.headers.get("x-api-key")
    if api_key:
        return api_key

    auth_header = conn.headers.get("authorization")
    if auth_header:
        scheme, _, token = auth_header.partition(" ")
        if scheme in ("Bearer", "ApiKey") and token:
            return token

    # Browsers cannot set headers on a WebSocket handshake
    if conn.scope.get("type") == "websocket":
        return conn.query_params.get("api_key") or None

    return None


def get_client_ip(conn: HTTPConnection) -> str:
    """Get client IP address from request.

    Checks X-Forwarded-For (first hop), then X-Real-IP, then the direct
    peer. Returns "unknown" if none is available.
    """
    forwarded_for = conn.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = conn.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    if conn.client:
        return conn.client.host

    return "unknown"
