"""Identifier generation and validation."""

import re
import secrets
import uuid

# Opaque session ids accepted from clients and generated by the registry
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def generate_session_id() -> str:
    """URL-safe random session id (22 chars)."""
    return secrets.token_urlsafe(16)


def generate_request_id() -> str:
    return uuid.uuid4().hex[:16]


def generate_execution_id() -> str:
    return f"exec-{uuid.uuid4().hex[:12]}"


def is_valid_session_id(session_id: str) -> bool:
    return bool(session_id) and SESSION_ID_PATTERN.match(session_id) is not None
