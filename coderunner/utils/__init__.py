"""Utility modules for the code runner."""

from .id_generator import (
    generate_execution_id,
    generate_request_id,
    generate_session_id,
    is_valid_session_id,
)
from .logging import setup_logging
from .request_helpers import extract_api_key, get_client_ip

__all__ = [
    "setup_logging",
    "generate_execution_id",
    "generate_request_id",
    "generate_session_id",
    "is_valid_session_id",
    "extract_api_key",
    "get_client_ip",
]
