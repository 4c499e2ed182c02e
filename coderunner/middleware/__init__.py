"""Middleware package for the code runner API."""

from .security import AuthFailureTracker, RequestLoggingMiddleware, SecurityMiddleware

__all__ = [
    "AuthFailureTracker",
    "SecurityMiddleware",
    "RequestLoggingMiddleware",
]
