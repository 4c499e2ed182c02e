"""API endpoints for the code runner."""

from . import admin, exec, health, interactive, terminal

__all__ = ["admin", "exec", "health", "interactive", "terminal"]
