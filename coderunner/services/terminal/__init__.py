"""Interactive terminals: PTY shells, command policy and their manager."""

from .manager import TerminalManager
from .policy import CommandDecision, CommandPolicy
from .session import TerminalSession

__all__ = ["TerminalManager", "TerminalSession", "CommandPolicy", "CommandDecision"]
