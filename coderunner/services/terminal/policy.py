"""Command-line policy for interactive terminals.

Only input tagged as a command line is checked; raw keystrokes go straight
to the shell. The checks keep casual misuse out of the shell. The sandbox
around the shell is what actually contains it.
"""

import re
from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

from ...config import settings

ALLOWED_COMMANDS: FrozenSet[str] = frozenset(
    {
        "ls", "pwd", "cd", "cat", "echo", "grep", "find", "head", "tail",
        "mkdir", "rmdir", "touch", "cp", "mv", "rm", "chmod", "chown",
        "ps", "top", "htop", "df", "du", "free", "whoami", "id",
        "git", "npm", "node", "python", "python3", "pip", "pip3",
        "gcc", "g++", "make", "cmake", "curl", "wget", "tar", "zip", "unzip",
        "vim", "nano", "less", "more", "man", "help", "clear",
    }
)  # fmt: skip

BLOCKED_COMMANDS: FrozenSet[str] = frozenset(
    {
        "sudo", "su", "passwd", "useradd", "userdel", "usermod",
        "chroot", "mount", "umount", "fdisk", "mkfs", "dd",
        "shutdown", "reboot", "halt", "poweroff", "init",
        "systemctl", "service", "iptables", "ufw", "firewall-cmd",
    }
)  # fmt: skip

DANGEROUS_PATTERNS: Tuple[str, ...] = (
    r"[;&|`$(){}\[\]]",  # chaining, substitution, grouping
    r">\s*/dev/null",
    r"2>&1",
    r"sudo\s",
    r"rm\s+-rf",
    r"dd\s+if=",
    r"mkfs",
    r"mount",
    r"chroot",
)

_COMPILED_DANGEROUS = tuple((p, re.compile(p)) for p in DANGEROUS_PATTERNS)

# A second line would reach the shell unchecked
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


@dataclass(frozen=True)
class CommandDecision:
    allowed: bool
    reason: Optional[str] = None

    @property
    def message(self) -> str:
        return f"Command blocked: {self.reason}" if not self.allowed else ""


class CommandPolicy:
    """Decides whether a command line may be forwarded to the shell.

    Checks run in order: length, control characters (embedded line
    breaks included), blocked leading token, allow-listed leading token,
    dangerous patterns anywhere in the line.
    """

    def __init__(
        self,
        allowed: FrozenSet[str] = ALLOWED_COMMANDS,
        blocked: FrozenSet[str] = BLOCKED_COMMANDS,
        max_length: Optional[int] = None,
    ):
        self.allowed = allowed
        self.blocked = blocked
        self.max_length = max_length or settings.terminal_max_command_length

    @staticmethod
    def leading_token(command: str) -> str:
        parts = command.strip().split(None, 1)
        return parts[0].lower() if parts else ""

    def check(self, command: str) -> CommandDecision:
        line = command.strip()
        if not line:
            return CommandDecision(True)

        if len(line) > self.max_length:
            return CommandDecision(False, "Command too long")
        if _CONTROL_CHARS.search(line):
            return CommandDecision(False, "Command contains control characters")

        token = self.leading_token(line)
        if token in self.blocked:
            return CommandDecision(False, f"Command '{token}' is not allowed")
        if token not in self.allowed:
            return CommandDecision(False, f"Command '{token}' is not in allowed list")

        for source, pattern in _COMPILED_DANGEROUS:
            if pattern.search(line):
                return CommandDecision(
                    False, f"Command contains dangerous pattern: {source}"
                )

        return CommandDecision(True)
