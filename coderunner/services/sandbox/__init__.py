"""Sandbox management services.

This package provides sandboxed execution:
- nsjail.py: SandboxInfo dataclass and NsjailConfig builder
- docker.py: DockerConfig builder for container isolation
- limits.py: POSIX rlimits for the process backend
- executor.py: Command execution in sandboxes
- manager.py: Sandbox lifecycle management
"""

from .manager import SandboxManager
from .executor import ProcessOutcome, SandboxExecutor, SpawnedProcess
from .nsjail import NsjailConfig, SandboxInfo

__all__ = [
    "SandboxManager",
    "SandboxExecutor",
    "ProcessOutcome",
    "SpawnedProcess",
    "NsjailConfig",
    "SandboxInfo",
]
