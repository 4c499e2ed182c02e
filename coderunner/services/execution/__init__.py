"""Sandboxed execution: runner state machine and admission control."""

from .runner import CodeRunner, SandboxRun
from .scheduler import ExecutionScheduler

__all__ = ["CodeRunner", "SandboxRun", "ExecutionScheduler"]
