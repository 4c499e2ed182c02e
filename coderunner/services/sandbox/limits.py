"""POSIX resource limits for the process backend.

Used when programs run as plain child processes. The limits are applied in
the child between fork and exec.
"""

import resource
from typing import Callable, Optional

from ...config import ResourceCeiling


def _lower_limit(which: int, soft: int, hard: Optional[int] = None) -> None:
    """Lower a limit, never asking for more than the current hard limit."""
    hard = soft if hard is None else hard
    _, current_hard = resource.getrlimit(which)
    if current_hard != resource.RLIM_INFINITY:
        hard = min(hard, current_hard)
        soft = min(soft, hard)
    resource.setrlimit(which, (soft, hard))


def build_preexec(
    ceiling: Optional[ResourceCeiling],
    cpu_seconds: Optional[int],
    max_file_size: int,
    limit_processes: bool = True,
) -> Callable[[], None]:
    """Return a preexec function that applies the sandbox's rlimits.

    Memory is bounded through the data segment rather than the address
    space so runtimes that reserve large virtual ranges still start.
    """

    def _apply() -> None:
        _lower_limit(resource.RLIMIT_CORE, 0)
        _lower_limit(resource.RLIMIT_FSIZE, max_file_size)
        if ceiling is not None:
            _lower_limit(resource.RLIMIT_DATA, ceiling.memory_bytes)
            if limit_processes:
                _lower_limit(resource.RLIMIT_NPROC, ceiling.max_processes)
        if cpu_seconds is not None:
            _lower_limit(resource.RLIMIT_CPU, cpu_seconds, cpu_seconds + 1)

    return _apply
