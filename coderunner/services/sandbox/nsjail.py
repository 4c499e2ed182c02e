"""nsjail configuration and sandbox info dataclass.

SandboxInfo is the handle for a provisioned sandbox. NsjailConfig builds
the CLI arguments for invoking nsjail.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from ...config import ResourceCeiling, settings

logger = structlog.get_logger(__name__)

# Path the workspace is mounted at inside nsjail and docker sandboxes
SANDBOX_WORKDIR = "/workspace"

# Unprivileged uid/gid programs run as inside isolated sandboxes
SANDBOX_UID = 65534

# Runtimes that resolve their own install location through /proc/self/exe
_NEEDS_PROC = {"csharp", "java", "rust"}


@dataclass
class SandboxInfo:
    """Represents one provisioned sandbox.

    This is the handle used throughout the codebase to reference an
    execution environment. The host directory ``data_dir`` is the program's
    working directory.
    """

    sandbox_id: str
    sandbox_dir: Path
    data_dir: Path  # Host dir the program runs in
    language: str
    session_id: str
    created_at: datetime
    backend: str = "nsjail"
    ceiling: ResourceCeiling = field(default_factory=ResourceCeiling)
    image: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.sandbox_id

    @property
    def tmp_dir(self) -> Path:
        """Scratch directory outside the collected working directory."""
        return self.sandbox_dir / "tmp"

    @property
    def workdir(self) -> str:
        """Working directory as seen from inside the sandbox."""
        if self.backend == "process":
            return str(self.data_dir)
        return SANDBOX_WORKDIR


class NsjailConfig:
    """Builds nsjail CLI arguments from settings and a resource ceiling.

    Translates the sandbox's ceiling and the application's isolation
    settings into the corresponding nsjail command-line flags.
    """

    def build_args(
        self,
        sandbox_dir: str,
        command: List[str],
        language: str,
        ceiling: ResourceCeiling,
        timeout: Optional[int] = None,
        network: bool = False,
        interactive: bool = False,
        env: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        """Build nsjail CLI arguments.

        Args:
            sandbox_dir: Host directory to bind-mount as the working directory
            command: Command and arguments to execute inside the sandbox
            language: Language id, or "terminal" for shell sessions
            ceiling: Memory, CPU and process limits to enforce
            timeout: Execution timeout in seconds
            network: Whether to allow network access
            interactive: Long-lived session attached to a pipe or terminal
            env: Environment variables to set inside the sandbox

        Returns:
            List of nsjail CLI arguments (not including "nsjail" itself)
        """
        if timeout is None:
            timeout = max(1, settings.default_timeout_ms // 1000)

        args: List[str] = ["--mode", "o", "--really_quiet"]

        # Interactive sessions keep the caller's session so the pty stays
        # their controlling terminal; their lifetime is enforced by the caller.
        if interactive:
            args.append("--skip_setsid")
            args.extend(["--time_limit", "0"])
        else:
            args.extend(["--time_limit", str(timeout)])

        # Per-process resource limits
        if settings.sandbox_cgroups_enabled:
            args.extend(["--rlimit_as", "hard"])
            args.extend(["--cgroup_mem_max", str(ceiling.memory_bytes)])
            args.extend(["--cgroup_pids_max", str(ceiling.max_processes)])
            args.extend(
                ["--cgroup_cpu_ms_per_sec", str(max(1, int(ceiling.cpu_share * 1000)))]
            )
        else:
            # Runtimes that reserve large virtual ranges (JVM, V8, Go) cannot
            # run under an address-space cap; cgroups are their only memory bound.
            address_space = (
                str(ceiling.memory_mb) if ceiling.limit_address_space else "hard"
            )
            args.extend(["--rlimit_as", address_space])
            args.extend(["--rlimit_nproc", str(ceiling.max_processes)])
        args.extend(["--rlimit_fsize", str(settings.max_file_size_mb)])
        args.extend(["--rlimit_nofile", "64"])
        args.extend(["--rlimit_core", "0"])
        if not interactive:
            args.extend(["--rlimit_cpu", str(timeout + 1)])

        # Namespaces
        args.append("--disable_clone_newuser")
        if not network:
            args.append("--iface_no_lo")
        else:
            args.append("--disable_clone_newnet")

        # Read-only view of the host root, writable workspace and /tmp
        args.extend(["--chroot", "/"])
        args.extend(["--bindmount", f"{sandbox_dir}:{SANDBOX_WORKDIR}"])
        args.extend(
            [
                "--mount",
                f"none:/tmp:tmpfs:size={settings.sandbox_tmpfs_size_mb * 1024 * 1024}",
            ]
        )

        args.extend(["--hostname", "sandbox"])

        if language.lower().strip() not in _NEEDS_PROC:
            args.append("--disable_proc")

        # ptrace and bind fail with EPERM instead of killing the process
        args.extend(
            [
                "--seccomp_string",
                "POLICY policy { ERRNO(1) { ptrace, bind, mount, umount2, reboot } } "
                "USE policy DEFAULT ALLOW",
            ]
        )

        args.extend(["--cwd", SANDBOX_WORKDIR])
        args.extend(["--user", str(SANDBOX_UID)])
        args.extend(["--group", str(SANDBOX_UID)])

        if env:
            for key, value in env.items():
                args.extend(["--env", f"{key}={value}"])

        args.append("--")
        args.extend(command)

        return args
