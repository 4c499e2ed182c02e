"""Container isolation through the docker CLI.

Builds ``docker run`` arguments that pin a sandbox to its language image
and apply the resource ceiling at the container level.
"""

from typing import Dict, List, Optional

from ...config import ResourceCeiling, settings
from .nsjail import SANDBOX_UID, SANDBOX_WORKDIR

LABEL_SANDBOX_ID = "com.coderunner.sandbox-id"


class DockerConfig:
    """Builds docker CLI arguments for a one-shot sandboxed container."""

    def build_args(
        self,
        name: str,
        sandbox_id: str,
        sandbox_dir: str,
        image: str,
        command: List[str],
        ceiling: ResourceCeiling,
        network: bool = False,
        tty: bool = False,
        env: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        """Build arguments for ``docker run`` (not including the binary).

        Args:
            name: Container name, used to kill it on timeout
            sandbox_id: Sandbox the container belongs to (set as a label)
            sandbox_dir: Host directory mounted as the working directory
            image: Container image reference
            command: Command and arguments to run in the container
            ceiling: Memory, CPU and process limits to enforce
            network: Whether to allow network access
            tty: Allocate a terminal (stdin must itself be a terminal)
            env: Environment variables to set inside the container
        """
        memory = f"{ceiling.memory_mb}m"
        file_size = settings.max_file_size_bytes

        args = ["run", "--rm", "-i"]
        if tty:
            args.append("-t")
        args.extend(["--name", name])
        args.extend(["--label", f"{LABEL_SANDBOX_ID}={sandbox_id}"])

        args.extend(["--network", "bridge" if network else "none"])
        args.extend(["--memory", memory, "--memory-swap", memory])
        args.extend(["--cpus", f"{ceiling.cpu_share:g}"])
        args.extend(["--pids-limit", str(ceiling.max_processes)])

        args.extend(["--security-opt", "no-new-privileges"])
        args.extend(["--cap-drop", "ALL"])
        args.extend(["--ulimit", "nofile=64:64"])
        args.extend(["--ulimit", f"nproc={ceiling.max_processes}:{ceiling.max_processes}"])
        args.extend(["--ulimit", f"fsize={file_size}:{file_size}"])
        args.extend(["--ulimit", "core=0:0"])

        args.extend(["--read-only"])
        args.extend(["--tmpfs", f"/tmp:rw,size={settings.sandbox_tmpfs_size_mb}m"])
        args.extend(["-v", f"{sandbox_dir}:{SANDBOX_WORKDIR}"])
        args.extend(["-w", SANDBOX_WORKDIR])
        args.extend(["--user", f"{SANDBOX_UID}:{SANDBOX_UID}"])

        if env:
            for key, value in env.items():
                args.extend(["-e", f"{key}={value}"])

        args.append(image)
        args.extend(command)
        return args
