"""Command execution in sandboxes.

Every backend is driven through asyncio subprocesses: the nsjail and
docker backends wrap the command in their CLI, the process backend runs it
directly under POSIX rlimits. Each command gets its own process group so a
timeout or teardown can kill everything it started.
"""

import asyncio
import os
import re
import signal
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import structlog

from ...config import get_language, settings
from .docker import LABEL_SANDBOX_ID, DockerConfig
from .limits import build_preexec
from .nsjail import NsjailConfig, SandboxInfo

logger = structlog.get_logger(__name__)

TRUNCATION_MARKER = "\n[Output truncated - size limit exceeded]"

# Exit statuses that mean the isolation layer killed the program
_KILLED_BY_LIMIT = {
    -signal.SIGKILL,
    -signal.SIGXCPU,
    -signal.SIGXFSZ,
    128 + signal.SIGKILL,
    128 + signal.SIGXCPU,
    128 + signal.SIGXFSZ,
}

# Runtime messages printed when an allocation or fork hits a ceiling
_EXHAUSTION_MARKERS = (
    "MemoryError",
    "Cannot allocate memory",
    "std::bad_alloc",
    "java.lang.OutOfMemoryError",
    "JavaScript heap out of memory",
    "runtime: out of memory",
    "memory allocation of",
    "Resource temporarily unavailable",
    "can't start new thread",
)


@dataclass
class LaunchSpec:
    """Everything needed to start one sandboxed command."""

    argv: List[str]
    env: Optional[Dict[str, str]] = None
    cwd: Optional[str] = None
    preexec_fn: Optional[Callable[[], None]] = None
    container_name: Optional[str] = None


@dataclass
class ProcessOutcome:
    """What a finished (or killed) sandboxed command produced."""

    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False
    resource_exceeded: bool = False
    stdout_truncated: bool = False
    stderr_truncated: bool = False


@dataclass
class SpawnedProcess:
    """A long-lived sandboxed process and how to stop it."""

    process: asyncio.subprocess.Process
    spec: LaunchSpec
    started_at: float = field(default_factory=time.monotonic)

    @property
    def pid(self) -> int:
        return self.process.pid


class SandboxExecutor:
    """Handles command execution inside sandboxes.

    ``spawn_count`` counts every process this executor has started.
    """

    def __init__(
        self,
        nsjail_config: Optional[NsjailConfig] = None,
        docker_config: Optional[DockerConfig] = None,
    ):
        self._nsjail_config = nsjail_config or NsjailConfig()
        self._docker_config = docker_config or DockerConfig()
        self.spawn_count = 0

    def prepare_launch(
        self,
        sandbox_info: SandboxInfo,
        command: List[str],
        timeout: Optional[int] = None,
        interactive: bool = False,
        tty: bool = False,
        limit_processes: bool = True,
        extra_env: Optional[Dict[str, str]] = None,
    ) -> LaunchSpec:
        """Translate a command into the argv for the sandbox's backend.

        Args:
            sandbox_info: Sandbox the command runs in
            command: Command and arguments as seen inside the sandbox
            timeout: Wall-clock limit in seconds (ignored when interactive)
            interactive: Long-lived process whose lifetime the caller enforces
            tty: stdin/stdout are a pseudo-terminal
            limit_processes: Apply the process-count ceiling (process backend)
            extra_env: Variables added on top of the sanitized environment
        """
        env = self._build_sanitized_env(sandbox_info)
        if extra_env:
            env.update(extra_env)
        backend = sandbox_info.backend

        if backend == "nsjail":
            # nsjail's own limit is a backstop; the caller's timer fires first
            args = self._nsjail_config.build_args(
                sandbox_dir=str(sandbox_info.data_dir),
                command=command,
                language=sandbox_info.language,
                ceiling=sandbox_info.ceiling,
                timeout=(timeout + 1) if timeout else None,
                network=settings.sandbox_network_enabled,
                interactive=interactive,
                env=env,
            )
            return LaunchSpec(argv=[settings.nsjail_binary] + args)

        if backend == "docker":
            name = f"coderunner-{sandbox_info.sandbox_id[:12]}-{uuid.uuid4().hex[:8]}"
            args = self._docker_config.build_args(
                name=name,
                sandbox_id=sandbox_info.sandbox_id,
                sandbox_dir=str(sandbox_info.data_dir),
                image=sandbox_info.image or "alpine:3",
                command=command,
                ceiling=sandbox_info.ceiling,
                network=settings.sandbox_network_enabled,
                tty=tty,
                env=env,
            )
            return LaunchSpec(argv=[settings.docker_binary] + args, container_name=name)

        return LaunchSpec(
            argv=list(command),
            env=env,
            cwd=str(sandbox_info.data_dir),
            preexec_fn=build_preexec(
                ceiling=sandbox_info.ceiling,
                cpu_seconds=None if interactive else (timeout or 0) + 1,
                max_file_size=settings.max_file_size_bytes,
                limit_processes=limit_processes,
            ),
        )

    async def run(
        self,
        sandbox_info: SandboxInfo,
        command: List[str],
        timeout: float,
        stdin_payload: Optional[str] = None,
    ) -> ProcessOutcome:
        """Run a command to completion or until the timeout expires.

        On timeout the command's whole process group (and its container) is
        killed and whatever output was already produced is returned.

        Args:
            sandbox_info: Sandbox to execute in
            command: Command and arguments as seen inside the sandbox
            timeout: Wall-clock limit in seconds
            stdin_payload: Optional stdin data

        Returns:
            ProcessOutcome with exit code, decoded output and flags
        """
        spec = self.prepare_launch(
            sandbox_info, command, timeout=max(1, int(timeout + 0.999))
        )
        limit = settings.max_output_bytes
        stdout_buf = bytearray()
        stderr_buf = bytearray()
        timed_out = False

        started = time.monotonic()
        proc = await self._spawn(spec, stdin_pipe=stdin_payload is not None)
        readers = [
            asyncio.create_task(self._drain(proc.stdout, stdout_buf, limit)),
            asyncio.create_task(self._drain(proc.stderr, stderr_buf, limit)),
        ]
        writer = None
        if stdin_payload is not None:
            writer = asyncio.create_task(
                self._feed(proc.stdin, stdin_payload.encode("utf-8"))
            )

        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(
                "Sandbox execution timed out",
                sandbox_id=sandbox_info.sandbox_id[:12],
                timeout=timeout,
            )
            await self._force_stop(proc, spec)
        except asyncio.CancelledError:
            await self._force_stop(proc, spec)
            raise
        finally:
            # Background children outlive the main process; take them down too
            self._kill_group(proc)
            await self._finish_io(readers, writer)

        duration_ms = int((time.monotonic() - started) * 1000)
        stdout = self._sanitize_output(bytes(stdout_buf), limit)
        stderr = self._sanitize_output(bytes(stderr_buf), limit)
        exit_code = proc.returncode

        return ProcessOutcome(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            timed_out=timed_out,
            resource_exceeded=(
                not timed_out and self._detect_resource_exhaustion(exit_code, stderr)
            ),
            stdout_truncated=len(stdout_buf) > limit,
            stderr_truncated=len(stderr_buf) > limit,
        )

    async def spawn(
        self,
        sandbox_info: SandboxInfo,
        command: List[str],
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        tty: bool = False,
        limit_processes: bool = True,
        preexec_extra: Optional[Callable[[], None]] = None,
        extra_env: Optional[Dict[str, str]] = None,
    ) -> SpawnedProcess:
        """Start a long-lived sandboxed process the caller interacts with."""
        spec = self.prepare_launch(
            sandbox_info,
            command,
            interactive=True,
            tty=tty,
            limit_processes=limit_processes,
            extra_env=extra_env,
        )
        if preexec_extra is not None:
            base = spec.preexec_fn

            def _combined() -> None:
                if base is not None:
                    base()
                preexec_extra()

            spec.preexec_fn = _combined

        proc = await self._spawn(spec, stdin=stdin, stdout=stdout, stderr=stderr)
        return SpawnedProcess(process=proc, spec=spec)

    async def terminate(self, spawned: SpawnedProcess) -> Optional[int]:
        """Force-stop a spawned process and everything it started."""
        await self._force_stop(spawned.process, spawned.spec)
        self._kill_group(spawned.process)
        return spawned.process.returncode

    async def remove_containers(self, sandbox_info: SandboxInfo) -> None:
        """Remove any container still labelled with this sandbox's id."""
        if sandbox_info.backend != "docker":
            return
        proc = await asyncio.create_subprocess_exec(
            settings.docker_binary,
            "ps",
            "-aq",
            "--filter",
            f"label={LABEL_SANDBOX_ID}={sandbox_info.sandbox_id}",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        out, _ = await proc.communicate()
        container_ids = out.decode().split()
        if container_ids:
            await self._docker("rm", "-f", *container_ids)
            logger.info(
                "Removed leftover containers",
                sandbox_id=sandbox_info.sandbox_id[:12],
                count=len(container_ids),
            )

    async def _spawn(
        self,
        spec: LaunchSpec,
        stdin_pipe: bool = False,
        stdin=None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    ) -> asyncio.subprocess.Process:
        if stdin is None:
            stdin = asyncio.subprocess.PIPE if stdin_pipe else asyncio.subprocess.DEVNULL
        self.spawn_count += 1
        return await asyncio.create_subprocess_exec(
            *spec.argv,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            cwd=spec.cwd,
            env=spec.env,
            preexec_fn=spec.preexec_fn,
            start_new_session=True,  # New process group for clean cleanup
        )

    async def _force_stop(
        self, proc: asyncio.subprocess.Process, spec: LaunchSpec
    ) -> None:
        self._kill_group(proc)
        if spec.container_name:
            # Killing the CLI client does not stop the container itself
            await self._docker("kill", spec.container_name)
        try:
            await asyncio.wait_for(
                proc.wait(), timeout=settings.sandbox_kill_grace_seconds
            )
        except asyncio.TimeoutError:
            logger.error("Sandbox process did not exit after kill", pid=proc.pid)

    @staticmethod
    def _kill_group(proc: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass

    async def _docker(self, *args: str) -> None:
        proc = await asyncio.create_subprocess_exec(
            settings.docker_binary,
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await proc.wait()

    @staticmethod
    async def _drain(
        stream: Optional[asyncio.StreamReader], sink: bytearray, limit: int
    ) -> None:
        """Read a stream to EOF, keeping at most ``limit + 1`` bytes."""
        if stream is None:
            return
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                return
            room = limit + 1 - len(sink)
            if room > 0:
                sink.extend(chunk[:room])

    @staticmethod
    async def _feed(stream: Optional[asyncio.StreamWriter], data: bytes) -> None:
        if stream is None:
            return
        try:
            stream.write(data)
            await stream.drain()
            stream.close()
        except (BrokenPipeError, ConnectionResetError):
            # The program exited without reading all of its input
            logger.debug("Sandbox stdin closed early", size=len(data))

    async def _finish_io(self, readers: List[asyncio.Task], writer) -> None:
        tasks = list(readers) + ([writer] if writer else [])
        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks), timeout=settings.sandbox_kill_grace_seconds
            )
        except asyncio.TimeoutError:
            # A detached descendant still holds the pipes open
            logger.warning("Sandbox output pipes still open after exit")

    @staticmethod
    def _detect_resource_exhaustion(exit_code: Optional[int], stderr: str) -> bool:
        if exit_code is None or exit_code == 0:
            return False
        if exit_code in _KILLED_BY_LIMIT:
            return True
        return any(marker in stderr for marker in _EXHAUSTION_MARKERS)

    def _build_sanitized_env(self, sandbox_info: SandboxInfo) -> Dict[str, str]:
        """Build environment whitelist for execution."""
        env_whitelist: Dict[str, str] = {
            "PATH": "/usr/local/bin:/usr/bin:/bin",
            "HOME": sandbox_info.workdir,
            "TMPDIR": "/tmp",
            "LANG": "C.UTF-8",
        }

        language = get_language(sandbox_info.language)
        if language is not None:
            env_whitelist.update(language.env())

        if sandbox_info.backend == "process":
            # Host /tmp is shared; keep scratch files inside the sandbox
            tmp_dir = str(sandbox_info.tmp_dir)
            env_whitelist = {
                key: (tmp_dir + value[4:] if value.startswith("/tmp") else value)
                for key, value in env_whitelist.items()
            }
            env_whitelist["PATH"] = os.environ.get("PATH", env_whitelist["PATH"])

        return env_whitelist

    def _sanitize_output(self, output: bytes, limit: Optional[int] = None) -> str:
        """Decode command output, enforce the size cap, strip control chars."""
        if limit is None:
            limit = settings.max_output_bytes
        truncated = len(output) > limit
        output_str = output[:limit].decode("utf-8", errors="replace")
        output_str = re.sub(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]", "", output_str)
        if truncated:
            output_str += TRUNCATION_MARKER
        return output_str
