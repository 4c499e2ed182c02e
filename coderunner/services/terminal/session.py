"""A bash shell on a pseudo-terminal, owned by one user.

The shell runs in its own session with the PTY slave as its controlling
terminal. The master side is watched with ``loop.add_reader``; every chunk
read from it is appended to a capped buffer and published, in order, on the
session's event queue. Nothing in here blocks the event loop.
"""

# Standard library imports
import asyncio
import codecs
import fcntl
import os
import pty
import re
import secrets
import struct
import termios
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Pattern, Tuple

# Third-party imports
import structlog

# Local application imports
from ...config import settings
from ...core.clock import Clock, system_clock
from ...core.queues import EventQueue
from ...models import SessionConflictError, SessionKind, ValidationError
from ...models.errors import ErrorDetail
from ...models.terminal import (
    TerminalCommandResponse,
    TerminalEvent,
    TerminalInfo,
    TerminalInputResponse,
    TerminalState,
)
from ..sandbox import SandboxInfo, SandboxManager, SpawnedProcess
from ..session import SessionContext
from .policy import CommandDecision, CommandPolicy

logger = structlog.get_logger(__name__)

MIN_COLS, MAX_COLS = 10, 200
MIN_ROWS, MAX_ROWS = 5, 100

# The prompt hook sets the window title to the working directory
PROMPT_COMMAND = "printf '\\033]0;PWD=%s\\007' \"$PWD\""
PWD_PATTERN = re.compile(r"PWD=([^\s\x07]+)")

_ANSI_PATTERN = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b[@-Z\\-_]"
)

_LIVE_STATES = (TerminalState.READY, TerminalState.ACTIVE)


def _acquire_controlling_tty() -> None:
    """Runs in the child after setsid: make stdin (the PTY) its terminal."""
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def validate_dimensions(cols: int, rows: int) -> None:
    if not (MIN_COLS <= cols <= MAX_COLS and MIN_ROWS <= rows <= MAX_ROWS):
        raise ValidationError(
            message="Invalid terminal dimensions",
            details=[
                ErrorDetail(
                    field="cols" if not MIN_COLS <= cols <= MAX_COLS else "rows",
                    message=(
                        f"cols must be {MIN_COLS}-{MAX_COLS} and rows "
                        f"{MIN_ROWS}-{MAX_ROWS}"
                    ),
                    code="invalid_dimensions",
                )
            ],
        )


class TerminalSession(SessionContext):
    """One interactive shell.

    created -> ready -> active -> exited | timed_out | disconnected
    -> cleaned_up. ``process`` is set exactly while the session is ready
    or active.
    """

    kind = SessionKind.TERMINAL

    def __init__(
        self,
        session_id: str,
        user_id: str,
        sandbox_info: SandboxInfo,
        sandbox_manager: SandboxManager,
        policy: Optional[CommandPolicy] = None,
        clock: Clock = system_clock,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
    ):
        super().__init__(session_id, user_id=user_id, clock=clock)
        self.sandbox_info = sandbox_info
        self.policy = policy or CommandPolicy()
        self.cols = cols or settings.terminal_cols
        self.rows = rows or settings.terminal_rows
        self.state = TerminalState.CREATED
        self.max_lifetime = settings.terminal.session_timeout_seconds
        self.idle_timeout = settings.terminal_idle_timeout_minutes * 60

        self.current_directory: Optional[str] = sandbox_info.workdir
        self.history: Deque[Dict] = deque(maxlen=settings.terminal_history_size)
        self.suspicious_activity: Deque[Dict] = deque(
            maxlen=settings.terminal_suspicious_log_size
        )
        self.blocked_commands_count = 0
        self.exit_code: Optional[int] = None
        self.events: EventQueue[TerminalEvent] = EventQueue(maxsize=1000)

        # Called once when the shell exits on its own
        self.on_exit: Optional[Callable[["TerminalSession"], None]] = None
        # Called once after teardown, whoever closed the session
        self.on_close: Optional[Callable[["TerminalSession"], None]] = None

        self._sandbox_manager = sandbox_manager
        self._spawned: Optional[SpawnedProcess] = None
        self._master_fd: Optional[int] = None
        self._buffer = bytearray()
        self.total_output_bytes = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pwd_tail = ""
        self._eof = asyncio.Event()
        self._exit_task: Optional[asyncio.Task] = None
        self._closing = False

        # executeCommand bookkeeping; one command at a time
        self._command_lock = asyncio.Lock()
        self._capture: Optional[List[str]] = None
        self._capture_marker: Optional[Pattern] = None
        self._capture_done = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._spawned is not None and self.state in _LIVE_STATES

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._spawned.process if self.is_active else None

    def _shell_env(self) -> Dict[str, str]:
        return {
            "TERM": settings.terminal_term,
            "COLORTERM": "truecolor",
            "PS1": "\\w\\$ ",
            "PROMPT_COMMAND": PROMPT_COMMAND,
            "HISTFILE": "/dev/null",
        }

    async def start(self) -> None:
        """Spawn the shell on a fresh PTY."""
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(master_fd, self.rows, self.cols)
            spawned = await self._sandbox_manager.executor.spawn(
                self.sandbox_info,
                [settings.terminal_shell, "--noprofile", "--norc", "-i"],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                tty=True,
                limit_processes=False,
                preexec_extra=_acquire_controlling_tty,
                extra_env=self._shell_env(),
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            # The child holds its own copies
            os.close(slave_fd)

        os.set_blocking(master_fd, False)
        self._master_fd = master_fd
        self._spawned = spawned
        asyncio.get_running_loop().add_reader(master_fd, self._on_readable)
        self._exit_task = asyncio.create_task(self._wait_exit())
        self.state = TerminalState.READY
        logger.info(
            "Terminal shell started",
            session_id=self.session_id[:12],
            user_id=self.user_id,
            pid=spawned.pid,
            cols=self.cols,
            rows=self.rows,
        )

    async def _wait_exit(self) -> None:
        code = await self._spawned.process.wait()
        # Let the reader drain what the shell wrote before exiting
        try:
            await asyncio.wait_for(
                self._eof.wait(), timeout=settings.sandbox_kill_grace_seconds
            )
        except asyncio.TimeoutError:
            logger.debug("Terminal output not drained at exit", session_id=self.session_id[:12])
        if self._closing:
            return

        self.exit_code = code
        self.state = TerminalState.EXITED
        self._capture_done.set()
        self.events.put(
            TerminalEvent(
                type="exit",
                session_id=self.session_id,
                exit_code=code,
                message=f"Terminal exited with code: {code}",
            )
        )
        logger.info(
            "Terminal shell exited",
            session_id=self.session_id[:12],
            exit_code=code,
        )
        if self.on_exit is not None:
            self.on_exit(self)

    async def close(self, reason: str = "closed") -> None:
        """Kill the shell and everything it started, then free the sandbox."""
        if self._closing:
            return
        self._closing = True

        if self.state in (TerminalState.CREATED,) + _LIVE_STATES:
            self.state = (
                TerminalState.TIMED_OUT
                if reason in ("timed_out", "idle")
                else TerminalState.DISCONNECTED
            )

        if self._master_fd is not None:
            asyncio.get_running_loop().remove_reader(self._master_fd)
        if self._spawned is not None:
            await self._sandbox_manager.executor.terminate(self._spawned)
        if self._exit_task is not None and self._exit_task is not asyncio.current_task():
            self._exit_task.cancel()
        if self._master_fd is not None:
            os.close(self._master_fd)
            self._master_fd = None
        self._capture_done.set()

        await self._sandbox_manager.destroy_sandbox(self.sandbox_info)
        self.events.put(
            TerminalEvent(type="closed", session_id=self.session_id, message=reason)
        )
        final_state = self.state
        self.state = TerminalState.CLEANED_UP
        logger.info(
            "Terminal session cleaned up",
            session_id=self.session_id[:12],
            reason=reason,
            final_state=final_state.value,
            blocked_commands=self.blocked_commands_count,
        )
        if self.on_close is not None:
            self.on_close(self)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, 65536)
        except BlockingIOError:
            return
        except OSError:
            # EIO once no process holds the slave side any more
            data = b""
        if not data:
            asyncio.get_running_loop().remove_reader(self._master_fd)
            self._eof.set()
            return
        self._handle_output(data)

    def _handle_output(self, data: bytes) -> None:
        self._buffer.extend(data)
        cap = settings.terminal_output_buffer_bytes
        if len(self._buffer) > cap:
            del self._buffer[: len(self._buffer) - cap]
        self.total_output_bytes += len(data)

        text = self._decoder.decode(data)
        if not text:
            return
        self._track_directory(text)

        if self._capture is not None:
            self._capture.append(text)
            if self._capture_marker.search("".join(self._capture)):
                self._capture_done.set()

        self.events.put(TerminalEvent(type="output", session_id=self.session_id, data=text))

    def _track_directory(self, text: str) -> None:
        # Display only; the title escape may be split across reads
        window = self._pwd_tail + text
        matches = PWD_PATTERN.findall(window)
        if matches:
            self.current_directory = matches[-1]
        self._pwd_tail = window[-512:]

    def buffered_output(self) -> str:
        return bytes(self._buffer).decode("utf-8", errors="replace")

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    async def _write(self, payload: bytes) -> None:
        view = memoryview(payload)
        while view:
            try:
                written = os.write(self._master_fd, view)
            except BlockingIOError:
                await asyncio.sleep(0.01)
                continue
            view = view[written:]

    def _mark_active(self) -> None:
        if self.state == TerminalState.READY:
            self.state = TerminalState.ACTIVE
        self.touch()

    def _record_history(self, command: str) -> None:
        if command:
            self.history.append(
                {
                    "command": command,
                    "timestamp": self.clock.now(),
                    "directory": self.current_directory,
                }
            )

    def record_blocked(self, command: str, decision: CommandDecision) -> None:
        """Count a rejected command and keep it as suspicious activity."""
        self.blocked_commands_count += 1
        self.suspicious_activity.append(
            {
                "type": "blocked_command",
                "data": command,
                "timestamp": self.clock.now(),
                "user_id": self.user_id,
                "session_id": self.session_id,
            }
        )
        logger.warning(
            "Suspicious activity in terminal session",
            session_id=self.session_id[:12],
            user_id=self.user_id,
            type="blocked_command",
            command=command[:200],
            reason=decision.reason,
        )
        self.events.put(
            TerminalEvent(
                type="error", session_id=self.session_id, message=decision.message
            )
        )

    async def send_input(self, data: str, is_command: bool = False) -> TerminalInputResponse:
        """Forward input to the shell.

        Command lines are checked against the policy first and never reach
        the shell when rejected. Raw keystrokes are forwarded as they are.
        """
        if is_command:
            decision = self.policy.check(data)
            if not decision.allowed:
                self.record_blocked(data, decision)
                return TerminalInputResponse(
                    session_id=self.session_id, accepted=False, reason=decision.message
                )

        if not self.is_active:
            return TerminalInputResponse(
                session_id=self.session_id, accepted=False, reason="Terminal not active"
            )

        payload = data
        if is_command:
            # Only the checked line is written, terminated by one newline
            line = data.strip()
            self._record_history(line)
            payload = line + "\n"
        await self._write(payload.encode("utf-8"))
        self._mark_active()
        return TerminalInputResponse(session_id=self.session_id, accepted=True)

    async def execute_command(
        self, command: str, timeout: Optional[float] = None
    ) -> TerminalCommandResponse:
        """Run one command line and wait for its output and exit status.

        Raises:
            ValidationError: The command was blocked or is empty
            SessionConflictError: The shell is no longer running
        """
        line = command.strip()
        if not line:
            raise ValidationError(message="Command cannot be empty")
        decision = self.policy.check(line)
        if not decision.allowed:
            self.record_blocked(command, decision)
            raise ValidationError(
                message=decision.message,
                details=[
                    ErrorDetail(
                        field="command", message=decision.message, code="command_blocked"
                    )
                ],
            )
        if not self.is_active:
            raise SessionConflictError(f"Terminal {self.session_id} is not active")

        if timeout is None:
            timeout = settings.terminal_command_timeout_seconds

        async with self._command_lock:
            nonce = secrets.token_hex(6)
            marker = re.compile(rf"__CMD_DONE_{nonce}:(\d+)")
            self._capture = []
            self._capture_marker = marker
            self._capture_done = asyncio.Event()

            self._record_history(line)
            await self._write(
                f"{line}; printf '\\n__CMD_DONE_{nonce}:%d\\n' $?\n".encode("utf-8")
            )
            self._mark_active()

            timed_out = False
            try:
                await asyncio.wait_for(self._capture_done.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning(
                    "Terminal command timed out",
                    session_id=self.session_id[:12],
                    timeout=timeout,
                )
                if self.is_active:
                    # Interrupt the foreground job
                    await self._write(b"\x03")
            finally:
                captured = "".join(self._capture or [])
                self._capture = None
                self._capture_marker = None

        output, exit_code = self.extract_command_output(captured, marker)
        logger.debug(
            "Terminal command finished",
            session_id=self.session_id[:12],
            exit_code=exit_code,
            output_length=len(output),
        )
        return TerminalCommandResponse(
            session_id=self.session_id,
            output=output,
            exit_code=exit_code,
            timed_out=timed_out,
            current_directory=self.current_directory,
        )

    @staticmethod
    def extract_command_output(
        captured: str, marker: Pattern
    ) -> Tuple[str, Optional[int]]:
        """Split raw PTY text into the command's output and exit status."""
        text = _ANSI_PATTERN.sub("", captured).replace("\r\n", "\n").replace("\r", "")
        match = marker.search(text)
        exit_code = int(match.group(1)) if match else None
        body = text[: match.start()] if match else text

        # Drop the echoed command line, which ends with the status printf
        echo_end = body.rfind("' $?")
        if echo_end != -1:
            newline = body.find("\n", echo_end)
            body = body[newline + 1 :] if newline != -1 else ""

        # The status line starts with its own newline
        if match and body.endswith("\n"):
            body = body[:-1]
        return body, exit_code

    async def resize(self, cols: int, rows: int) -> None:
        validate_dimensions(cols, rows)
        if not self.is_active:
            raise SessionConflictError(f"Terminal {self.session_id} is not active")
        _set_winsize(self._master_fd, rows, cols)
        self.cols, self.rows = cols, rows
        self.events.put(
            TerminalEvent(type="resized", session_id=self.session_id, cols=cols, rows=rows)
        )
        logger.debug(
            "Terminal resized", session_id=self.session_id[:12], cols=cols, rows=rows
        )

    def info(self) -> TerminalInfo:
        return TerminalInfo(
            session_id=self.session_id,
            user_id=self.user_id,
            state=self.state.value,
            is_active=self.is_active,
            created_at=self.created_at,
            last_activity=self.last_activity,
            current_directory=self.current_directory,
            cols=self.cols,
            rows=self.rows,
            command_history_length=len(self.history),
            blocked_commands_count=self.blocked_commands_count,
            suspicious_activity_count=len(self.suspicious_activity),
        )
