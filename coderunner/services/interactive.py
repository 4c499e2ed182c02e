"""Interactive programs: a long-lived program fed through stdin.

The program is compiled (if needed) and started in its own sandbox with a
stdin pipe. Its stdout and stderr are pumped onto the session's ordered
event queue as they arrive; clients poll the queue. Each session has an
absolute lifetime after which it is torn down, like any other close.
"""

# Standard library imports
import asyncio
import codecs
from typing import List, Optional

# Third-party imports
import structlog

# Local application imports
from ..config import LanguageRegistry, language_registry, settings
from ..core.clock import Clock, system_clock
from ..core.queues import EventQueue
from ..models import (
    CapacityExceededError,
    CompilationError,
    ExecutionResult,
    ExecutionStatus,
    ServiceUnavailableError,
    SessionKind,
    SessionNotFoundError,
)
from ..models.session import (
    AckResponse,
    InteractiveOutputEvent,
    InteractiveOutputResponse,
    InteractiveSessionResponse,
)
from .sandbox import SandboxInfo, SandboxManager, SpawnedProcess
from .session import SessionContext, SessionRegistry
from .validation import SecurityValidator

logger = structlog.get_logger(__name__)

_READ_CHUNK = 4096


class InteractiveSession(SessionContext):
    """One running program and the sandbox it lives in."""

    kind = SessionKind.INTERACTIVE

    def __init__(
        self,
        session_id: str,
        language: str,
        sandbox_info: SandboxInfo,
        sandbox_manager: SandboxManager,
        user_id: Optional[str] = None,
        clock: Clock = system_clock,
        lifetime_seconds: Optional[float] = None,
    ):
        super().__init__(session_id, user_id=user_id, clock=clock)
        self.language = language
        self.sandbox_info = sandbox_info
        self.max_lifetime = (
            lifetime_seconds
            if lifetime_seconds is not None
            else settings.interactive_session_timeout_seconds
        )
        self.events: EventQueue[InteractiveOutputEvent] = EventQueue()
        self.exit_code: Optional[int] = None
        self._sandbox_manager = sandbox_manager
        self._spawned: Optional[SpawnedProcess] = None
        self._tasks: List[asyncio.Task] = []
        self._closed = False

    @property
    def is_active(self) -> bool:
        return self._spawned is not None and self._spawned.process.returncode is None

    def attach(self, spawned: SpawnedProcess) -> None:
        """Start pumping the program's output onto the event queue."""
        self._spawned = spawned
        proc = spawned.process
        pumps = [
            asyncio.create_task(self._pump(proc.stdout, "stdout")),
            asyncio.create_task(self._pump(proc.stderr, "stderr")),
        ]
        self._tasks = pumps + [asyncio.create_task(self._wait_exit(pumps))]

    async def write(self, data: str) -> None:
        if not self.is_active or self._spawned.process.stdin is None:
            raise BrokenPipeError("Program is not running")
        stdin = self._spawned.process.stdin
        stdin.write(data.encode("utf-8"))
        await stdin.drain()
        self.touch()

    async def _pump(self, stream: Optional[asyncio.StreamReader], name: str) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                self.events.put(InteractiveOutputEvent(stream=name, data=text))
            if not chunk:
                return

    async def _wait_exit(self, pumps: List[asyncio.Task]) -> None:
        self.exit_code = await self._spawned.process.wait()
        await asyncio.gather(*pumps, return_exceptions=True)
        self.events.put(InteractiveOutputEvent(stream="exit", exit_code=self.exit_code))
        logger.info(
            "Interactive program exited",
            session_id=self.session_id[:12],
            exit_code=self.exit_code,
        )

    async def close(self, reason: str = "closed") -> None:
        if self._closed:
            return
        self._closed = True
        if self._spawned is not None:
            await self._sandbox_manager.executor.terminate(self._spawned)
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        await self._sandbox_manager.destroy_sandbox(self.sandbox_info)
        logger.info(
            "Closed interactive session",
            session_id=self.session_id[:12],
            reason=reason,
        )


class InteractiveProgramManager:
    """Creates, feeds and tears down interactive program sessions."""

    def __init__(
        self,
        registry: SessionRegistry,
        sandbox_manager: SandboxManager,
        validator: Optional[SecurityValidator] = None,
        languages: Optional[LanguageRegistry] = None,
    ):
        self.registry = registry
        self.sandbox_manager = sandbox_manager
        self.languages = languages or language_registry
        self.validator = validator or SecurityValidator(self.languages)
        self._watchdogs: dict = {}

    async def create(
        self,
        language: str,
        code: str,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> InteractiveSessionResponse:
        """Validate, build and start a program; returns once it is running.

        Raises:
            ValidationError: Unsupported language or code failed validation
            CompilationError: The program did not compile (carries output)
            SessionConflictError: The session id is already live
            CapacityExceededError: Global or per-user program cap reached
        """
        plugin = self.languages.get(language)
        self.validator.ensure_valid(plugin.id, code)
        await self._check_capacity(user_id)
        if not self.sandbox_manager.is_available():
            raise ServiceUnavailableError(
                "sandbox", self.sandbox_manager.get_initialization_error()
            )

        async def factory(sid: str) -> InteractiveSession:
            sandbox_info = await asyncio.to_thread(
                self.sandbox_manager.create_for_language, sid, plugin
            )
            try:
                await asyncio.to_thread(
                    self.sandbox_manager.write_file,
                    sandbox_info,
                    plugin.filename,
                    code.encode("utf-8"),
                )
                if plugin.needs_compilation:
                    await self._compile(sid, plugin, sandbox_info)
                spawned = await self.sandbox_manager.executor.spawn(
                    sandbox_info, list(plugin.run_command)
                )
            except BaseException:
                await self.sandbox_manager.destroy_sandbox(sandbox_info)
                raise

            session = InteractiveSession(
                sid,
                language=plugin.id,
                sandbox_info=sandbox_info,
                sandbox_manager=self.sandbox_manager,
                user_id=user_id,
                clock=self.registry.clock,
            )
            session.attach(spawned)
            return session

        sid = await self.registry.create(
            SessionKind.INTERACTIVE, factory, session_id=session_id
        )
        session = await self.registry.get(sid, SessionKind.INTERACTIVE)
        self._watchdogs[sid] = asyncio.create_task(
            self._expire_after(sid, session.max_lifetime)
        )
        logger.info(
            "Interactive session started",
            session_id=sid[:12],
            language=plugin.id,
            user_id=user_id,
        )
        return InteractiveSessionResponse(session_id=sid, status="ready")

    async def _check_capacity(self, user_id: Optional[str]) -> None:
        total = await self.registry.count(SessionKind.INTERACTIVE)
        if total >= settings.interactive_max_sessions:
            raise CapacityExceededError(
                f"Interactive program capacity reached "
                f"(max {settings.interactive_max_sessions})"
            )
        if user_id is None:
            return
        mine = await self.registry.count(SessionKind.INTERACTIVE, user_id=user_id)
        if mine >= settings.interactive_max_sessions_per_user:
            raise CapacityExceededError(
                f"Too many interactive programs for user "
                f"(max {settings.interactive_max_sessions_per_user})"
            )

    async def _compile(self, session_id, plugin, sandbox_info: SandboxInfo) -> None:
        timeout_ms = int(settings.default_timeout_ms * plugin.timeout_multiplier)
        compiled = await self.sandbox_manager.executor.run(
            sandbox_info,
            list(plugin.compile_command),
            timeout=timeout_ms / 1000,
        )
        if compiled.timed_out or compiled.exit_code != 0:
            result = ExecutionResult(
                session_id=session_id,
                language=plugin.id,
                status=(
                    ExecutionStatus.TIMED_OUT
                    if compiled.timed_out
                    else ExecutionStatus.COMPILATION_ERROR
                ),
                compile_output=compiled.stdout + compiled.stderr,
                exit_code=compiled.exit_code,
                duration_ms=compiled.duration_ms,
                timeout_ms=timeout_ms,
                timed_out=compiled.timed_out,
            )
            raise CompilationError(result=result)

    async def _expire_after(self, session_id: str, seconds: float) -> None:
        try:
            await self.registry.clock.sleep(seconds)
            if await self.registry.remove(session_id, reason="timed_out"):
                logger.info(
                    "Interactive session reached its lifetime",
                    session_id=session_id[:12],
                )
        finally:
            self._watchdogs.pop(session_id, None)

    async def _get(self, session_id: str, user_id: Optional[str]) -> InteractiveSession:
        session = await self.registry.get(session_id, SessionKind.INTERACTIVE)
        # Anonymous programs belong to anonymous callers only
        if session.user_id != user_id:
            raise SessionNotFoundError(session_id)
        return session

    async def send_input(
        self,
        session_id: str,
        data: str,
        newline: bool = True,
        user_id: Optional[str] = None,
    ) -> AckResponse:
        session = await self._get(session_id, user_id)
        payload = data + "\n" if newline and not data.endswith("\n") else data
        try:
            await session.write(payload)
        except (BrokenPipeError, ConnectionResetError):
            return AckResponse(
                session_id=session_id, success=False, message="Program has exited"
            )
        return AckResponse(session_id=session_id)

    async def read_output(
        self,
        session_id: str,
        wait_seconds: float = 0.0,
        user_id: Optional[str] = None,
    ) -> InteractiveOutputResponse:
        """Drain queued output events, optionally waiting for the first one."""
        session = await self._get(session_id, user_id)
        events = []
        if wait_seconds > 0 and session.events.empty():
            first = await session.events.get(timeout=wait_seconds)
            if first is not None:
                events.append(first)
        events.extend(session.events.drain())
        session.touch()
        return InteractiveOutputResponse(
            session_id=session_id, active=session.is_active, events=events
        )

    async def terminate(self, session_id: str, user_id: Optional[str] = None) -> AckResponse:
        await self._get(session_id, user_id)
        watchdog = self._watchdogs.pop(session_id, None)
        if watchdog is not None:
            watchdog.cancel()
        await self.registry.remove(session_id, reason="terminated")
        return AckResponse(session_id=session_id, message="Session terminated")

    async def shutdown(self) -> None:
        for task in list(self._watchdogs.values()):
            task.cancel()
        self._watchdogs.clear()
