"""Interactive Terminal Manager."""

# Standard library imports
import asyncio
from typing import Dict, List, Optional, Set

# Third-party imports
import structlog

# Local application imports
from ...config import ResourceCeiling, settings
from ...config.languages import MB
from ...models import (
    AuthenticationRequiredError,
    CapacityExceededError,
    ServiceUnavailableError,
    SessionKind,
    SessionNotFoundError,
)
from ...models.terminal import (
    TerminalCommandResponse,
    TerminalInfo,
    TerminalInputResponse,
    TerminalStats,
)
from ..sandbox import SandboxManager
from ..session import SessionRegistry
from .policy import CommandPolicy
from .session import TerminalSession, validate_dimensions

logger = structlog.get_logger(__name__)

# Shells get more headroom than one-shot programs; their children share it
TERMINAL_CEILING = ResourceCeiling(
    memory_bytes=512 * MB,
    cpu_share=0.5,
    max_processes=50,
    limit_address_space=False,
)


class TerminalManager:
    """Creates terminals and routes operations to them by session id.

    Sessions live in the shared registry. A terminal is closed by an
    explicit close, its shell exiting, its absolute lifetime running out or
    the registry's idle sweep, whichever comes first.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        sandbox_manager: Optional[SandboxManager] = None,
        policy: Optional[CommandPolicy] = None,
    ):
        self.registry = registry
        self.sandbox_manager = sandbox_manager or SandboxManager(
            base_dir=settings.terminal_workdir_base
        )
        self.policy = policy or CommandPolicy()
        self._watchdogs: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()

    async def create(
        self,
        user_id: str,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
    ) -> TerminalSession:
        """Start a shell for ``user_id``.

        Raises:
            AuthenticationRequiredError: No user id was supplied
            CapacityExceededError: Global or per-user terminal cap reached
        """
        if not user_id:
            raise AuthenticationRequiredError()
        cols = cols or settings.terminal_cols
        rows = rows or settings.terminal_rows
        validate_dimensions(cols, rows)

        if await self.registry.count(SessionKind.TERMINAL) >= settings.terminal_max_sessions:
            raise CapacityExceededError(
                f"Terminal capacity reached (max {settings.terminal_max_sessions})"
            )
        user_count = await self.registry.count(SessionKind.TERMINAL, user_id=user_id)
        if user_count >= settings.terminal_max_sessions_per_user:
            raise CapacityExceededError(
                f"Too many terminals for user "
                f"(max {settings.terminal_max_sessions_per_user})"
            )
        if not self.sandbox_manager.is_available():
            raise ServiceUnavailableError(
                "sandbox", self.sandbox_manager.get_initialization_error()
            )

        async def factory(session_id: str) -> TerminalSession:
            sandbox_info = await asyncio.to_thread(
                self.sandbox_manager.create_sandbox,
                session_id,
                "terminal",
                ceiling=TERMINAL_CEILING,
                image=settings.terminal_image,
            )
            session = TerminalSession(
                session_id,
                user_id=user_id,
                sandbox_info=sandbox_info,
                sandbox_manager=self.sandbox_manager,
                policy=self.policy,
                clock=self.registry.clock,
                cols=cols,
                rows=rows,
            )
            try:
                await session.start()
            except BaseException:
                await self.sandbox_manager.destroy_sandbox(sandbox_info)
                raise
            session.on_exit = self._on_shell_exit
            session.on_close = self._on_session_closed
            return session

        session_id = await self.registry.create(SessionKind.TERMINAL, factory)
        session = await self._get(session_id)
        self._watchdogs[session_id] = asyncio.create_task(
            self._expire_after(session_id, session.max_lifetime)
        )
        logger.info(
            "Terminal session created",
            session_id=session_id[:12],
            user_id=user_id,
        )
        return session

    async def _get(self, session_id: str, user_id: Optional[str] = None) -> TerminalSession:
        session = await self.registry.get(session_id, SessionKind.TERMINAL)
        # Other users' terminals are indistinguishable from missing ones
        if user_id is not None and session.user_id != user_id:
            raise SessionNotFoundError(session_id)
        return session

    async def get(self, session_id: str, user_id: Optional[str] = None) -> TerminalSession:
        return await self._get(session_id, user_id)

    async def input(
        self,
        session_id: str,
        data: str,
        is_command: bool = False,
        user_id: Optional[str] = None,
    ) -> TerminalInputResponse:
        session = await self._get(session_id, user_id)
        try:
            return await session.send_input(data, is_command=is_command)
        except OSError as e:
            logger.warning(
                "Terminal write failed", session_id=session_id[:12], error=str(e)
            )
            return TerminalInputResponse(
                session_id=session_id, accepted=False, reason="Terminal not active"
            )

    async def resize(
        self, session_id: str, cols: int, rows: int, user_id: Optional[str] = None
    ) -> TerminalInfo:
        session = await self._get(session_id, user_id)
        await session.resize(cols, rows)
        return session.info()

    async def execute_command(
        self, session_id: str, command: str, user_id: Optional[str] = None
    ) -> TerminalCommandResponse:
        session = await self._get(session_id, user_id)
        return await session.execute_command(command)

    async def info(self, session_id: str, user_id: Optional[str] = None) -> TerminalInfo:
        session = await self._get(session_id, user_id)
        return session.info()

    async def close(
        self, session_id: str, user_id: Optional[str] = None, reason: str = "closed"
    ) -> None:
        await self._get(session_id, user_id)
        self._cancel_watchdog(session_id)
        await self.registry.remove(session_id, reason=reason)

    async def list_for_user(self, user_id: str) -> List[TerminalInfo]:
        sessions = await self.registry.list_for_user(user_id, kind=SessionKind.TERMINAL)
        return [s.info() for s in sessions]

    async def close_all_for_user(self, user_id: str) -> int:
        sessions = await self.registry.list_for_user(user_id, kind=SessionKind.TERMINAL)
        closed = 0
        for session in sessions:
            self._cancel_watchdog(session.session_id)
            if await self.registry.remove(session.session_id, reason="closed"):
                closed += 1
        if closed:
            logger.info("Closed user terminals", user_id=user_id, count=closed)
        return closed

    async def stats(self) -> TerminalStats:
        sessions = await self.registry.list_sessions(kind=SessionKind.TERMINAL)
        return TerminalStats(
            total_sessions=len(sessions),
            active_sessions=sum(1 for s in sessions if s.is_active),
            total_blocked_commands=sum(s.blocked_commands_count for s in sessions),
            total_suspicious_activity=sum(len(s.suspicious_activity) for s in sessions),
            max_sessions=settings.terminal_max_sessions,
        )

    def _on_shell_exit(self, session: TerminalSession) -> None:
        self._cancel_watchdog(session.session_id)
        task = asyncio.create_task(
            self.registry.remove(session.session_id, reason="exited")
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_session_closed(self, session: TerminalSession) -> None:
        # Covers the idle sweep, which closes sessions behind our back
        self._cancel_watchdog(session.session_id)

    async def _expire_after(self, session_id: str, seconds: float) -> None:
        try:
            await self.registry.clock.sleep(seconds)
            if await self.registry.remove(session_id, reason="timed_out"):
                logger.info(
                    "Terminal session timed out",
                    session_id=session_id[:12],
                    lifetime_seconds=seconds,
                )
        finally:
            self._watchdogs.pop(session_id, None)

    def _cancel_watchdog(self, session_id: str) -> None:
        task = self._watchdogs.pop(session_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def shutdown(self) -> None:
        """Stop timers; the registry closes the sessions themselves."""
        for task in list(self._watchdogs.values()):
            task.cancel()
        self._watchdogs.clear()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
