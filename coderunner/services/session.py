"""Session Registry - the single owned store of live sessions.

Every live execution context, interactive program and terminal is kept in
one map keyed by an opaque session id. Components look sessions up by id
for each operation instead of holding on to them. A background task sweeps
idle and expired sessions on a fixed interval; it reads time and sleeps
through an injected Clock so tests can drive it without waiting.
"""

# Standard library imports
import asyncio
import inspect
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Set,
    Union,
)

# Third-party imports
import structlog

# Local application imports
from ..config import settings
from ..core.clock import Clock, system_clock
from ..models.errors import (
    SessionConflictError,
    SessionNotFoundError,
    ValidationError,
    ErrorDetail,
)
from ..models.session import RegistryStats, SessionKind
from ..utils.id_generator import generate_session_id, is_valid_session_id

logger = structlog.get_logger(__name__)


class SessionContext:
    """Base class for anything the registry owns.

    Subclasses set ``kind`` and implement ``close``. ``idle_timeout`` and
    ``max_lifetime`` are in seconds; ``None`` defers to the registry default
    and no absolute limit respectively.
    """

    kind: SessionKind = SessionKind.EXECUTION
    idle_timeout: Optional[float] = None
    max_lifetime: Optional[float] = None

    def __init__(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        clock: Clock = system_clock,
    ):
        self.session_id = session_id
        self.user_id = user_id
        self.clock = clock
        self.created_at: datetime = clock.now()
        self.last_activity: datetime = self.created_at
        self._created_mono = clock.monotonic()
        self._activity_mono = self._created_mono

    def touch(self) -> None:
        self.last_activity = self.clock.now()
        self._activity_mono = self.clock.monotonic()

    @property
    def is_busy(self) -> bool:
        return False

    def idle_seconds(self) -> float:
        return self.clock.monotonic() - self._activity_mono

    def age_seconds(self) -> float:
        return self.clock.monotonic() - self._created_mono

    def expiry_reason(self, default_idle_timeout: float) -> Optional[str]:
        """Why this session should be swept now, or None."""
        if self.max_lifetime is not None and self.age_seconds() >= self.max_lifetime:
            return "timed_out"
        idle_limit = self.idle_timeout or default_idle_timeout
        if not self.is_busy and self.idle_seconds() >= idle_limit:
            return "idle"
        return None

    async def close(self, reason: str = "closed") -> None:
        raise NotImplementedError


class ExecutionContext(SessionContext):
    """Execution-kind session: at most one active run at a time."""

    kind = SessionKind.EXECUTION

    def __init__(self, session_id: str, user_id: Optional[str] = None, clock: Clock = system_clock):
        super().__init__(session_id, user_id=user_id, clock=clock)
        self._run_lock = asyncio.Lock()
        self.run_count = 0

    @property
    def is_busy(self) -> bool:
        return self._run_lock.locked()

    @asynccontextmanager
    async def exclusive_run(self) -> AsyncIterator[None]:
        """Hold the session's single run slot.

        Raises:
            SessionConflictError: A run is already active for this session
        """
        if self._run_lock.locked():
            raise SessionConflictError(
                f"Session {self.session_id} already has an active execution"
            )
        async with self._run_lock:
            self.touch()
            self.run_count += 1
            try:
                yield
            finally:
                self.touch()

    async def close(self, reason: str = "closed") -> None:
        # Runs tear down their own sandboxes; nothing else is held here
        logger.debug(
            "Closed execution context",
            session_id=self.session_id[:12],
            reason=reason,
        )


SessionFactory = Callable[
    [str], Union[SessionContext, Awaitable[SessionContext]]
]


@dataclass
class _Entry:
    kind: SessionKind
    context: SessionContext


class SessionRegistry:
    """Concurrency-safe map of session id to session context."""

    def __init__(
        self,
        clock: Clock = system_clock,
        idle_timeout_seconds: Optional[float] = None,
        sweep_interval_seconds: Optional[float] = None,
    ):
        self._clock = clock
        self._idle_timeout = (
            idle_timeout_seconds
            if idle_timeout_seconds is not None
            else settings.session_idle_timeout_minutes * 60
        )
        self._sweep_interval = (
            sweep_interval_seconds
            if sweep_interval_seconds is not None
            else settings.session_sweep_interval_minutes * 60
        )
        self._entries: Dict[str, _Entry] = {}
        self._reserved: Set[str] = set()
        self._lock = asyncio.Lock()
        self._sweep_task: Optional[asyncio.Task] = None
        self._sweeps_run = 0
        self._sessions_swept = 0

    @property
    def clock(self) -> Clock:
        return self._clock

    # ------------------------------------------------------------------
    # Lookup and lifecycle
    # ------------------------------------------------------------------

    async def create(
        self,
        kind: SessionKind,
        factory: SessionFactory,
        session_id: Optional[str] = None,
    ) -> str:
        """Create a session with ``factory(session_id)`` and register it.

        The id is reserved before the factory runs, so a slow factory (one
        that starts a process) cannot race another create for the same id.

        Raises:
            ValidationError: ``session_id`` is not a valid opaque id
            SessionConflictError: ``session_id`` is already live
        """
        if session_id is not None and not is_valid_session_id(session_id):
            raise ValidationError(
                message="Invalid session id",
                details=[
                    ErrorDetail(
                        field="session_id",
                        message="Session ids are 1-64 characters of [A-Za-z0-9_-]",
                        code="invalid_session_id",
                    )
                ],
            )

        async with self._lock:
            if session_id is None:
                session_id = generate_session_id()
                while session_id in self._entries or session_id in self._reserved:
                    session_id = generate_session_id()
            elif session_id in self._entries or session_id in self._reserved:
                raise SessionConflictError(f"Session {session_id} already exists")
            self._reserved.add(session_id)

        try:
            context = factory(session_id)
            if inspect.isawaitable(context):
                context = await context
        except BaseException:
            async with self._lock:
                self._reserved.discard(session_id)
            raise

        async with self._lock:
            self._reserved.discard(session_id)
            self._entries[session_id] = _Entry(kind=kind, context=context)

        logger.info(
            "Registered session",
            session_id=session_id[:12],
            kind=kind.value,
            user_id=context.user_id,
        )
        return session_id

    async def get(
        self, session_id: str, kind: Optional[SessionKind] = None
    ) -> SessionContext:
        """Look up a live session.

        Raises:
            SessionNotFoundError: Unknown id, or the session is another kind
        """
        async with self._lock:
            entry = self._entries.get(session_id)
        if entry is None or (kind is not None and entry.kind != kind):
            raise SessionNotFoundError(session_id)
        return entry.context

    async def find(self, session_id: str) -> Optional[SessionContext]:
        async with self._lock:
            entry = self._entries.get(session_id)
        return entry.context if entry else None

    async def remove(self, session_id: str, reason: str = "closed") -> bool:
        """Tear down and forget a session. Returns False if it was not live."""
        async with self._lock:
            entry = self._entries.pop(session_id, None)
        if entry is None:
            return False
        await self._close(entry, reason)
        return True

    async def list_sessions(
        self, kind: Optional[SessionKind] = None, user_id: Optional[str] = None
    ) -> List[SessionContext]:
        async with self._lock:
            entries = list(self._entries.values())
        return [
            e.context
            for e in entries
            if (kind is None or e.kind == kind)
            and (user_id is None or e.context.user_id == user_id)
        ]

    async def list_for_user(
        self, user_id: str, kind: Optional[SessionKind] = None
    ) -> List[SessionContext]:
        return await self.list_sessions(kind=kind, user_id=user_id)

    async def count(
        self, kind: Optional[SessionKind] = None, user_id: Optional[str] = None
    ) -> int:
        async with self._lock:
            return sum(
                1
                for e in self._entries.values()
                if (kind is None or e.kind == kind)
                and (user_id is None or e.context.user_id == user_id)
            )

    # ------------------------------------------------------------------
    # Sweeping
    # ------------------------------------------------------------------

    async def sweep(self) -> int:
        """Tear down every idle or expired session.

        Returns:
            Number of sessions removed
        """
        expired = []
        async with self._lock:
            for session_id, entry in list(self._entries.items()):
                reason = entry.context.expiry_reason(self._idle_timeout)
                if reason:
                    expired.append((self._entries.pop(session_id), reason))

        for entry, reason in expired:
            await self._close(entry, reason)

        self._sweeps_run += 1
        self._sessions_swept += len(expired)
        if expired:
            logger.info("Swept sessions", count=len(expired))
        return len(expired)

    def start(self) -> None:
        """Start the background sweep task."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                "Session sweep started",
                interval_seconds=self._sweep_interval,
                idle_timeout_seconds=self._idle_timeout,
            )

    async def stop(self) -> None:
        """Cancel the background sweep task and wait for it to finish."""
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Session sweep stopped")

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def _sweep_loop(self) -> None:
        while True:
            await self._clock.sleep(self._sweep_interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Session sweep failed", error=str(e))

    async def close_all(self) -> int:
        """Tear down every live session (shutdown)."""
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            await self._close(entry, "shutdown")
        if entries:
            logger.info("Closed all sessions", count=len(entries))
        return len(entries)

    async def _close(self, entry: _Entry, reason: str) -> None:
        # One session's teardown failure must not stop the others
        try:
            await entry.context.close(reason)
        except Exception as e:
            logger.error(
                "Session teardown failed",
                session_id=entry.context.session_id[:12],
                kind=entry.kind.value,
                error=str(e),
            )

    async def stats(self) -> RegistryStats:
        async with self._lock:
            by_kind: Dict[str, int] = {}
            for entry in self._entries.values():
                by_kind[entry.kind.value] = by_kind.get(entry.kind.value, 0) + 1
            total = len(self._entries)
        return RegistryStats(
            total_sessions=total,
            by_kind=by_kind,
            sweeps_run=self._sweeps_run,
            sessions_swept=self._sessions_swept,
        )
