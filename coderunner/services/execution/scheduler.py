"""Execution admission: global concurrency and per-user caps."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import structlog

from ...config import settings
from ...models import CapacityExceededError

logger = structlog.get_logger(__name__)


class ExecutionScheduler:
    """Bounds how many sandboxed runs execute at once.

    A global semaphore queues runs beyond ``max_concurrent``; a user who
    already has ``max_per_user`` runs in flight is refused outright.
    """

    def __init__(
        self,
        max_concurrent: Optional[int] = None,
        max_per_user: Optional[int] = None,
    ):
        self.max_concurrent = max_concurrent or settings.max_concurrent_executions
        self.max_per_user = max_per_user or settings.max_active_executions_per_user
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._lock = asyncio.Lock()
        self._per_user: Dict[str, int] = {}
        self._running = 0

    @asynccontextmanager
    async def slot(self, user_id: Optional[str] = None) -> AsyncIterator[None]:
        """Hold one execution slot for the duration of the block.

        Raises:
            CapacityExceededError: The user is at their active-run cap
        """
        key = user_id or "anonymous"
        async with self._lock:
            active = self._per_user.get(key, 0)
            if active >= self.max_per_user:
                logger.warning(
                    "Per-user execution cap reached",
                    user_id=key,
                    active=active,
                    limit=self.max_per_user,
                )
                raise CapacityExceededError(
                    f"Too many concurrent executions for user "
                    f"(max {self.max_per_user})"
                )
            self._per_user[key] = active + 1

        try:
            async with self._semaphore:
                self._running += 1
                try:
                    yield
                finally:
                    self._running -= 1
        finally:
            async with self._lock:
                remaining = self._per_user.get(key, 1) - 1
                if remaining > 0:
                    self._per_user[key] = remaining
                else:
                    self._per_user.pop(key, None)

    def stats(self) -> Dict[str, int]:
        return {
            "running": self._running,
            "max_concurrent": self.max_concurrent,
            "users_active": len(self._per_user),
            "max_per_user": self.max_per_user,
        }
