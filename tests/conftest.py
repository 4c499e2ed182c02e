"""Pytest configuration and shared fixtures."""

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment before importing config
# Use setdefault to allow environment variables to override defaults
_TEST_ROOT = Path(tempfile.mkdtemp(prefix="coderunner-tests-"))
os.environ.setdefault("API_KEY", "test-api-key-for-testing-12345")
os.environ.setdefault("MASTER_API_KEY", "test-master-key-for-testing-12345")
os.environ.setdefault("SANDBOX_BACKEND", "process")
os.environ.setdefault("SANDBOX_BASE_DIR", str(_TEST_ROOT / "sandboxes"))
os.environ.setdefault("UPLOADS_DIR", str(_TEST_ROOT / "uploads"))
os.environ.setdefault("TERMINAL_WORKDIR_BASE", str(_TEST_ROOT / "terminals"))
os.environ.setdefault("LOG_FORMAT", "console")

from coderunner.config import ResourceCeiling, settings  # noqa: E402
from coderunner.core.clock import Clock  # noqa: E402
from coderunner.services.sandbox import SandboxInfo, SandboxManager  # noqa: E402
from coderunner.services.sandbox.executor import ProcessOutcome  # noqa: E402


class ManualClock(Clock):
    """Clock whose time only moves when a test advances it."""

    def __init__(self, start: float = 1000.0):
        self._mono = start
        self._start = start
        self._wall = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._sleepers: List[Tuple[float, asyncio.Future]] = []

    def monotonic(self) -> float:
        return self._mono

    def now(self) -> datetime:
        return self._wall + timedelta(seconds=self._mono - self._start)

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._mono + seconds, future))
        await future

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, f in self._sleepers if not f.done())

    async def advance(self, seconds: float) -> None:
        """Move time forward and let every sleeper that is now due run."""
        self._mono += seconds
        due = [s for s in self._sleepers if s[0] <= self._mono]
        self._sleepers = [s for s in self._sleepers if s[0] > self._mono]
        for _, future in due:
            if not future.done():
                future.set_result(None)
        # Give woken tasks a few turns of the loop to finish their work
        for _ in range(10):
            await asyncio.sleep(0)


@pytest.fixture
def manual_clock():
    return ManualClock()


@pytest.fixture
def sandbox_info(tmp_path):
    """A process-backend sandbox rooted in a temporary directory."""
    data_dir = tmp_path / "sandbox" / "data"
    data_dir.mkdir(parents=True)
    (tmp_path / "sandbox" / "tmp").mkdir()
    return SandboxInfo(
        sandbox_id="test-sandbox-123",
        sandbox_dir=tmp_path / "sandbox",
        data_dir=data_dir,
        language="python",
        session_id="test-session",
        created_at=datetime.now(timezone.utc),
        backend="process",
        ceiling=ResourceCeiling(),
    )


@pytest.fixture
def sandbox_manager(tmp_path):
    """Real SandboxManager on the process backend, rooted in tmp_path."""
    return SandboxManager(base_dir=str(tmp_path / "sandboxes"), backend="process")


@pytest.fixture
def mock_executor():
    """Executor double whose run() returns a successful outcome."""
    executor = MagicMock()
    executor.run = AsyncMock(
        return_value=ProcessOutcome(exit_code=0, stdout="ok\n", duration_ms=5)
    )
    executor.spawn = AsyncMock()
    executor.terminate = AsyncMock(return_value=0)
    executor.remove_containers = AsyncMock()
    executor.spawn_count = 0
    return executor


@pytest.fixture
def mock_sandbox_manager(tmp_path, mock_executor):
    """SandboxManager that creates real directories but never starts programs."""
    return SandboxManager(
        executor=mock_executor, base_dir=str(tmp_path / "sandboxes"), backend="process"
    )


@pytest.fixture
def uploads_dir(tmp_path):
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def api_headers():
    return {"x-api-key": settings.api_key, "x-user-id": "user-1"}
