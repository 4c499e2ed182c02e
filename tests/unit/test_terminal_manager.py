"""Unit tests for the terminal manager (shell start is stubbed out)."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from coderunner.config import settings
from coderunner.models import (
    AuthenticationRequiredError,
    CapacityExceededError,
    SessionNotFoundError,
    ValidationError,
)
from coderunner.models.terminal import TerminalState
from coderunner.services.session import SessionRegistry
from coderunner.services.terminal import TerminalManager, TerminalSession


@pytest.fixture
def registry(manual_clock):
    return SessionRegistry(clock=manual_clock)


@pytest.fixture
def manager(registry, mock_sandbox_manager):
    with patch.object(TerminalSession, "start", AsyncMock()):
        yield TerminalManager(registry, sandbox_manager=mock_sandbox_manager)


class TestCreate:
    """Test terminal creation and caps."""

    @pytest.mark.asyncio
    async def test_create(self, manager, registry):
        """Test a terminal is registered for its owner."""
        session = await manager.create("alice", cols=100, rows=30)
        assert session.user_id == "alice"
        assert (session.cols, session.rows) == (100, 30)
        assert await registry.count() == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_requires_user(self, manager):
        """Test terminals cannot be created anonymously."""
        with pytest.raises(AuthenticationRequiredError):
            await manager.create("")

    @pytest.mark.asyncio
    async def test_invalid_dimensions(self, manager, mock_sandbox_manager):
        """Test bad sizes are rejected before a sandbox is made."""
        with pytest.raises(ValidationError):
            await manager.create("alice", cols=5, rows=24)
        assert mock_sandbox_manager.list_sandboxes() == []

    @pytest.mark.asyncio
    async def test_per_user_cap(self, manager):
        """Test a user cannot exceed their terminal count."""
        with patch.object(settings, "terminal_max_sessions_per_user", 2):
            await manager.create("alice")
            await manager.create("alice")
            with pytest.raises(CapacityExceededError):
                await manager.create("alice")
            # Another user still has room
            await manager.create("bob")
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_global_cap(self, manager):
        """Test the total number of terminals is bounded."""
        with patch.object(settings, "terminal_max_sessions", 1):
            await manager.create("alice")
            with pytest.raises(CapacityExceededError):
                await manager.create("bob")
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_start_failure_cleans_up(self, registry, mock_sandbox_manager):
        """Test a shell that fails to start leaves no sandbox or session."""
        manager = TerminalManager(registry, sandbox_manager=mock_sandbox_manager)
        with patch.object(
            TerminalSession, "start", AsyncMock(side_effect=OSError("no pty"))
        ):
            with pytest.raises(OSError):
                await manager.create("alice")
        assert mock_sandbox_manager.list_sandboxes() == []
        assert await registry.count() == 0


class TestOwnership:
    """Test that users only see their own terminals."""

    @pytest.mark.asyncio
    async def test_other_user_gets_not_found(self, manager):
        """Test another user's terminal looks like a missing one."""
        session = await manager.create("alice")
        with pytest.raises(SessionNotFoundError):
            await manager.info(session.session_id, user_id="mallory")
        with pytest.raises(SessionNotFoundError):
            await manager.close(session.session_id, user_id="mallory")
        assert (await manager.info(session.session_id, user_id="alice")).user_id == "alice"
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_list_for_user(self, manager):
        """Test listing returns only the caller's terminals."""
        await manager.create("alice")
        await manager.create("bob")
        infos = await manager.list_for_user("alice")
        assert [i.user_id for i in infos] == ["alice"]
        await manager.shutdown()


class TestClose:
    """Test closing and timeouts."""

    @pytest.mark.asyncio
    async def test_close_frees_sandbox(self, manager, registry, mock_sandbox_manager):
        """Test an explicit close removes the session and its directory."""
        session = await manager.create("alice")
        await manager.close(session.session_id, user_id="alice")

        assert await registry.count() == 0
        assert mock_sandbox_manager.list_sandboxes() == []
        assert session.state == TerminalState.CLEANED_UP
        assert session.events.drain()[-1].type == "closed"

    @pytest.mark.asyncio
    async def test_close_unknown(self, manager):
        """Test closing an unknown id is not found."""
        with pytest.raises(SessionNotFoundError):
            await manager.close("missing")

    @pytest.mark.asyncio
    async def test_lifetime_expiry(self, manager, registry, manual_clock):
        """Test a terminal is closed when its absolute lifetime runs out."""
        session = await manager.create("alice")
        await asyncio.sleep(0)
        assert manual_clock.pending_sleepers == 1
        await manual_clock.advance(session.max_lifetime - 1)
        assert await registry.count() == 1

        await manual_clock.advance(1)
        assert await registry.count() == 0
        events = session.events.drain()
        assert events[-1].type == "closed"
        assert events[-1].message == "timed_out"

    @pytest.mark.asyncio
    async def test_idle_sweep_cancels_lifetime_timer(self, manager, registry, manual_clock):
        """Test a terminal removed by the idle sweep leaves no lifetime timer."""
        session = await manager.create("alice")
        session.idle_timeout = 60
        await asyncio.sleep(0)
        assert manual_clock.pending_sleepers == 1

        await manual_clock.advance(60)
        assert await registry.sweep() == 1
        await asyncio.sleep(0)

        assert manual_clock.pending_sleepers == 0
        assert manager._watchdogs == {}
        assert session.events.drain()[-1].message == "idle"

    @pytest.mark.asyncio
    async def test_close_all_for_user(self, manager, registry):
        """Test every terminal of one user can be closed at once."""
        await manager.create("alice")
        await manager.create("alice")
        await manager.create("bob")
        assert await manager.close_all_for_user("alice") == 2
        assert await registry.count() == 1
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_stats(self, manager):
        """Test stats aggregate blocked commands across sessions."""
        session = await manager.create("alice")
        await session.send_input("sudo ls", is_command=True)
        stats = await manager.stats()
        assert stats.total_sessions == 1
        assert stats.total_blocked_commands == 1
        assert stats.max_sessions == settings.terminal_max_sessions
        await manager.shutdown()
