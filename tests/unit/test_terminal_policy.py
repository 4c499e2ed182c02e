"""Unit tests for the terminal command policy and session helpers."""

import re
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from coderunner.config import settings
from coderunner.models import SessionConflictError, ValidationError
from coderunner.models.terminal import TerminalState
from coderunner.services.sandbox import SandboxInfo
from coderunner.services.terminal import CommandPolicy, TerminalSession
from coderunner.services.terminal.session import validate_dimensions


@pytest.fixture
def policy():
    return CommandPolicy(max_length=100)


class TestCommandPolicy:
    """Test command-line checks."""

    @pytest.mark.parametrize(
        "command", ["ls -la", "echo hello", "python3 main.py", "cat notes.txt", "  pwd  "]
    )
    def test_allowed(self, policy, command):
        """Test allow-listed commands without dangerous patterns pass."""
        assert policy.check(command).allowed

    def test_empty_line_allowed(self, policy):
        """Test an empty line is forwarded as-is."""
        assert policy.check("   ").allowed

    @pytest.mark.parametrize("command", ["sudo ls", "su root", "mount /dev/sda1 /mnt", "dd"])
    def test_blocked_leading_token(self, policy, command):
        """Test blocked commands are refused by name."""
        decision = policy.check(command)
        assert not decision.allowed
        assert "is not allowed" in decision.reason

    def test_not_in_allow_list(self, policy):
        """Test commands outside the allow list are refused."""
        decision = policy.check("nc -l 4444")
        assert not decision.allowed
        assert "not in allowed list" in decision.reason

    def test_leading_token_case_insensitive(self, policy):
        """Test the leading token is matched case-insensitively."""
        assert not policy.check("SUDO ls").allowed
        assert policy.check("LS").allowed

    @pytest.mark.parametrize(
        "command",
        [
            "ls; rm x",
            "echo $(whoami)",
            "cat a | grep b",
            "ls > /dev/null",
            "ls 2>&1",
            "rm -rf build",
            "echo `id`",
        ],
    )
    def test_dangerous_patterns(self, policy, command):
        """Test chaining, substitution and destructive flags are refused."""
        decision = policy.check(command)
        assert not decision.allowed
        assert "dangerous pattern" in decision.reason

    @pytest.mark.parametrize(
        "command", ["ls\nreboot", "echo hi\nuname -s", "ls\rsudo ls", "echo a\x00b", "ls\x1b[A"]
    )
    def test_control_characters(self, policy, command):
        """Test a second line or control byte cannot ride along an allowed command."""
        decision = policy.check(command)
        assert not decision.allowed
        assert decision.reason == "Command contains control characters"

    def test_trailing_newline_allowed(self, policy):
        """Test the line terminator itself is not treated as a second line."""
        assert policy.check("ls -la\n").allowed
        assert policy.check("ls\r\n").allowed
        assert policy.check("echo a\tb").allowed

    def test_too_long(self, policy):
        """Test the length limit is checked first."""
        decision = policy.check("echo " + "a" * 200)
        assert not decision.allowed
        assert decision.reason == "Command too long"

    def test_message(self, policy):
        """Test the client-facing message names the reason."""
        assert policy.check("sudo ls").message.startswith("Command blocked:")
        assert policy.check("ls").message == ""


class TestValidateDimensions:
    """Test terminal size bounds."""

    @pytest.mark.parametrize("cols,rows", [(10, 5), (80, 24), (200, 100)])
    def test_in_bounds(self, cols, rows):
        """Test sizes inside the bounds are accepted."""
        validate_dimensions(cols, rows)

    @pytest.mark.parametrize(
        "cols,rows,field", [(9, 24, "cols"), (201, 24, "cols"), (80, 4, "rows"), (80, 101, "rows")]
    )
    def test_out_of_bounds(self, cols, rows, field):
        """Test sizes outside the bounds are rejected naming the field."""
        with pytest.raises(ValidationError) as exc_info:
            validate_dimensions(cols, rows)
        assert exc_info.value.details[0].field == field


class TestExtractCommandOutput:
    """Test splitting captured PTY text into output and exit status."""

    MARKER = re.compile(r"__CMD_DONE_abc123:(\d+)")

    def test_plain_output(self):
        """Test the echoed command line and marker are removed."""
        captured = (
            "echo hi; printf '\\n__CMD_DONE_abc123:%d\\n' $?\r\n"
            "hi\r\n"
            "\r\n__CMD_DONE_abc123:0\r\n"
            "/workspace$ "
        )
        output, exit_code = TerminalSession.extract_command_output(captured, self.MARKER)
        assert output == "hi\n"
        assert exit_code == 0

    def test_exit_status(self):
        """Test a failing command reports its status."""
        captured = (
            "ls nope; printf '\\n__CMD_DONE_abc123:%d\\n' $?\r\n"
            "ls: cannot access 'nope': No such file or directory\r\n"
            "\r\n__CMD_DONE_abc123:2\r\n"
        )
        output, exit_code = TerminalSession.extract_command_output(captured, self.MARKER)
        assert exit_code == 2
        assert "No such file" in output

    def test_ansi_sequences_stripped(self):
        """Test colour codes and title escapes are removed."""
        captured = (
            "\x1b]0;PWD=/workspace\x07ls; printf '\\n__CMD_DONE_abc123:%d\\n' $?\r\n"
            "\x1b[01;34mdir\x1b[0m\r\n"
            "\r\n__CMD_DONE_abc123:0\r\n"
        )
        output, _ = TerminalSession.extract_command_output(captured, self.MARKER)
        assert output == "dir\n"

    def test_no_marker(self):
        """Test output without a marker (timeout) has no exit status."""
        captured = "sleep 100; printf '\\n__CMD_DONE_abc123:%d\\n' $?\r\npartial"
        output, exit_code = TerminalSession.extract_command_output(captured, self.MARKER)
        assert exit_code is None
        assert output == "partial"


class TestTerminalSessionInput:
    """Test input handling on a session without a running shell."""

    @pytest.fixture
    def session(self, tmp_path, mock_sandbox_manager, manual_clock):
        info = SandboxInfo(
            sandbox_id="sb-1",
            sandbox_dir=tmp_path,
            data_dir=tmp_path / "data",
            language="terminal",
            session_id="term-1",
            created_at=datetime.now(timezone.utc),
            backend="process",
        )
        return TerminalSession(
            "term-1",
            user_id="alice",
            sandbox_info=info,
            sandbox_manager=mock_sandbox_manager,
            policy=CommandPolicy(max_length=100),
            clock=manual_clock,
        )

    @pytest.mark.asyncio
    async def test_blocked_command_recorded(self, session, manual_clock):
        """Test a blocked command is counted and never touches activity."""
        before = session.last_activity
        await manual_clock.advance(5)
        response = await session.send_input("sudo rm -rf /", is_command=True)

        assert response.accepted is False
        assert response.reason.startswith("Command blocked")
        assert session.blocked_commands_count == 1
        assert session.suspicious_activity[0]["type"] == "blocked_command"
        assert session.last_activity == before
        event = session.events.drain()[-1]
        assert event.type == "error"

    @pytest.mark.asyncio
    async def test_input_before_start(self, session):
        """Test input to a shell that is not running is refused."""
        response = await session.send_input("ls", is_command=True)
        assert response.accepted is False
        assert response.reason == "Terminal not active"
        assert session.state == TerminalState.CREATED

    @pytest.mark.asyncio
    async def test_execute_blocked_command_raises(self, session):
        """Test executeCommand refuses blocked commands with a validation error."""
        with pytest.raises(ValidationError) as exc_info:
            await session.execute_command("sudo ls")
        assert exc_info.value.details[0].code == "command_blocked"

    @pytest.mark.asyncio
    async def test_execute_on_inactive_session(self, session):
        """Test executeCommand on a shell that is not running conflicts."""
        with pytest.raises(SessionConflictError):
            await session.execute_command("ls")

    @pytest.mark.asyncio
    async def test_execute_empty_command(self, session):
        """Test an empty command is rejected."""
        with pytest.raises(ValidationError):
            await session.execute_command("   ")

    @pytest.mark.asyncio
    async def test_directory_tracked_across_chunks(self, session):
        """Test the working directory is read from a title split across reads."""
        session._handle_output(b"\x1b]0;PW")
        session._handle_output(b"D=/workspace/src\x07$ ")
        assert session.current_directory == "/workspace/src"
        assert "".join(e.data for e in session.events.drain()) == (
            "\x1b]0;PWD=/workspace/src\x07$ "
        )

    @pytest.mark.asyncio
    async def test_output_buffer_keeps_newest_bytes(self, session):
        """Test the buffer evicts exactly the oldest bytes once over its cap."""
        with patch.object(settings, "terminal_output_buffer_bytes", 10):
            session._handle_output(b"0123456789")
            session._handle_output(b"abc")
        assert session.buffered_output() == "3456789abc"
        assert session.total_output_bytes == 13

    @pytest.mark.asyncio
    async def test_info(self, session):
        """Test info reflects the session's counters."""
        info = session.info()
        assert info.session_id == "term-1"
        assert info.user_id == "alice"
        assert info.is_active is False
        assert info.cols == 80 and info.rows == 24
