"""Unit tests for SandboxExecutor."""

import signal
from dataclasses import replace
from unittest.mock import patch

import pytest

from coderunner.config import settings
from coderunner.services.sandbox.executor import (
    TRUNCATION_MARKER,
    SandboxExecutor,
)
from coderunner.services.sandbox.nsjail import SANDBOX_WORKDIR


@pytest.fixture
def executor():
    return SandboxExecutor()


class TestPrepareLaunch:
    """Test backend-specific launch specs."""

    def test_process_backend(self, executor, sandbox_info):
        """Test the process backend runs the command directly under rlimits."""
        spec = executor.prepare_launch(sandbox_info, ["python3", "main.py"], timeout=5)
        assert spec.argv == ["python3", "main.py"]
        assert spec.cwd == str(sandbox_info.data_dir)
        assert spec.preexec_fn is not None
        assert spec.container_name is None

    def test_nsjail_backend(self, executor, sandbox_info):
        """Test the nsjail backend wraps the command and passes env as flags."""
        info = replace(sandbox_info, backend="nsjail")
        spec = executor.prepare_launch(info, ["python3", "main.py"], timeout=5)
        assert spec.argv[0] == settings.nsjail_binary
        assert spec.argv[-2:] == ["python3", "main.py"]
        assert spec.env is None
        assert f"HOME={SANDBOX_WORKDIR}" in spec.argv
        # The nsjail backstop fires after the caller's own timer
        assert spec.argv[spec.argv.index("--time_limit") + 1] == "6"

    def test_docker_backend(self, executor, sandbox_info):
        """Test the docker backend names the container so it can be killed."""
        info = replace(sandbox_info, backend="docker", image="python:3.11-alpine")
        spec = executor.prepare_launch(info, ["python3", "main.py"], timeout=5)
        assert spec.argv[0] == settings.docker_binary
        assert spec.container_name is not None
        assert spec.container_name.startswith("coderunner-")
        assert "python:3.11-alpine" in spec.argv

    def test_extra_env(self, executor, sandbox_info):
        """Test extra variables are added on top of the sanitized set."""
        spec = executor.prepare_launch(
            sandbox_info, ["bash"], interactive=True, extra_env={"TERM": "xterm"}
        )
        assert spec.env["TERM"] == "xterm"


class TestSanitizedEnv:
    """Test the environment whitelist."""

    def test_language_env_included(self, executor, sandbox_info):
        """Test language variables are merged into the whitelist."""
        env = executor._build_sanitized_env(sandbox_info)
        assert env["PYTHONUNBUFFERED"] == "1"
        assert env["LANG"] == "C.UTF-8"

    def test_host_secrets_not_leaked(self, executor, sandbox_info):
        """Test host variables outside the whitelist are not passed on."""
        with patch.dict("os.environ", {"AWS_SECRET_ACCESS_KEY": "secret"}):
            env = executor._build_sanitized_env(sandbox_info)
        assert "AWS_SECRET_ACCESS_KEY" not in env
        assert "API_KEY" not in env

    def test_process_backend_tmp_inside_sandbox(self, executor, sandbox_info):
        """Test /tmp paths are redirected into the sandbox's scratch dir."""
        env = executor._build_sanitized_env(sandbox_info)
        assert env["TMPDIR"] == str(sandbox_info.tmp_dir)
        assert env["HOME"] == str(sandbox_info.data_dir)


class TestResourceExhaustion:
    """Test detection of ceilings being hit."""

    @pytest.mark.parametrize(
        "exit_code",
        [-signal.SIGKILL, -signal.SIGXCPU, 128 + signal.SIGKILL, 128 + signal.SIGXFSZ],
    )
    def test_killed_by_limit(self, exit_code):
        """Test kill statuses from the isolation layer count as exhaustion."""
        assert SandboxExecutor._detect_resource_exhaustion(exit_code, "")

    def test_memory_error_in_stderr(self):
        """Test runtime out-of-memory messages count as exhaustion."""
        stderr = "Traceback (most recent call last):\nMemoryError"
        assert SandboxExecutor._detect_resource_exhaustion(1, stderr)

    def test_fork_failure_in_stderr(self):
        """Test process-limit failures count as exhaustion."""
        assert SandboxExecutor._detect_resource_exhaustion(
            1, "fork: Resource temporarily unavailable"
        )

    def test_plain_failure(self):
        """Test an ordinary non-zero exit is not exhaustion."""
        assert not SandboxExecutor._detect_resource_exhaustion(1, "ZeroDivisionError")

    def test_success_is_never_exhaustion(self):
        """Test exit code 0 is never reported as exhaustion."""
        assert not SandboxExecutor._detect_resource_exhaustion(0, "MemoryError")
        assert not SandboxExecutor._detect_resource_exhaustion(None, "")


class TestSanitizeOutput:
    """Test output decoding and truncation."""

    def test_control_characters_removed(self, executor):
        """Test control characters are stripped but newlines and tabs kept."""
        output = executor._sanitize_output(b"a\x00b\x07c\n\td\r\n", limit=1024)
        assert output == "abc\n\td\r\n"

    def test_truncated_output_marked(self, executor):
        """Test output over the limit is cut and marked."""
        output = executor._sanitize_output(b"x" * 2000, limit=1024)
        assert output.startswith("x" * 1024)
        assert output.endswith(TRUNCATION_MARKER)

    def test_invalid_utf8_replaced(self, executor):
        """Test undecodable bytes do not raise."""
        assert "\ufffd" in executor._sanitize_output(b"\xff\xfe", limit=1024)


class TestSpawnCount:
    """Test the spawn counter."""

    @pytest.mark.asyncio
    async def test_run_counts_spawn(self, executor, sandbox_info):
        """Test each started process is counted."""
        assert executor.spawn_count == 0
        outcome = await executor.run(sandbox_info, ["true"], timeout=5)
        assert outcome.exit_code == 0
        assert executor.spawn_count == 1
