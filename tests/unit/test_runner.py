"""Unit tests for CodeRunner with a mocked sandbox executor."""

import asyncio
import shutil
import threading
from unittest.mock import AsyncMock, patch

import pytest

from coderunner.config import LANGUAGES
from coderunner.models import (
    ExecutionRequest,
    ExecutionStatus,
    ServiceUnavailableError,
    UploadedFile,
)
from coderunner.services.execution import CodeRunner
from coderunner.services.sandbox.executor import ProcessOutcome
from coderunner.services.workspace import WorkspaceManager


@pytest.fixture
def runner(mock_sandbox_manager, uploads_dir):
    workspace = WorkspaceManager(mock_sandbox_manager, uploads_dir=str(uploads_dir))
    return CodeRunner(mock_sandbox_manager, workspace)


def _request(code="print('hi')", **kwargs):
    return ExecutionRequest(language="python", code=code, **kwargs)


class TestRunOutcomes:
    """Test how process outcomes map to execution results."""

    @pytest.mark.asyncio
    async def test_successful_run(self, runner, mock_executor):
        """Test a clean exit becomes a completed result."""
        result = await runner.run(_request(), LANGUAGES["python"], "session-1", 5000)

        assert result.status == ExecutionStatus.COMPLETED
        assert result.stdout == "ok\n"
        assert result.exit_code == 0
        assert result.ok
        command = mock_executor.run.call_args.args[1]
        assert command == ["python3", "main.py"]

    @pytest.mark.asyncio
    async def test_source_and_stdin_passed(self, runner, mock_executor):
        """Test the source is written and stdin forwarded to the program."""
        seen = {}

        async def fake_run(sandbox_info, command, timeout, stdin_payload=None):
            seen["source"] = (sandbox_info.data_dir / "main.py").read_text()
            seen["stdin"] = stdin_payload
            return ProcessOutcome(exit_code=0)

        mock_executor.run.side_effect = fake_run
        await runner.run(
            _request(code="print(input())", stdin="5\n"),
            LANGUAGES["python"],
            "session-1",
            5000,
        )
        assert seen == {"source": "print(input())", "stdin": "5\n"}

    @pytest.mark.asyncio
    async def test_runtime_error(self, runner, mock_executor):
        """Test a non-zero exit becomes a runtime error with stderr kept."""
        mock_executor.run.return_value = ProcessOutcome(
            exit_code=1, stderr="ZeroDivisionError: division by zero"
        )
        result = await runner.run(_request(), LANGUAGES["python"], "session-1", 5000)
        assert result.status == ExecutionStatus.RUNTIME_ERROR
        assert "ZeroDivisionError" in result.stderr

    @pytest.mark.asyncio
    async def test_timeout(self, runner, mock_executor):
        """Test a timed-out run keeps its partial output."""
        mock_executor.run.return_value = ProcessOutcome(
            exit_code=-9, stdout="partial", timed_out=True
        )
        result = await runner.run(_request(), LANGUAGES["python"], "session-1", 1000)
        assert result.status == ExecutionStatus.TIMED_OUT
        assert result.timed_out is True
        assert result.stdout == "partial"

    @pytest.mark.asyncio
    async def test_resource_exceeded(self, runner, mock_executor):
        """Test an exhausted ceiling is reported as such."""
        mock_executor.run.return_value = ProcessOutcome(
            exit_code=1, stderr="MemoryError", resource_exceeded=True
        )
        result = await runner.run(_request(), LANGUAGES["python"], "session-1", 5000)
        assert result.status == ExecutionStatus.RESOURCE_EXCEEDED
        assert result.memory_exceeded is True


class TestCompilation:
    """Test compiled languages."""

    @pytest.mark.asyncio
    async def test_compile_failure_skips_run(self, runner, mock_executor):
        """Test a failed compile returns its diagnostics and never runs."""
        mock_executor.run.return_value = ProcessOutcome(
            exit_code=1, stderr="main.cpp:1: error: expected ';'"
        )
        result = await runner.run(
            ExecutionRequest(language="cpp", code="int main() { return 0 }"),
            LANGUAGES["cpp"],
            "session-1",
            5000,
        )
        assert result.status == ExecutionStatus.COMPILATION_ERROR
        assert "expected ';'" in result.compile_output
        assert mock_executor.run.await_count == 1

    @pytest.mark.asyncio
    async def test_compile_and_run_share_deadline(self, runner, mock_executor):
        """Test the run only gets what compilation left of the budget."""
        timeouts = []

        async def fake_run(sandbox_info, command, timeout, stdin_payload=None):
            timeouts.append(timeout)
            return ProcessOutcome(exit_code=0)

        mock_executor.run.side_effect = fake_run
        with patch("coderunner.services.execution.runner.time") as fake_time:
            # Start, compile timer, run timer
            fake_time.monotonic.side_effect = [100.0, 100.0, 103.0]
            await runner.run(
                ExecutionRequest(language="cpp", code="int main() { return 0; }"),
                LANGUAGES["cpp"],
                "session-1",
                5000,
            )
        assert timeouts == [pytest.approx(5.0), pytest.approx(2.0)]

    @pytest.mark.asyncio
    async def test_build_artifacts_not_reported(self, runner, mock_executor):
        """Test files produced by the compiler are not generated files."""

        async def fake_run(sandbox_info, command, timeout, stdin_payload=None):
            if command[0] == "g++":
                (sandbox_info.data_dir / "main").write_bytes(b"\x7fELF")
            else:
                (sandbox_info.data_dir / "result.txt").write_text("42")
            return ProcessOutcome(exit_code=0)

        mock_executor.run.side_effect = fake_run
        result = await runner.run(
            ExecutionRequest(language="cpp", code="int main() { return 0; }"),
            LANGUAGES["cpp"],
            "session-1",
            5000,
        )
        assert [f.name for f in result.generated_files] == ["result.txt"]


class TestGeneratedFiles:
    """Test output collection through the runner."""

    @pytest.mark.asyncio
    async def test_inputs_excluded_outputs_persisted(
        self, runner, mock_executor, uploads_dir
    ):
        """Test uploads are not outputs and new files are kept for download."""

        async def fake_run(sandbox_info, command, timeout, stdin_payload=None):
            (sandbox_info.data_dir / "out.csv").write_text("x,y")
            return ProcessOutcome(exit_code=0)

        mock_executor.run.side_effect = fake_run
        result = await runner.run(
            _request(files=[UploadedFile("in.csv", b"a,b")]),
            LANGUAGES["python"],
            "session-1",
            5000,
        )
        assert [f.path for f in result.generated_files] == ["out.csv"]
        assert (uploads_dir / "session-1" / "out.csv").read_text() == "x,y"

    @pytest.mark.asyncio
    async def test_persist_disabled(self, runner, mock_executor, uploads_dir):
        """Test outputs are only reported when persistence is off."""

        async def fake_run(sandbox_info, command, timeout, stdin_payload=None):
            (sandbox_info.data_dir / "out.txt").write_text("x")
            return ProcessOutcome(exit_code=0)

        mock_executor.run.side_effect = fake_run
        result = await runner.run(
            _request(), LANGUAGES["python"], "session-1", 5000, persist_outputs=False
        )
        assert len(result.generated_files) == 1
        assert not (uploads_dir / "session-1").exists()


class TestTeardown:
    """Test that every exit path destroys the sandbox."""

    @pytest.mark.asyncio
    async def test_sandbox_destroyed_after_success(
        self, runner, mock_sandbox_manager
    ):
        """Test nothing is left on disk after a run."""
        await runner.run(_request(), LANGUAGES["python"], "session-1", 5000)
        assert mock_sandbox_manager.list_sandboxes() == []
        assert runner.active_runs == {}
        assert runner.completed_runs == 1

    @pytest.mark.asyncio
    async def test_sandbox_destroyed_on_cancel(
        self, runner, mock_executor, mock_sandbox_manager
    ):
        """Test cancellation still tears the sandbox down."""
        mock_executor.run.side_effect = asyncio.CancelledError()
        with pytest.raises(asyncio.CancelledError):
            await runner.run(_request(), LANGUAGES["python"], "session-1", 5000)
        assert mock_sandbox_manager.list_sandboxes() == []
        assert runner.active_runs == {}

    @pytest.mark.asyncio
    async def test_os_error_is_service_unavailable(
        self, runner, mock_executor, mock_sandbox_manager
    ):
        """Test a failure to start the program becomes a 503."""
        mock_executor.run.side_effect = FileNotFoundError("python3")
        with pytest.raises(ServiceUnavailableError):
            await runner.run(_request(), LANGUAGES["python"], "session-1", 5000)
        assert mock_sandbox_manager.list_sandboxes() == []

    @pytest.mark.asyncio
    async def test_unavailable_backend(self, runner, mock_sandbox_manager, mock_executor):
        """Test no sandbox is created when the backend is missing."""
        with patch.object(mock_sandbox_manager, "is_available", return_value=False):
            with pytest.raises(ServiceUnavailableError):
                await runner.run(_request(), LANGUAGES["python"], "session-1", 5000)
        assert mock_executor.run.await_count == 0
        assert mock_sandbox_manager.list_sandboxes() == []

    @pytest.mark.asyncio
    async def test_disk_work_off_event_loop(self, runner, mock_sandbox_manager):
        """Test provisioning, staging and teardown never touch disk on the loop thread."""
        loop_thread = threading.get_ident()
        threads = {}

        def record(name, func):
            def wrapper(*args, **kwargs):
                threads[name] = threading.get_ident()
                return func(*args, **kwargs)

            return wrapper

        workspace = runner.workspace_manager
        with patch.object(
            mock_sandbox_manager,
            "create_for_language",
            record("create", mock_sandbox_manager.create_for_language),
        ), patch.object(
            workspace, "stage", record("stage", workspace.stage)
        ), patch(
            "coderunner.services.sandbox.manager.shutil.rmtree",
            record("rmtree", shutil.rmtree),
        ):
            await runner.run(
                _request(files=[UploadedFile("data.csv", b"a,b")]),
                LANGUAGES["python"],
                "session-1",
                5000,
            )

        assert set(threads) == {"create", "stage", "rmtree"}
        assert loop_thread not in threads.values()
        assert mock_sandbox_manager.list_sandboxes() == []

    @pytest.mark.asyncio
    async def test_destroy_called_once(self, runner, mock_sandbox_manager):
        """Test the sandbox is destroyed exactly once per run."""
        with patch.object(
            mock_sandbox_manager,
            "destroy_sandbox",
            AsyncMock(wraps=mock_sandbox_manager.destroy_sandbox),
        ) as destroy:
            await runner.run(_request(), LANGUAGES["python"], "session-1", 5000)
        assert destroy.await_count == 1
