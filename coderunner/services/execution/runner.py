"""Code execution runner - core execution logic."""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

import structlog

from ...config import LanguagePluginConfig, settings
from ...models import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionState,
    ExecutionStatus,
    ServiceUnavailableError,
)
from ...utils.id_generator import generate_execution_id
from ..sandbox import ProcessOutcome, SandboxInfo, SandboxManager
from ..workspace import WorkspaceManager

logger = structlog.get_logger(__name__)

_TERMINAL_STATES = {
    ExecutionState.COMPLETED,
    ExecutionState.TIMED_OUT,
    ExecutionState.CRASHED,
}


@dataclass
class SandboxRun:
    """Lifecycle record of one sandboxed execution.

    created -> compiling? -> running -> completed | timed_out | crashed
    -> torn_down. Every run ends in torn_down.
    """

    execution_id: str
    session_id: str
    language: str
    state: ExecutionState = ExecutionState.CREATED
    history: List[ExecutionState] = field(
        default_factory=lambda: [ExecutionState.CREATED]
    )
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def transition(self, state: ExecutionState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug(
            "Execution state changed",
            execution_id=self.execution_id,
            state=state.value,
        )

    def crash(self) -> None:
        # A failure during collection does not rewrite an outcome already reached
        if self.state not in _TERMINAL_STATES:
            self.transition(ExecutionState.CRASHED)


class CodeRunner:
    """Runs one validated request in a fresh sandbox and tears it down."""

    def __init__(
        self,
        sandbox_manager: Optional[SandboxManager] = None,
        workspace_manager: Optional[WorkspaceManager] = None,
    ):
        self.sandbox_manager = sandbox_manager or SandboxManager()
        self.workspace_manager = workspace_manager or WorkspaceManager(
            self.sandbox_manager
        )
        self.active_runs: Dict[str, SandboxRun] = {}
        self.completed_runs = 0

    async def run(
        self,
        request: ExecutionRequest,
        language: LanguagePluginConfig,
        session_id: str,
        timeout_ms: int,
        persist_outputs: bool = True,
    ) -> ExecutionResult:
        """Build, run and collect one program.

        The timeout is a single budget shared by compilation and the run.
        The sandbox is destroyed on every exit path, including cancellation.

        Raises:
            ServiceUnavailableError: The sandbox could not be provisioned or
                the program could not be started
        """
        if not self.sandbox_manager.is_available():
            raise ServiceUnavailableError(
                "sandbox", self.sandbox_manager.get_initialization_error()
            )

        run = SandboxRun(
            execution_id=generate_execution_id(),
            session_id=session_id,
            language=language.id,
        )
        self.active_runs[run.execution_id] = run
        logger.info(
            "Starting code execution",
            execution_id=run.execution_id,
            session_id=session_id[:12],
            language=language.id,
            code_length=len(request.code),
            timeout_ms=timeout_ms,
        )

        sandbox_info: Optional[SandboxInfo] = None
        deadline = time.monotonic() + timeout_ms / 1000
        try:
            # Disk work runs off the event loop; uploads can be large
            sandbox_info = await asyncio.to_thread(
                self.sandbox_manager.create_for_language, session_id, language
            )
            await asyncio.to_thread(self._prepare, sandbox_info, language, request)

            compile_output = ""
            if language.needs_compilation:
                run.transition(ExecutionState.COMPILING)
                compiled = await self.sandbox_manager.executor.run(
                    sandbox_info,
                    list(language.compile_command),
                    timeout=self._remaining(deadline),
                )
                compile_output = self._combine(compiled)
                if compiled.timed_out or compiled.exit_code != 0:
                    return self._compile_failure(
                        run, compiled, compile_output, timeout_ms
                    )

            # Build artifacts and inputs are not outputs of the program
            known_names = await asyncio.to_thread(self._snapshot, sandbox_info)

            run.transition(ExecutionState.RUNNING)
            outcome = await self.sandbox_manager.executor.run(
                sandbox_info,
                list(language.run_command),
                timeout=self._remaining(deadline),
                stdin_payload=request.stdin,
            )
            run.transition(
                ExecutionState.TIMED_OUT if outcome.timed_out else ExecutionState.COMPLETED
            )

            generated_files = await asyncio.to_thread(
                self.workspace_manager.collect,
                sandbox_info.data_dir,
                known_names,
                session_id if persist_outputs else None,
            )

            result = ExecutionResult(
                session_id=session_id,
                language=language.id,
                status=self._status_for(outcome),
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                compile_output=compile_output,
                exit_code=outcome.exit_code,
                duration_ms=outcome.duration_ms,
                timeout_ms=timeout_ms,
                timed_out=outcome.timed_out,
                memory_exceeded=outcome.resource_exceeded,
                generated_files=generated_files,
            )
            logger.info(
                "Code execution finished",
                execution_id=run.execution_id,
                status=result.status.value,
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
                generated_files=len(generated_files),
            )
            return result

        except OSError as e:
            run.crash()
            logger.error(
                "Sandbox execution crashed",
                execution_id=run.execution_id,
                error=str(e),
            )
            raise ServiceUnavailableError(
                "sandbox", f"Sandbox execution failed: {e}"
            ) from e
        except BaseException:
            run.crash()
            raise
        finally:
            if sandbox_info is not None:
                await self.sandbox_manager.destroy_sandbox(sandbox_info)
            run.transition(ExecutionState.TORN_DOWN)
            self.active_runs.pop(run.execution_id, None)
            self.completed_runs += 1

    def _compile_failure(
        self,
        run: SandboxRun,
        compiled: ProcessOutcome,
        compile_output: str,
        timeout_ms: int,
    ) -> ExecutionResult:
        if compiled.timed_out:
            run.transition(ExecutionState.TIMED_OUT)
            status = ExecutionStatus.TIMED_OUT
        else:
            run.transition(ExecutionState.COMPLETED)
            status = ExecutionStatus.COMPILATION_ERROR
        logger.info(
            "Compilation failed",
            execution_id=run.execution_id,
            exit_code=compiled.exit_code,
            timed_out=compiled.timed_out,
        )
        return ExecutionResult(
            session_id=run.session_id,
            language=run.language,
            status=status,
            compile_output=compile_output,
            exit_code=compiled.exit_code,
            duration_ms=compiled.duration_ms,
            timeout_ms=timeout_ms,
            timed_out=compiled.timed_out,
        )

    def _prepare(
        self,
        sandbox_info: SandboxInfo,
        language: LanguagePluginConfig,
        request: ExecutionRequest,
    ) -> None:
        self.sandbox_manager.write_file(
            sandbox_info, language.filename, request.code.encode("utf-8")
        )
        self.workspace_manager.stage(sandbox_info, request.files)

    @staticmethod
    def _status_for(outcome: ProcessOutcome) -> ExecutionStatus:
        if outcome.timed_out:
            return ExecutionStatus.TIMED_OUT
        if outcome.resource_exceeded:
            return ExecutionStatus.RESOURCE_EXCEEDED
        if outcome.exit_code != 0:
            return ExecutionStatus.RUNTIME_ERROR
        return ExecutionStatus.COMPLETED

    @staticmethod
    def _remaining(deadline: float) -> float:
        # A timer still has to start when compilation used up the budget
        return max(0.05, deadline - time.monotonic())

    @staticmethod
    def _combine(outcome: ProcessOutcome) -> str:
        return "".join(part for part in (outcome.stdout, outcome.stderr) if part)

    @staticmethod
    def _snapshot(sandbox_info: SandboxInfo) -> Set[str]:
        data_dir = sandbox_info.data_dir
        return {
            path.relative_to(data_dir).as_posix()
            for path in data_dir.rglob("*")
            if path.is_file()
        }
