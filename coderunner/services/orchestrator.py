"""Execution Orchestrator - Coordinates code execution workflow.

This module provides a clean abstraction over the execution workflow,
coordinating between the session registry, validator, workspace and runner.

The orchestrator is used by API endpoints to delegate the workflow logic,
resulting in thinner endpoints.

Usage:
    orchestrator = ExecutionOrchestrator(
        registry=registry,
        runner=runner,
        scheduler=scheduler,
    )
    result = await orchestrator.execute(request)
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import structlog

from ..config import LanguagePluginConfig, LanguageRegistry, language_registry, settings
from ..models import (
    CodeRunnerException,
    ExecutionRequest,
    ExecutionResult,
    ServiceUnavailableError,
    SessionConflictError,
    SessionKind,
    SessionNotFoundError,
    ValidationError,
)
from ..models.errors import ErrorDetail
from .execution import CodeRunner, ExecutionScheduler
from .session import ExecutionContext, SessionRegistry
from .validation import SecurityValidator

logger = structlog.get_logger(__name__)


@dataclass
class PipelineContext:
    """State passed through the execution pipeline."""

    request: ExecutionRequest
    language: Optional[LanguagePluginConfig] = None
    timeout_ms: int = 0
    session_id: Optional[str] = None
    session: Optional[ExecutionContext] = None
    ephemeral: bool = False  # Session created for this request only


class ExecutionOrchestrator:
    """Coordinates the code execution workflow.

    This orchestrator follows a pipeline pattern:
    1. Validate request (language, code, stdin, uploads)
    2. Get or create the execution session
    3. Run in a fresh sandbox (stage, compile?, run, collect)
    4. Cleanup
    Nothing is provisioned for a request that fails step 1.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        runner: CodeRunner,
        scheduler: Optional[ExecutionScheduler] = None,
        validator: Optional[SecurityValidator] = None,
        languages: Optional[LanguageRegistry] = None,
    ):
        self.registry = registry
        self.runner = runner
        self.scheduler = scheduler or ExecutionScheduler()
        self.languages = languages or language_registry
        self.validator = validator or SecurityValidator(self.languages)

    async def execute(
        self, request: ExecutionRequest, raise_on_failure: bool = True
    ) -> ExecutionResult:
        """Execute code and return its result.

        Args:
            request: The execution request
            raise_on_failure: Raise the taxonomy error for a non-completed
                outcome instead of returning the result

        Raises:
            ValidationError: Rejected before any sandbox was created
            CompilationError, ExecutionRuntimeError, ExecutionTimeoutError,
            ResourceExceededError: The program ran and failed (carry the result)
            SessionConflictError: The session already has an active run
            CapacityExceededError: The user is at their concurrency cap
        """
        ctx = PipelineContext(request=request)

        try:
            # Step 1: Validate everything before touching a sandbox
            self._validate_request(ctx)

            # Step 2: Get or create session
            await self._get_or_create_session(ctx)

            # Step 3: Run
            result = await self._execute_code(ctx)

        except CodeRunnerException:
            raise
        except ValueError as e:
            logger.error("Invalid execution request", error=str(e))
            raise ValidationError(message=str(e))
        except Exception as e:
            logger.error("Code execution failed", error=str(e))
            raise ServiceUnavailableError(
                service="Code Execution",
                message=f"Unexpected error during code execution: {str(e)}",
            )
        finally:
            # Step 4: Cleanup
            await self._cleanup(ctx)

        if raise_on_failure:
            result.raise_for_status()
        return result

    async def execute_with_files(
        self, request: ExecutionRequest, raise_on_failure: bool = True
    ) -> ExecutionResult:
        """Execute with uploaded input files staged into the workspace.

        Generated files are kept under the session id for download, so a
        session id is required.
        """
        if not request.session_id:
            raise ValidationError(
                message="session_id is required when uploading files",
                details=[
                    ErrorDetail(
                        field="session_id",
                        message="session_id is required",
                        code="missing_session_id",
                    )
                ],
            )
        return await self.execute(request, raise_on_failure=raise_on_failure)

    def _validate_request(self, ctx: PipelineContext) -> None:
        """Validate the execution request."""
        request = ctx.request

        # Unsupported languages raise ValidationError
        ctx.language = self.languages.get(request.language)

        # Validate code content
        if not request.code or not request.code.strip():
            logger.error("Empty code provided")
            raise ValidationError(
                message="Code cannot be empty",
                details=[
                    ErrorDetail(
                        field="code",
                        message="Code field is required and cannot be empty",
                        code="empty_code",
                    )
                ],
            )

        if request.stdin and len(request.stdin) > settings.max_stdin_length:
            raise ValidationError(
                message="Input too long",
                details=[
                    ErrorDetail(
                        field="stdin",
                        message=(
                            f"Input too long ({len(request.stdin)} chars, "
                            f"max {settings.max_stdin_length})"
                        ),
                        code="length",
                    )
                ],
            )

        self.validator.ensure_valid(ctx.language.id, request.code)

        if request.files:
            self.runner.workspace_manager.validate_uploads(
                request.files, reserved_names=[ctx.language.filename]
            )

        ctx.timeout_ms = self.resolve_timeout(request.timeout_ms, ctx.language)

    @staticmethod
    def resolve_timeout(
        timeout_ms: Optional[int], language: LanguagePluginConfig
    ) -> int:
        """Clamp a requested timeout and scale it for the language."""
        base = timeout_ms or settings.default_timeout_ms
        base = min(base, settings.max_timeout_ms)
        return int(base * language.timeout_multiplier)

    async def _get_or_create_session(self, ctx: PipelineContext) -> None:
        request = ctx.request
        if request.session_id:
            existing = await self.registry.find(request.session_id)
            if existing is not None:
                # Other users' sessions are indistinguishable from missing ones
                if existing.user_id != request.user_id:
                    raise SessionNotFoundError(request.session_id)
                if not isinstance(existing, ExecutionContext):
                    raise SessionConflictError(
                        f"Session {request.session_id} is not an execution session"
                    )
                ctx.session = existing
                ctx.session_id = request.session_id
                return

        ctx.ephemeral = not request.session_id
        ctx.session_id = await self.registry.create(
            SessionKind.EXECUTION,
            lambda sid: ExecutionContext(
                sid, user_id=request.user_id, clock=self.registry.clock
            ),
            session_id=request.session_id,
        )
        ctx.session = await self.registry.get(ctx.session_id, SessionKind.EXECUTION)

        # Stored outputs outlive the live session, so their owner is kept on disk
        try:
            await asyncio.to_thread(
                self.runner.workspace_manager.claim_session,
                ctx.session_id,
                request.user_id,
            )
        except SessionNotFoundError:
            await self.registry.remove(ctx.session_id, reason="rejected")
            ctx.session_id, ctx.session = None, None
            raise

    async def _execute_code(self, ctx: PipelineContext) -> ExecutionResult:
        async with ctx.session.exclusive_run():
            async with self.scheduler.slot(ctx.request.user_id):
                return await self.runner.run(
                    ctx.request,
                    ctx.language,
                    session_id=ctx.session_id,
                    timeout_ms=ctx.timeout_ms,
                )

    async def _cleanup(self, ctx: PipelineContext) -> None:
        """Forget per-request sessions; named sessions live until swept."""
        if ctx.ephemeral and ctx.session_id:
            await self.registry.remove(ctx.session_id, reason="completed")
