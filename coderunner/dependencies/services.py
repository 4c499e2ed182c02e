"""Service dependency injection for the code runner API."""

# Standard library imports
from functools import lru_cache
from typing import Annotated

# Third-party imports
from fastapi import Depends
import structlog

# Local application imports
from ..config import LanguageRegistry, language_registry
from ..services.execution import CodeRunner, ExecutionScheduler
from ..services.interactive import InteractiveProgramManager
from ..services.orchestrator import ExecutionOrchestrator
from ..services.sandbox import SandboxManager
from ..services.session import SessionRegistry
from ..services.terminal import TerminalManager
from ..services.validation import SecurityValidator
from ..services.workspace import WorkspaceManager

logger = structlog.get_logger(__name__)


def get_language_registry() -> LanguageRegistry:
    """Get the static language registry."""
    return language_registry


@lru_cache()
def get_security_validator() -> SecurityValidator:
    return SecurityValidator(language_registry)


@lru_cache()
def get_sandbox_manager() -> SandboxManager:
    """Get the sandbox manager used for program execution."""
    return SandboxManager()


@lru_cache()
def get_workspace_manager() -> WorkspaceManager:
    return WorkspaceManager(get_sandbox_manager())


@lru_cache()
def get_session_registry() -> SessionRegistry:
    """Get the process-wide session registry."""
    return SessionRegistry()


@lru_cache()
def get_execution_scheduler() -> ExecutionScheduler:
    return ExecutionScheduler()


@lru_cache()
def get_code_runner() -> CodeRunner:
    return CodeRunner(get_sandbox_manager(), get_workspace_manager())


@lru_cache()
def get_orchestrator() -> ExecutionOrchestrator:
    """Get the execution orchestrator with its collaborators wired in."""
    orchestrator = ExecutionOrchestrator(
        registry=get_session_registry(),
        runner=get_code_runner(),
        scheduler=get_execution_scheduler(),
        validator=get_security_validator(),
        languages=language_registry,
    )
    logger.info("Execution orchestrator initialized")
    return orchestrator


@lru_cache()
def get_interactive_manager() -> InteractiveProgramManager:
    return InteractiveProgramManager(
        registry=get_session_registry(),
        sandbox_manager=get_sandbox_manager(),
        validator=get_security_validator(),
        languages=language_registry,
    )


@lru_cache()
def get_terminal_manager() -> TerminalManager:
    """Get the terminal manager (terminals use their own sandbox root)."""
    return TerminalManager(registry=get_session_registry())


def reset_services() -> None:
    """Drop every cached service instance (tests)."""
    for getter in (
        get_security_validator,
        get_sandbox_manager,
        get_workspace_manager,
        get_session_registry,
        get_execution_scheduler,
        get_code_runner,
        get_orchestrator,
        get_interactive_manager,
        get_terminal_manager,
    ):
        getter.cache_clear()


# Type aliases for dependency injection
LanguageRegistryDep = Annotated[LanguageRegistry, Depends(get_language_registry)]
WorkspaceManagerDep = Annotated[WorkspaceManager, Depends(get_workspace_manager)]
SessionRegistryDep = Annotated[SessionRegistry, Depends(get_session_registry)]
OrchestratorDep = Annotated[ExecutionOrchestrator, Depends(get_orchestrator)]
InteractiveManagerDep = Annotated[
    InteractiveProgramManager, Depends(get_interactive_manager)
]
TerminalManagerDep = Annotated[TerminalManager, Depends(get_terminal_manager)]
SchedulerDep = Annotated[ExecutionScheduler, Depends(get_execution_scheduler)]
SandboxManagerDep = Annotated[SandboxManager, Depends(get_sandbox_manager)]
