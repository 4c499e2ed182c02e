"""Dependencies package for the code runner API."""

from .auth import (
    CurrentUser,
    OptionalUser,
    get_current_user,
    get_current_user_optional,
    verify_api_key,
    verify_master_key,
)
from .services import (
    InteractiveManagerDep,
    LanguageRegistryDep,
    OrchestratorDep,
    SandboxManagerDep,
    SchedulerDep,
    SessionRegistryDep,
    TerminalManagerDep,
    WorkspaceManagerDep,
    get_code_runner,
    get_execution_scheduler,
    get_interactive_manager,
    get_orchestrator,
    get_sandbox_manager,
    get_session_registry,
    get_terminal_manager,
    get_workspace_manager,
    reset_services,
)

__all__ = [
    "verify_api_key",
    "verify_master_key",
    "get_current_user",
    "get_current_user_optional",
    "CurrentUser",
    "OptionalUser",
    "get_code_runner",
    "get_execution_scheduler",
    "get_interactive_manager",
    "get_orchestrator",
    "get_sandbox_manager",
    "get_session_registry",
    "get_terminal_manager",
    "get_workspace_manager",
    "reset_services",
    "InteractiveManagerDep",
    "LanguageRegistryDep",
    "OrchestratorDep",
    "SandboxManagerDep",
    "SchedulerDep",
    "SessionRegistryDep",
    "TerminalManagerDep",
    "WorkspaceManagerDep",
]
