"""Execution data models."""

# Standard library imports
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

# Third-party imports
from pydantic import BaseModel, Field

# Local application imports
from .errors import (
    CompilationError,
    ExecutionRuntimeError,
    ExecutionTimeoutError,
    ResourceExceededError,
)
from .files import GeneratedFile, UploadedFile


class ExecutionStatus(str, Enum):
    """Final outcome of an execution that passed validation."""

    COMPLETED = "completed"
    COMPILATION_ERROR = "compilation_error"
    RUNTIME_ERROR = "runtime_error"
    TIMED_OUT = "timed_out"
    RESOURCE_EXCEEDED = "resource_exceeded"


class ExecutionState(str, Enum):
    """Lifecycle of a single sandboxed run."""

    CREATED = "created"
    COMPILING = "compiling"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    CRASHED = "crashed"
    TORN_DOWN = "torn_down"


@dataclass
class ExecutionRequest:
    """A single execution invocation, owned by the call that processes it."""

    language: str
    code: str
    stdin: Optional[str] = None
    files: List[UploadedFile] = field(default_factory=list)
    timeout_ms: Optional[int] = None
    session_id: Optional[str] = None
    user_id: Optional[str] = None


class ExecutionResult(BaseModel):
    """Result of running code that passed validation."""

    session_id: str
    language: str
    status: ExecutionStatus
    stdout: str = ""
    stderr: str = ""
    compile_output: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = 0
    timeout_ms: Optional[int] = None  # Wall-clock limit the run was given
    timed_out: bool = False
    memory_exceeded: bool = False
    generated_files: List[GeneratedFile] = Field(default_factory=list)
    violations: List[dict] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED and self.exit_code == 0

    def raise_for_status(self) -> "ExecutionResult":
        """Raise the error matching a failed outcome, or return self."""
        if self.status == ExecutionStatus.COMPILATION_ERROR:
            raise CompilationError(result=self)
        if self.status == ExecutionStatus.TIMED_OUT:
            raise ExecutionTimeoutError(
                timeout_ms=self.timeout_ms or self.duration_ms, result=self
            )
        if self.status == ExecutionStatus.RESOURCE_EXCEEDED:
            raise ResourceExceededError(result=self)
        if self.status == ExecutionStatus.RUNTIME_ERROR:
            raise ExecutionRuntimeError(
                message=f"Program exited with code {self.exit_code}", result=self
            )
        return self


class ExecuteCodeRequest(BaseModel):
    """Request body for ``POST /exec``."""

    language: str = Field(..., description="Language id or alias")
    code: str = Field(..., description="Source code to run")
    stdin: Optional[str] = Field(default=None, description="Standard input")
    timeout_ms: Optional[int] = Field(
        default=None, ge=100, description="Wall-clock timeout in milliseconds"
    )
    session_id: Optional[str] = Field(
        default=None, description="Session id to store generated files under"
    )


class LanguageInfo(BaseModel):
    """Public description of a supported language."""

    id: str
    name: str
    version: str
    extension: str
    aliases: List[str]
    compiled: bool
