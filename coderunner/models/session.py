"""Session data models."""

# Standard library imports
from enum import Enum
from typing import List, Optional

# Third-party imports
from pydantic import BaseModel, Field


class SessionKind(str, Enum):
    """What a session registry entry holds."""

    EXECUTION = "execution"
    INTERACTIVE = "interactive"
    TERMINAL = "terminal"


class CreateInteractiveRequest(BaseModel):
    language: str
    code: str
    session_id: Optional[str] = Field(
        default=None, description="Optional client-chosen session id"
    )


class InteractiveSessionResponse(BaseModel):
    session_id: str
    status: str = "ready"


class InteractiveInputRequest(BaseModel):
    input: str = Field(..., description="Text written to the program's stdin")
    newline: bool = Field(default=True, description="Append a trailing newline")


class InteractiveOutputEvent(BaseModel):
    stream: str  # stdout | stderr | exit
    data: str = ""
    exit_code: Optional[int] = None


class InteractiveOutputResponse(BaseModel):
    session_id: str
    active: bool
    events: List[InteractiveOutputEvent]


class AckResponse(BaseModel):
    session_id: str
    success: bool = True
    message: Optional[str] = None


class RegistryStats(BaseModel):
    total_sessions: int
    by_kind: dict
    sweeps_run: int
    sessions_swept: int
