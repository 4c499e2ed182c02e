"""Interactive terminal data models."""

# Standard library imports
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

# Third-party imports
from pydantic import BaseModel, Field


class TerminalState(str, Enum):
    """Lifecycle of a terminal session."""

    CREATED = "created"
    READY = "ready"
    ACTIVE = "active"
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    DISCONNECTED = "disconnected"
    CLEANED_UP = "cleaned_up"


class TerminalEvent(BaseModel):
    """One outbound message on a terminal's event stream."""

    type: str  # output | exit | error | resized | command_result | closed
    session_id: str
    data: Optional[str] = None
    exit_code: Optional[int] = None
    message: Optional[str] = None
    cols: Optional[int] = None
    rows: Optional[int] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TerminalCreateResponse(BaseModel):
    session_id: str
    status: str = "ready"
    cols: int
    rows: int


class TerminalInputRequest(BaseModel):
    data: str = Field(..., description="Raw keystrokes or a command line")
    is_command: bool = Field(
        default=False,
        description="Validate as a command line before forwarding to the shell",
    )


class TerminalResizeRequest(BaseModel):
    cols: int
    rows: int


class TerminalCommandRequest(BaseModel):
    command: str


class TerminalCommandResponse(BaseModel):
    session_id: str
    output: str
    exit_code: Optional[int] = None
    timed_out: bool = False
    current_directory: Optional[str] = None


class TerminalInputResponse(BaseModel):
    session_id: str
    accepted: bool
    reason: Optional[str] = None


class TerminalInfo(BaseModel):
    """Metadata about one terminal session."""

    session_id: str
    user_id: str
    state: str
    is_active: bool
    created_at: datetime
    last_activity: datetime
    current_directory: Optional[str] = None
    cols: int
    rows: int
    command_history_length: int
    blocked_commands_count: int
    suspicious_activity_count: int


class TerminalStats(BaseModel):
    total_sessions: int
    active_sessions: int
    total_blocked_commands: int
    total_suspicious_activity: int
    max_sessions: int


class TerminalListResponse(BaseModel):
    sessions: List[TerminalInfo]
