"""Interactive program endpoints.

A program is only reachable by the caller that started it. Programs of other
users answer like missing ones.
"""

# Third-party imports
from fastapi import APIRouter, Query

# Local application imports
from ..dependencies import InteractiveManagerDep, OptionalUser
from ..models.session import (
    AckResponse,
    CreateInteractiveRequest,
    InteractiveInputRequest,
    InteractiveOutputResponse,
    InteractiveSessionResponse,
)

router = APIRouter(prefix="/interactive", tags=["interactive"])


@router.post("", response_model=InteractiveSessionResponse, status_code=201)
async def create_interactive_session(
    request: CreateInteractiveRequest,
    manager: InteractiveManagerDep,
    user_id: OptionalUser,
):
    """Start a program that keeps running and reads stdin incrementally."""
    return await manager.create(
        request.language,
        request.code,
        session_id=request.session_id,
        user_id=user_id,
    )


@router.post("/{session_id}/input", response_model=AckResponse)
async def send_interactive_input(
    session_id: str,
    request: InteractiveInputRequest,
    manager: InteractiveManagerDep,
    user_id: OptionalUser,
):
    return await manager.send_input(
        session_id, request.input, newline=request.newline, user_id=user_id
    )


@router.get("/{session_id}/output", response_model=InteractiveOutputResponse)
async def read_interactive_output(
    session_id: str,
    manager: InteractiveManagerDep,
    user_id: OptionalUser,
    wait: float = Query(0.0, ge=0.0, le=30.0, description="Seconds to wait for output"),
):
    return await manager.read_output(session_id, wait_seconds=wait, user_id=user_id)


@router.delete("/{session_id}", response_model=AckResponse)
async def terminate_interactive_session(
    session_id: str, manager: InteractiveManagerDep, user_id: OptionalUser
):
    return await manager.terminate(session_id, user_id=user_id)
