"""Interactive terminal endpoints, including the WebSocket event stream."""

# Standard library imports
import asyncio
import json
from typing import Optional

# Third-party imports
import structlog
from fastapi import APIRouter, Body, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

# Local application imports
from ..config import settings
from ..dependencies import CurrentUser, TerminalManagerDep
from ..models import CodeRunnerException, SessionNotFoundError
from ..models.session import AckResponse
from ..models.terminal import (
    TerminalCommandRequest,
    TerminalCommandResponse,
    TerminalCreateResponse,
    TerminalEvent,
    TerminalInfo,
    TerminalInputRequest,
    TerminalInputResponse,
    TerminalListResponse,
    TerminalResizeRequest,
    TerminalStats,
)
from ..services.terminal import TerminalManager, TerminalSession

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/terminals", tags=["terminals"])

# Application-defined WebSocket close codes
WS_CLOSE_NOT_FOUND = 4404
WS_CLOSE_UNAUTHENTICATED = 4401


class TerminalCreateRequest(TerminalResizeRequest):
    pass


@router.post("", response_model=TerminalCreateResponse, status_code=201)
async def create_terminal(
    manager: TerminalManagerDep,
    user_id: CurrentUser,
    request: Optional[TerminalCreateRequest] = Body(default=None),
):
    session = await manager.create(
        user_id,
        cols=request.cols if request else None,
        rows=request.rows if request else None,
    )
    return TerminalCreateResponse(
        session_id=session.session_id, cols=session.cols, rows=session.rows
    )


@router.get("", response_model=TerminalListResponse)
async def list_terminals(manager: TerminalManagerDep, user_id: CurrentUser):
    return TerminalListResponse(sessions=await manager.list_for_user(user_id))


@router.get("/stats", response_model=TerminalStats)
async def terminal_stats(manager: TerminalManagerDep, user_id: CurrentUser):
    return await manager.stats()


@router.get("/{session_id}", response_model=TerminalInfo)
async def get_terminal_info(
    session_id: str, manager: TerminalManagerDep, user_id: CurrentUser
):
    return await manager.info(session_id, user_id=user_id)


@router.post("/{session_id}/input", response_model=TerminalInputResponse)
async def terminal_input(
    session_id: str,
    request: TerminalInputRequest,
    manager: TerminalManagerDep,
    user_id: CurrentUser,
):
    """Forward keystrokes, or a command line when ``is_command`` is set.

    A blocked command line is answered with ``accepted=false`` and a reason;
    nothing reaches the shell.
    """
    return await manager.input(
        session_id, request.data, is_command=request.is_command, user_id=user_id
    )


@router.post("/{session_id}/resize", response_model=TerminalInfo)
async def terminal_resize(
    session_id: str,
    request: TerminalResizeRequest,
    manager: TerminalManagerDep,
    user_id: CurrentUser,
):
    return await manager.resize(session_id, request.cols, request.rows, user_id=user_id)


@router.post("/{session_id}/commands", response_model=TerminalCommandResponse)
async def execute_terminal_command(
    session_id: str,
    request: TerminalCommandRequest,
    manager: TerminalManagerDep,
    user_id: CurrentUser,
):
    """Run one command line and return its output and exit code."""
    return await manager.execute_command(session_id, request.command, user_id=user_id)


@router.delete("/{session_id}", response_model=AckResponse)
async def close_terminal(
    session_id: str, manager: TerminalManagerDep, user_id: CurrentUser
):
    await manager.close(session_id, user_id=user_id)
    return AckResponse(session_id=session_id, message="Terminal closed")


@router.websocket("/{session_id}/stream")
async def terminal_stream(
    websocket: WebSocket, session_id: str, manager: TerminalManagerDep
):
    """Bidirectional terminal stream.

    Outbound messages are ``TerminalEvent`` JSON objects. Inbound messages
    are JSON objects with a ``type`` of ``input``, ``resize`` or ``command``.
    The terminal is closed when the stream disconnects.
    """
    user_id = websocket.headers.get(settings.user_id_header, "").strip()
    if not user_id:
        await websocket.close(code=WS_CLOSE_UNAUTHENTICATED)
        return
    try:
        session = await manager.get(session_id, user_id=user_id)
    except SessionNotFoundError:
        await websocket.close(code=WS_CLOSE_NOT_FOUND)
        return

    await websocket.accept()
    logger.info("Terminal stream connected", session_id=session_id[:12])

    sender = asyncio.create_task(_pump_events(websocket, session))
    receiver = asyncio.create_task(_receive_messages(websocket, manager, session, user_id))
    try:
        done, pending = await asyncio.wait(
            {sender, receiver}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.error(
                    "Terminal stream failed",
                    session_id=session_id[:12],
                    error=str(error),
                )
    finally:
        if session.is_active:
            try:
                await manager.close(session_id, reason="disconnected")
            except SessionNotFoundError:
                logger.debug("Terminal already closed", session_id=session_id[:12])
        logger.info("Terminal stream disconnected", session_id=session_id[:12])


async def _pump_events(websocket: WebSocket, session: TerminalSession) -> None:
    while True:
        event = await session.events.get(timeout=1.0)
        if event is None:
            if not session.is_active and session.events.empty():
                break
            continue
        await websocket.send_text(event.model_dump_json())
        if event.type == "closed":
            break
    await websocket.close()


async def _receive_messages(
    websocket: WebSocket,
    manager: TerminalManager,
    session: TerminalSession,
    user_id: str,
) -> None:
    while True:
        raw = await websocket.receive_text()
        try:
            message = json.loads(raw)
            await _dispatch(message, manager, session, user_id)
        except (json.JSONDecodeError, PydanticValidationError, TypeError, AttributeError):
            _send_error(session, "Malformed message")
        except CodeRunnerException as e:
            _send_error(session, e.message)


async def _dispatch(
    message: dict, manager: TerminalManager, session: TerminalSession, user_id: str
) -> None:
    kind = message.get("type")
    sid = session.session_id
    if kind == "input":
        request = TerminalInputRequest.model_validate(message)
        response = await manager.input(
            sid, request.data, is_command=request.is_command, user_id=user_id
        )
        # Blocked command lines are reported on the event stream by the session
        if not response.accepted and response.reason and not request.is_command:
            _send_error(session, response.reason)
    elif kind == "resize":
        request = TerminalResizeRequest.model_validate(message)
        await manager.resize(sid, request.cols, request.rows, user_id=user_id)
    elif kind == "command":
        request = TerminalCommandRequest.model_validate(message)
        result = await manager.execute_command(sid, request.command, user_id=user_id)
        session.events.put(
            TerminalEvent(
                type="command_result",
                session_id=sid,
                data=result.output,
                exit_code=result.exit_code,
            )
        )
    else:
        _send_error(session, f"Unknown message type: {kind}")


def _send_error(session: TerminalSession, message: str) -> None:
    session.events.put(
        TerminalEvent(type="error", session_id=session.session_id, message=message)
    )
