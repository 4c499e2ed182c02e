"""Admin API endpoints for operators."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from ..dependencies import (
    SchedulerDep,
    SessionRegistryDep,
    TerminalManagerDep,
    verify_master_key,
)
from ..models import SessionKind
from ..models.session import RegistryStats
from ..models.terminal import TerminalStats

router = APIRouter(prefix="/admin", tags=["admin"])


# --- Models ---


class AdminStatsResponse(BaseModel):
    registry: RegistryStats
    terminals: TerminalStats
    scheduler: dict


class AdminSessionInfo(BaseModel):
    session_id: str
    kind: SessionKind
    user_id: Optional[str]
    busy: bool
    age_seconds: float
    idle_seconds: float


# --- Endpoints ---


@router.get("/stats", response_model=AdminStatsResponse)
async def get_stats(
    registry: SessionRegistryDep,
    terminals: TerminalManagerDep,
    scheduler: SchedulerDep,
    _: str = Depends(verify_master_key),
):
    """Registry, terminal and scheduler counters in one snapshot."""
    return AdminStatsResponse(
        registry=await registry.stats(),
        terminals=await terminals.stats(),
        scheduler=scheduler.stats(),
    )


@router.get("/sessions", response_model=List[AdminSessionInfo])
async def list_sessions(
    registry: SessionRegistryDep,
    kind: Optional[SessionKind] = Query(None, description="Filter by session kind"),
    user_id: Optional[str] = Query(None, description="Filter by owner"),
    _: str = Depends(verify_master_key),
):
    sessions = await registry.list_sessions(kind=kind, user_id=user_id)
    return [
        AdminSessionInfo(
            session_id=s.session_id,
            kind=s.kind,
            user_id=s.user_id,
            busy=s.is_busy,
            age_seconds=round(s.age_seconds(), 3),
            idle_seconds=round(s.idle_seconds(), 3),
        )
        for s in sessions
    ]
