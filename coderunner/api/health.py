"""Health check endpoints."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
import structlog

from .. import __version__
from ..dependencies import (
    SandboxManagerDep,
    SchedulerDep,
    SessionRegistryDep,
    verify_api_key,
)

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get("/health", summary="Basic health check")
async def basic_health_check():
    """Basic health check endpoint that doesn't require authentication."""
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "coderunner",
    }


@router.get("/health/detailed", summary="Detailed health check")
async def detailed_health_check(
    sandbox_manager: SandboxManagerDep,
    registry: SessionRegistryDep,
    scheduler: SchedulerDep,
    _: str = Depends(verify_api_key),
):
    """Sandbox backend availability plus session and scheduler state.

    Returns 503 when the sandbox backend cannot run programs.
    """
    sandbox_error = sandbox_manager.get_initialization_error()
    registry_stats = await registry.stats()

    if sandbox_error:
        status = "unhealthy"
    elif not registry.is_running:
        status = "degraded"
    else:
        status = "healthy"

    response_data = {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {
            "sandbox": {
                "status": "unhealthy" if sandbox_error else "healthy",
                "backend": sandbox_manager.backend,
                "base_dir": str(sandbox_manager.base_dir),
                "error": sandbox_error,
            },
            "session_registry": {
                "status": "healthy" if registry.is_running else "degraded",
                "sweep_running": registry.is_running,
                **registry_stats.model_dump(),
            },
            "scheduler": {"status": "healthy", **scheduler.stats()},
        },
    }

    if status == "unhealthy":
        logger.warning("Health check failed", error=sandbox_error)
        return JSONResponse(status_code=503, content=response_data)
    if status == "degraded":
        return JSONResponse(
            status_code=200,
            content=response_data,
            headers={"X-Health-Status": "degraded"},
        )
    return JSONResponse(status_code=200, content=response_data)
