"""Main FastAPI application for the code runner."""

# Standard library imports
import asyncio
from contextlib import asynccontextmanager

# Third-party imports
import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Local application imports
from . import __version__
from .api import admin, exec, health, interactive, terminal
from .config import settings
from .dependencies import (
    get_interactive_manager,
    get_sandbox_manager,
    get_session_registry,
    get_terminal_manager,
    get_workspace_manager,
)
from .middleware import RequestLoggingMiddleware, SecurityMiddleware
from .utils.error_handlers import register_exception_handlers
from .utils.logging import setup_logging

# Setup logging
setup_logging()
logger = structlog.get_logger()


async def _output_retention_loop() -> None:
    """Delete stored program outputs older than the retention window."""
    workspace = get_workspace_manager()
    interval = settings.session_sweep_interval_minutes * 60
    while True:
        try:
            removed = await asyncio.to_thread(workspace.cleanup_expired)
            if removed:
                logger.info("Expired outputs removed", count=removed)
        except OSError as e:
            logger.error("Output retention sweep failed", error=str(e))
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info(
        "Starting code runner",
        version=__version__,
        sandbox_backend=settings.sandbox_backend,
    )

    sandbox_manager = get_sandbox_manager()
    if not sandbox_manager.is_available():
        # Keep serving so health checks can report the problem
        logger.error(
            "Sandbox backend unavailable",
            error=sandbox_manager.get_initialization_error(),
        )
    if settings.api_debug:
        logger.warning("Debug mode is enabled - disable in production")

    registry = get_session_registry()
    registry.start()
    retention_task = asyncio.create_task(_output_retention_loop())
    logger.info("Code runner startup completed")

    yield

    logger.info("Shutting down code runner")
    retention_task.cancel()
    await asyncio.gather(retention_task, return_exceptions=True)

    await get_terminal_manager().shutdown()
    await get_interactive_manager().shutdown()
    await registry.stop()
    closed = await registry.close_all()
    logger.info("Code runner shutdown completed", sessions_closed=closed)


app = FastAPI(
    title="Code Runner API",
    description="Sandboxed code execution and interactive terminals",
    version=__version__,
    docs_url="/docs" if settings.enable_docs else None,
    redoc_url="/redoc" if settings.enable_docs else None,
    debug=settings.api_debug,
    lifespan=lifespan,
)

# Add middleware (the last one added runs first)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityMiddleware)

if settings.enable_cors:
    origins = settings.cors_origins if settings.cors_origins else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["Content-Disposition"],
    )
    logger.info("CORS enabled", origins=origins)

register_exception_handlers(app)

# Include routers (authentication handled by middleware)
app.include_router(exec.router, tags=["exec"])
app.include_router(interactive.router)
app.include_router(terminal.router)
app.include_router(health.router, tags=["health"])
app.include_router(admin.router, prefix="/api/v1")


def run_server():
    api = settings.api
    logger.info(f"Starting HTTP server on {api.api_host}:{api.api_port}")
    uvicorn.run(
        "coderunner.main:app",
        host=api.api_host,
        port=api.api_port,
        reload=api.api_reload,
        log_level=settings.log_level.lower(),
        access_log=settings.enable_access_logs,
        timeout_keep_alive=120,
    )


if __name__ == "__main__":
    run_server()
