"""Code execution, language listing and generated-file endpoints."""

# Standard library imports
import asyncio
from typing import List, Optional

# Third-party imports
import structlog
from fastapi import APIRouter, File, Form, UploadFile
from fastapi.responses import FileResponse

# Local application imports
from ..dependencies import (
    LanguageRegistryDep,
    OptionalUser,
    OrchestratorDep,
    WorkspaceManagerDep,
)
from ..models import (
    ExecuteCodeRequest,
    ExecutionRequest,
    ExecutionResult,
    FileListResponse,
    LanguageInfo,
    UploadedFile,
)

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("/exec", response_model=ExecutionResult)
async def execute_code(
    request: ExecuteCodeRequest,
    orchestrator: OrchestratorDep,
    user_id: OptionalUser,
):
    """Run a program and return its output.

    Failed outcomes (compile error, non-zero exit, timeout, resource limit)
    come back as error responses that still carry the partial result.
    """
    return await orchestrator.execute(
        ExecutionRequest(
            language=request.language,
            code=request.code,
            stdin=request.stdin,
            timeout_ms=request.timeout_ms,
            session_id=request.session_id,
            user_id=user_id,
        )
    )


@router.post("/exec/files", response_model=ExecutionResult)
async def execute_code_with_files(
    orchestrator: OrchestratorDep,
    user_id: OptionalUser,
    language: str = Form(...),
    code: str = Form(...),
    session_id: str = Form(...),
    stdin: Optional[str] = Form(None),
    timeout_ms: Optional[int] = Form(None),
    files: List[UploadFile] = File(default=[]),
):
    """Run a program with input files staged into its working directory."""
    uploads = []
    for upload in files:
        uploads.append(
            UploadedFile(name=upload.filename or "", content=await upload.read())
        )

    logger.debug(
        "Execution with files requested",
        session_id=session_id[:12],
        file_count=len(uploads),
    )
    return await orchestrator.execute_with_files(
        ExecutionRequest(
            language=language,
            code=code,
            stdin=stdin,
            files=uploads,
            timeout_ms=timeout_ms,
            session_id=session_id,
            user_id=user_id,
        )
    )


@router.get("/languages", response_model=List[LanguageInfo])
async def list_languages(languages: LanguageRegistryDep):
    return [
        LanguageInfo(
            id=plugin.id,
            name=plugin.name,
            version=plugin.version,
            extension=plugin.extension,
            aliases=list(plugin.aliases),
            compiled=plugin.needs_compilation,
        )
        for plugin in languages.list()
    ]


@router.get("/sessions/{session_id}/files", response_model=FileListResponse)
async def list_session_files(
    session_id: str, workspace: WorkspaceManagerDep, user_id: OptionalUser
):
    """Stored outputs of one of the caller's sessions."""
    files = await asyncio.to_thread(
        workspace.list_session_files, session_id, user_id=user_id
    )
    return FileListResponse(
        session_id=session_id,
        files=files,
        total_count=len(files),
        total_size=sum(f.size for f in files),
    )


@router.get("/sessions/{session_id}/files/{filename:path}")
async def download_session_file(
    session_id: str,
    filename: str,
    workspace: WorkspaceManagerDep,
    user_id: OptionalUser,
):
    """Download one generated file; paths outside the session are rejected."""
    path = await asyncio.to_thread(
        workspace.resolve_session_file, session_id, filename, user_id=user_id
    )
    return FileResponse(
        path, media_type="application/octet-stream", filename=path.name
    )
