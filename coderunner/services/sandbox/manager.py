"""Sandbox lifecycle management."""

import asyncio
import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import structlog

from ...config import LanguagePluginConfig, ResourceCeiling, settings
from .executor import SandboxExecutor
from .nsjail import SandboxInfo

logger = structlog.get_logger(__name__)


class SandboxManager:
    """Manages sandbox lifecycle operations.

    Creates sandbox directories on the host filesystem and hands out the
    executor that runs commands in them with the configured backend.
    """

    def __init__(
        self,
        executor: Optional[SandboxExecutor] = None,
        base_dir: Optional[str] = None,
        backend: Optional[str] = None,
    ):
        """Initialize the sandbox manager."""
        self._executor = executor or SandboxExecutor()
        self._base_dir = Path(base_dir or settings.sandbox_base_dir)
        self._backend = backend or settings.sandbox_backend
        self._initialization_error: Optional[str] = None

        # Ensure base directory exists
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._initialization_error = (
                f"Failed to create sandbox base directory {self._base_dir}: {e}"
            )
            logger.error(
                "Sandbox base directory creation failed",
                base_dir=str(self._base_dir),
                error=str(e),
            )

    @property
    def executor(self) -> SandboxExecutor:
        """Get the sandbox executor."""
        return self._executor

    @property
    def backend(self) -> str:
        return self._backend

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def is_available(self) -> bool:
        """Check if the backend's binary is available."""
        if self._backend == "nsjail":
            return shutil.which(settings.nsjail_binary) is not None
        if self._backend == "docker":
            return shutil.which(settings.docker_binary) is not None
        return True

    def get_initialization_error(self) -> Optional[str]:
        """Get initialization error if any."""
        if self._initialization_error:
            return self._initialization_error
        if not self.is_available():
            binary = (
                settings.nsjail_binary
                if self._backend == "nsjail"
                else settings.docker_binary
            )
            return (
                f"{self._backend} binary not found: {binary}. "
                f"Install it or choose another SANDBOX_BACKEND."
            )
        return None

    def create_sandbox(
        self,
        session_id: str,
        language: str,
        ceiling: Optional[ResourceCeiling] = None,
        image: Optional[str] = None,
    ) -> SandboxInfo:
        """Create a new sandbox directory.

        Args:
            session_id: Session identifier
            language: Language id, or "terminal" for shell sessions
            ceiling: Resource ceiling applied to everything run in it
            image: Container image (docker backend)

        Returns:
            SandboxInfo with paths to the sandbox directories
        """
        sandbox_id = uuid.uuid4().hex
        sandbox_dir = self._base_dir / sandbox_id
        data_dir = sandbox_dir / "data"

        try:
            data_dir.mkdir(parents=True, exist_ok=True)
            (sandbox_dir / "tmp").mkdir(exist_ok=True)

            # The program runs as an unprivileged user inside isolated backends.
            # Each sandbox has its own directory so world-writable is safe.
            os.chmod(str(data_dir), 0o777)
        except OSError as e:
            logger.error(
                "Failed to create sandbox directory",
                sandbox_id=sandbox_id,
                error=str(e),
            )
            raise RuntimeError(f"Failed to create sandbox: {e}")

        created_at = datetime.now(timezone.utc)
        labels = {
            "com.coderunner.managed": "true",
            "com.coderunner.session-id": session_id,
            "com.coderunner.language": language or "unknown",
            "com.coderunner.created-at": created_at.isoformat(),
        }

        info = SandboxInfo(
            sandbox_id=sandbox_id,
            sandbox_dir=sandbox_dir,
            data_dir=data_dir,
            language=language,
            session_id=session_id,
            created_at=created_at,
            backend=self._backend,
            ceiling=ceiling or ResourceCeiling(),
            image=image,
            labels=labels,
        )

        logger.info(
            "Created sandbox",
            sandbox_id=sandbox_id[:12],
            session_id=session_id[:12] if session_id else "none",
            language=language,
            backend=self._backend,
        )

        return info

    def create_for_language(
        self, session_id: str, language: LanguagePluginConfig
    ) -> SandboxInfo:
        """Create a sandbox pinned to a language's image and ceiling."""
        return self.create_sandbox(
            session_id=session_id,
            language=language.id,
            ceiling=language.resource_ceiling,
            image=language.image,
        )

    async def destroy_sandbox(self, sandbox_info: SandboxInfo) -> bool:
        """Destroy a sandbox: leftover containers first, then its directory.

        Args:
            sandbox_info: Sandbox to destroy

        Returns:
            True if successful, False otherwise
        """
        try:
            await self._executor.remove_containers(sandbox_info)
        except OSError as e:
            logger.warning(
                "Failed to remove sandbox containers",
                sandbox_id=sandbox_info.sandbox_id[:12],
                error=str(e),
            )
        try:
            if sandbox_info.sandbox_dir.exists():
                await asyncio.to_thread(shutil.rmtree, str(sandbox_info.sandbox_dir))
            logger.debug(
                "Destroyed sandbox",
                sandbox_id=sandbox_info.sandbox_id[:12],
            )
            return True
        except OSError as e:
            logger.warning(
                "Failed to destroy sandbox",
                sandbox_id=sandbox_info.sandbox_id[:12],
                error=str(e),
            )
            return False

    def write_file(
        self, sandbox_info: SandboxInfo, filename: str, content: bytes
    ) -> Path:
        """Write file content into the sandbox working directory.

        Args:
            sandbox_info: Target sandbox
            filename: Bare file name (no directories)
            content: File content as bytes

        Returns:
            Host path of the written file
        """
        name = Path(filename).name
        if not name or name != filename:
            raise ValueError(f"Invalid sandbox file name: {filename!r}")
        file_path = sandbox_info.data_dir / name
        file_path.write_bytes(content)
        os.chmod(str(file_path), 0o644)
        return file_path

    def list_sandboxes(self) -> List[Path]:
        """Sandbox directories currently on disk."""
        if not self._base_dir.exists():
            return []
        return [p for p in self._base_dir.iterdir() if p.is_dir()]
