"""Workspace Manager - input staging and output collection.

Uploads are checked as a whole before anything touches the sandbox, so an
execution never starts with a partial file set. After the program exits the
working directory is walked and every file that was not an input becomes a
generated file, persisted under ``uploads_dir/<session_id>/`` for download.
"""

# Standard library imports
import os
import re
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

# Third-party imports
import structlog

# Local application imports
from ..config import settings
from ..models.errors import (
    ErrorDetail,
    SessionFileNotFoundError,
    SessionNotFoundError,
    ValidationError,
)
from ..models.files import GeneratedFile, SessionFileInfo, UploadedFile
from ..utils.id_generator import is_valid_session_id
from .sandbox import SandboxInfo, SandboxManager

logger = structlog.get_logger(__name__)

# Letters, digits, dot, dash, underscore and space; no leading dot
_SAFE_FILENAME = re.compile(r"^[A-Za-z0-9_\-][A-Za-z0-9_.\- ]*$")

# One file per session holding its owner; session ids never start with a dot
_OWNERS_DIR = ".owners"


class WorkspaceManager:
    """Validates, stages and collects the files of one execution."""

    def __init__(
        self,
        sandbox_manager: SandboxManager,
        uploads_dir: Optional[str] = None,
    ):
        self._sandbox_manager = sandbox_manager
        self._uploads_dir = Path(uploads_dir or settings.uploads_dir)

    @property
    def uploads_dir(self) -> Path:
        return self._uploads_dir

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def validate_uploads(
        self, files: List[UploadedFile], reserved_names: Iterable[str] = ()
    ) -> None:
        """Check every upload and reject the whole request on any problem.

        Args:
            files: Uploaded files of one request
            reserved_names: Names the upload may not take (the program source)

        Raises:
            ValidationError: Listing every rejected file
        """
        details: List[ErrorDetail] = []
        max_bytes = settings.max_file_size_bytes
        reserved = set(reserved_names)

        if len(files) > settings.max_files_per_request:
            details.append(
                ErrorDetail(
                    field="files",
                    message=(
                        f"Too many files ({len(files)}, "
                        f"max {settings.max_files_per_request})"
                    ),
                    code="too_many_files",
                )
            )

        seen: Set[str] = set()
        for upload in files:
            problem = self._check_upload(upload, max_bytes, reserved, seen)
            if problem:
                details.append(
                    ErrorDetail(field=upload.name, message=problem[1], code=problem[0])
                )
            seen.add(upload.name)

        if details:
            logger.info(
                "Rejected uploads",
                file_count=len(files),
                problems=[d.code for d in details],
            )
            raise ValidationError(message="File upload rejected", details=details)

    @staticmethod
    def _check_upload(
        upload: UploadedFile, max_bytes: int, reserved: Set[str], seen: Set[str]
    ) -> Optional[Tuple[str, str]]:
        name = upload.name
        if (
            not name
            or len(name) > settings.max_filename_length
            or not _SAFE_FILENAME.match(name)
        ):
            return "invalid_filename", f"Invalid file name: {name!r}"
        if not settings.is_file_allowed(name):
            return "file_type_not_allowed", f"File type not allowed: {name}"
        if upload.size > max_bytes:
            return (
                "file_too_large",
                f"File too large: {name} ({upload.size} bytes, max {max_bytes})",
            )
        if name in reserved:
            return "reserved_filename", f"File name is reserved: {name}"
        if name in seen:
            return "duplicate_filename", f"Duplicate file name: {name}"
        return None

    def stage(self, sandbox_info: SandboxInfo, files: List[UploadedFile]) -> List[Path]:
        """Write validated uploads into the sandbox working directory."""
        staged = [
            self._sandbox_manager.write_file(sandbox_info, f.name, f.content)
            for f in files
        ]
        if staged:
            logger.debug(
                "Staged input files",
                sandbox_id=sandbox_info.sandbox_id[:12],
                count=len(staged),
            )
        return staged

    # ------------------------------------------------------------------
    # Outputs
    # ------------------------------------------------------------------

    def collect(
        self,
        work_dir: Path,
        known_input_names: Iterable[str],
        session_id: Optional[str] = None,
    ) -> List[GeneratedFile]:
        """Find files the program created and optionally persist them.

        Every regular file under ``work_dir`` whose relative path is not in
        ``known_input_names`` is reported. Files over the size limit are
        truncated to it and flagged rather than dropped. Symlinks are
        never followed.
        """
        if not work_dir.exists():
            return []

        known = set(known_input_names)
        max_bytes = settings.max_file_size_bytes
        target_dir = self.session_dir(session_id) if session_id else None
        generated: List[GeneratedFile] = []

        for root, dirs, names in os.walk(work_dir):
            dirs.sort()
            for name in sorted(names):
                path = Path(root) / name
                rel_path = path.relative_to(work_dir).as_posix()
                if rel_path in known or path.is_symlink() or not path.is_file():
                    continue

                size = path.stat().st_size
                truncated = size > max_bytes
                if target_dir is not None:
                    self._persist(path, target_dir / rel_path, max_bytes)

                generated.append(
                    GeneratedFile(
                        name=name,
                        size=min(size, max_bytes),
                        path=rel_path,
                        truncated=truncated,
                    )
                )
                if truncated:
                    logger.warning(
                        "Generated file truncated",
                        path=rel_path,
                        size=size,
                        limit=max_bytes,
                    )

        if generated:
            logger.info(
                "Collected generated files",
                session_id=session_id[:12] if session_id else "none",
                count=len(generated),
            )
        return generated

    @staticmethod
    def _persist(source: Path, dest: Path, max_bytes: int) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        with source.open("rb") as src, dest.open("wb") as dst:
            remaining = max_bytes
            while remaining > 0:
                chunk = src.read(min(65536, remaining))
                if not chunk:
                    break
                dst.write(chunk)
                remaining -= len(chunk)

    # ------------------------------------------------------------------
    # Stored session files
    # ------------------------------------------------------------------

    def session_dir(self, session_id: str) -> Path:
        if not is_valid_session_id(session_id):
            raise SessionNotFoundError(session_id)
        return self._uploads_dir / session_id

    def _owner_path(self, session_id: str) -> Path:
        self.session_dir(session_id)
        return self._uploads_dir / _OWNERS_DIR / session_id

    def session_owner(self, session_id: str) -> Optional[str]:
        """Owner recorded for a session's outputs; "" is anonymous, None unclaimed."""
        try:
            return self._owner_path(session_id).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def claim_session(self, session_id: str, user_id: Optional[str]) -> None:
        """Record ``user_id`` as the owner of a session's stored outputs.

        Raises:
            SessionNotFoundError: Another caller already owns the session
        """
        path = self._owner_path(session_id)
        owner = self.session_owner(session_id)
        if owner is None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(user_id or "", encoding="utf-8")
        elif owner != (user_id or ""):
            logger.warning(
                "Rejected access to another user's session",
                session_id=session_id[:12],
                user_id=user_id,
            )
            raise SessionNotFoundError(session_id)

    def _owned_dir(self, session_id: str, user_id: Optional[str]) -> Path:
        # Other users' outputs are indistinguishable from missing ones
        directory = self.session_dir(session_id)
        owner = self.session_owner(session_id)
        if owner is not None and owner != (user_id or ""):
            raise SessionNotFoundError(session_id)
        if not directory.is_dir():
            raise SessionNotFoundError(session_id)
        return directory

    def list_session_files(
        self, session_id: str, user_id: Optional[str] = None
    ) -> List[SessionFileInfo]:
        """List the stored outputs of a session.

        Raises:
            SessionNotFoundError: Nothing was ever stored for the session, or
                it belongs to another caller
        """
        directory = self._owned_dir(session_id, user_id)

        files = []
        for path in sorted(p for p in directory.rglob("*") if p.is_file()):
            stat = path.stat()
            files.append(
                SessionFileInfo(
                    name=path.name,
                    size=stat.st_size,
                    path=path.relative_to(directory).as_posix(),
                    modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                )
            )
        return files

    def resolve_session_file(
        self, session_id: str, filename: str, user_id: Optional[str] = None
    ) -> Path:
        """Host path of a stored file, refusing anything outside the session."""
        directory = self._owned_dir(session_id, user_id)

        base = directory.resolve()
        candidate = (directory / filename).resolve()
        if candidate == base or not candidate.is_relative_to(base):
            logger.warning(
                "Rejected session file path",
                session_id=session_id[:12],
                filename=filename,
            )
            raise SessionFileNotFoundError(session_id, filename)
        if not candidate.is_file():
            raise SessionFileNotFoundError(session_id, filename)
        return candidate

    def read_session_file(
        self, session_id: str, filename: str, user_id: Optional[str] = None
    ) -> bytes:
        return self.resolve_session_file(session_id, filename, user_id).read_bytes()

    def delete_session_files(self, session_id: str) -> bool:
        directory = self.session_dir(session_id)
        self._owner_path(session_id).unlink(missing_ok=True)
        if not directory.exists():
            return False
        shutil.rmtree(directory)
        return True

    def cleanup_expired(self, retention_minutes: Optional[int] = None) -> int:
        """Remove session output directories older than the retention window.

        Owner records go with their directory, or on their own once they
        are past the window with nothing stored.

        Returns:
            Number of session directories removed
        """
        if retention_minutes is None:
            retention_minutes = settings.output_retention_minutes
        if not self._uploads_dir.exists():
            return 0

        cutoff = time.time() - retention_minutes * 60
        removed = 0
        for directory in self._uploads_dir.iterdir():
            if not directory.is_dir() or directory.name == _OWNERS_DIR:
                continue
            try:
                if directory.stat().st_mtime < cutoff:
                    shutil.rmtree(directory)
                    (self._uploads_dir / _OWNERS_DIR / directory.name).unlink(
                        missing_ok=True
                    )
                    removed += 1
            except OSError as e:
                logger.warning(
                    "Failed to remove expired outputs",
                    directory=directory.name,
                    error=str(e),
                )

        owners_dir = self._uploads_dir / _OWNERS_DIR
        if owners_dir.is_dir():
            for record in owners_dir.iterdir():
                try:
                    stale = record.stat().st_mtime < cutoff
                    if stale and not (self._uploads_dir / record.name).exists():
                        record.unlink()
                except OSError as e:
                    logger.warning(
                        "Failed to remove owner record",
                        session_id=record.name[:12],
                        error=str(e),
                    )

        if removed:
            logger.info("Removed expired session outputs", count=removed)
        return removed
