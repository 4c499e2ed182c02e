"""File data models for uploads and generated outputs."""

# Standard library imports
from dataclasses import dataclass
from datetime import datetime
from typing import List

# Third-party imports
from pydantic import BaseModel, Field


@dataclass(frozen=True)
class UploadedFile:
    """An input file supplied with an execution request."""

    name: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


class GeneratedFile(BaseModel):
    """A file the program created in its working directory."""

    name: str = Field(..., description="File name")
    size: int = Field(..., description="Stored size in bytes")
    path: str = Field(..., description="Path relative to the working directory")
    truncated: bool = Field(
        default=False, description="True when the file exceeded the size limit"
    )


class SessionFileInfo(BaseModel):
    """A stored output file available for download."""

    name: str
    size: int
    path: str
    modified_at: datetime


class FileListResponse(BaseModel):
    """Response model for listing a session's files."""

    session_id: str
    files: List[SessionFileInfo]
    total_count: int
    total_size: int = Field(..., description="Total size of all files in bytes")
