"""Resource limits configuration."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ResourcesConfig(BaseSettings):
    """Resource limits for execution and files."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    # Execution Limits
    default_timeout_ms: int = Field(default=10_000, ge=100, le=300_000)
    max_timeout_ms: int = Field(default=60_000, ge=100, le=300_000)
    max_code_length: int = Field(default=50_000, ge=1)
    max_stdin_length: int = Field(default=1_000, ge=0)
    max_output_bytes: int = Field(default=1024 * 1024, ge=1024)
    max_concurrent_executions: int = Field(default=10, ge=1, le=200)
    max_active_executions_per_user: int = Field(default=1, ge=1, le=50)

    # File Limits
    max_file_size_mb: int = Field(default=10, ge=1, le=100)
    max_files_per_request: int = Field(default=20, ge=1, le=200)
    max_filename_length: int = Field(default=255, ge=1, le=255)

    # Generated file retention
    uploads_dir: str = Field(default="/var/lib/coderunner/uploads")
    output_retention_minutes: int = Field(default=60, ge=1, le=10_080)

    # Interactive programs
    interactive_session_timeout_seconds: int = Field(default=300, ge=5, le=3600)
    interactive_max_sessions: int = Field(default=20, ge=1, le=500)
    interactive_max_sessions_per_user: int = Field(default=3, ge=1, le=50)

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024
