"""Interactive terminal configuration."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TerminalConfig(BaseSettings):
    """Pseudo-terminal session settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    terminal_shell: str = Field(default="/bin/bash")
    terminal_cols: int = Field(default=80, ge=10, le=200)
    terminal_rows: int = Field(default=24, ge=5, le=100)
    terminal_term: str = Field(default="xterm-color")
    terminal_workdir_base: str = Field(default="/var/lib/coderunner/terminals")
    terminal_image: str = Field(default="bash:5.2")
    terminal_session_timeout_minutes: int = Field(default=30, ge=1, le=1440)
    terminal_idle_timeout_minutes: int = Field(default=30, ge=1, le=1440)
    terminal_max_sessions: int = Field(default=100, ge=1, le=10_000)
    terminal_max_sessions_per_user: int = Field(default=5, ge=1, le=100)
    terminal_command_timeout_seconds: int = Field(default=30, ge=1, le=600)
    terminal_output_buffer_bytes: int = Field(default=1024 * 1024, ge=1024)
    terminal_max_command_length: int = Field(default=1000, ge=1, le=100_000)
    terminal_history_size: int = Field(default=100, ge=1, le=10_000)
    terminal_suspicious_log_size: int = Field(default=50, ge=1, le=10_000)

    @property
    def session_timeout_seconds(self) -> int:
        return self.terminal_session_timeout_minutes * 60
