"""Configuration management for the code runner.

A single Settings class holds every option as a flat, environment-backed
field and exposes logical groups as read-only views.

Usage:
    from coderunner.config import settings

    # Grouped access
    settings.sandbox.sandbox_backend
    settings.terminal.session_timeout_seconds

    # Flat access
    settings.sandbox_backend
    settings.max_file_size_mb
"""

import os
import secrets
from pathlib import Path
from typing import List, Optional

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Import grouped configurations
from .api import APIConfig
from .logging import LoggingConfig
from .resources import ResourcesConfig
from .sandbox import SandboxConfig
from .terminal import TerminalConfig
from .languages import (
    LANGUAGES,
    ForbiddenPattern,
    LanguagePluginConfig,
    LanguageRegistry,
    ResourceCeiling,
    StructuralRule,
    get_language,
    get_supported_languages,
    is_supported_language,
    language_registry,
    resolve_language_id,
)

SANDBOX_BACKENDS = ("nsjail", "docker", "process")


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    # API Configuration
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000, ge=1, le=65535)
    api_debug: bool = Field(default=False)
    api_reload: bool = Field(default=False)

    # Authentication Configuration
    api_key: str = Field(
        default_factory=lambda: secrets.token_urlsafe(24),
        min_length=16,
    )
    api_keys: Optional[str] = Field(default=None)
    master_api_key: Optional[str] = Field(
        default=None,
        description="Master API key for admin endpoints",
    )
    user_id_header: str = Field(
        default="x-user-id",
        description="Header carrying the user id verified by the upstream auth layer",
    )

    # Sandbox Configuration
    sandbox_backend: str = Field(
        default="nsjail",
        description="Isolation backend: nsjail, docker or process",
    )
    nsjail_binary: str = Field(default="nsjail", description="Path to nsjail binary")
    docker_binary: str = Field(default="docker", description="Path to docker CLI")
    sandbox_base_dir: str = Field(
        default="/var/lib/coderunner/sandboxes",
        description="Root directory for all sandbox working directories",
    )
    sandbox_tmpfs_size_mb: int = Field(
        default=64,
        ge=8,
        le=1024,
        description="Size of the /tmp mount inside sandboxes (MB)",
    )
    sandbox_kill_grace_seconds: float = Field(
        default=1.0,
        ge=0.1,
        le=10.0,
        description="Time allowed for a killed sandbox to exit before giving up on it",
    )
    sandbox_cgroups_enabled: bool = Field(
        default=False,
        description="Enforce memory/CPU/pids ceilings through nsjail cgroups",
    )
    sandbox_network_enabled: bool = Field(default=False)

    # Resource Limits - Execution
    default_timeout_ms: int = Field(default=10_000, ge=100, le=300_000)
    max_timeout_ms: int = Field(default=60_000, ge=100, le=300_000)
    max_code_length: int = Field(default=50_000, ge=1)
    max_stdin_length: int = Field(default=1_000, ge=0)
    max_output_bytes: int = Field(default=1024 * 1024, ge=1024)
    max_concurrent_executions: int = Field(default=10, ge=1, le=200)
    max_active_executions_per_user: int = Field(default=1, ge=1, le=50)

    # Resource Limits - Files
    max_file_size_mb: int = Field(default=10, ge=1, le=100)
    max_files_per_request: int = Field(default=20, ge=1, le=200)
    max_filename_length: int = Field(default=255, ge=1, le=255)
    uploads_dir: str = Field(
        default="/var/lib/coderunner/uploads",
        description="Where generated files are kept for download",
    )
    output_retention_minutes: int = Field(default=60, ge=1, le=10_080)

    # Interactive programs
    interactive_session_timeout_seconds: int = Field(default=300, ge=5, le=3600)
    interactive_max_sessions: int = Field(default=20, ge=1, le=500)
    interactive_max_sessions_per_user: int = Field(default=3, ge=1, le=50)

    # Terminal Configuration
    terminal_shell: str = Field(default="/bin/bash")
    terminal_cols: int = Field(default=80, ge=10, le=200)
    terminal_rows: int = Field(default=24, ge=5, le=100)
    terminal_term: str = Field(default="xterm-color")
    terminal_workdir_base: str = Field(default="/var/lib/coderunner/terminals")
    terminal_image: str = Field(
        default="bash:5.2", description="Container image for terminals (docker backend)"
    )
    terminal_session_timeout_minutes: int = Field(default=30, ge=1, le=1440)
    terminal_idle_timeout_minutes: int = Field(default=30, ge=1, le=1440)
    terminal_max_sessions: int = Field(default=100, ge=1, le=10_000)
    terminal_max_sessions_per_user: int = Field(default=5, ge=1, le=100)
    terminal_command_timeout_seconds: int = Field(default=30, ge=1, le=600)
    terminal_output_buffer_bytes: int = Field(default=1024 * 1024, ge=1024)
    terminal_max_command_length: int = Field(default=1000, ge=1, le=100_000)
    terminal_history_size: int = Field(default=100, ge=1, le=10_000)
    terminal_suspicious_log_size: int = Field(default=50, ge=1, le=10_000)

    # Session Registry Configuration
    session_sweep_interval_minutes: int = Field(default=5, ge=1, le=1440)
    session_idle_timeout_minutes: int = Field(default=30, ge=1, le=1440)

    # Security Configuration
    allowed_file_extensions: List[str] = Field(
        default_factory=lambda: [
            # Source code
            ".py",
            ".js",
            ".ts",
            ".java",
            ".cpp",
            ".c",
            ".cs",
            ".go",
            ".rs",
            ".php",
            ".rb",
            # Web
            ".html",
            ".css",
            # Data and text
            ".json",
            ".xml",
            ".txt",
            ".md",
            ".sql",
            ".csv",
            ".dat",
            ".log",
            # Scripts and config
            ".sh",
            ".bat",
            ".cfg",
            ".ini",
            ".yml",
            ".yaml",
        ]
    )

    # Logging Configuration
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")
    log_file: Optional[str] = Field(default=None)
    enable_access_logs: bool = Field(default=True)

    # Development Configuration
    enable_cors: bool = Field(default=False)
    cors_origins: List[str] = Field(default_factory=list)
    enable_docs: bool = Field(default=True)

    # ========================================================================
    # VALIDATORS
    # ========================================================================

    @field_validator("api_key")
    @classmethod
    def warn_auto_generated_api_key(cls, v):
        """Log a warning if API_KEY was not explicitly set."""
        if not os.environ.get("API_KEY"):
            _config_logger = structlog.get_logger("config")
            _config_logger.warning(
                "API_KEY not set in environment; using auto-generated key. "
                "Set API_KEY explicitly for production use."
            )
        return v

    @field_validator("api_keys")
    @classmethod
    def parse_api_keys(cls, v):
        """Normalize the comma-separated key list."""
        if not v:
            return None
        return ",".join(key.strip() for key in v.split(",") if key.strip())

    @field_validator("sandbox_backend")
    @classmethod
    def validate_sandbox_backend(cls, v):
        normalized = v.lower().strip()
        if normalized not in SANDBOX_BACKENDS:
            raise ValueError(
                f"sandbox_backend must be one of {', '.join(SANDBOX_BACKENDS)}"
            )
        return normalized

    @field_validator("allowed_file_extensions")
    @classmethod
    def normalize_extensions(cls, v):
        return [ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in v]

    # ========================================================================
    # GROUPED CONFIG ACCESS
    # ========================================================================

    @property
    def api(self) -> APIConfig:
        """Access API configuration group."""
        return APIConfig(
            api_host=self.api_host,
            api_port=self.api_port,
            api_debug=self.api_debug,
            api_reload=self.api_reload,
            enable_cors=self.enable_cors,
            cors_origins=self.cors_origins,
            enable_docs=self.enable_docs,
            user_id_header=self.user_id_header,
        )

    @property
    def sandbox(self) -> SandboxConfig:
        """Access sandbox configuration group."""
        return SandboxConfig(
            sandbox_backend=self.sandbox_backend,
            nsjail_binary=self.nsjail_binary,
            docker_binary=self.docker_binary,
            sandbox_base_dir=self.sandbox_base_dir,
            sandbox_tmpfs_size_mb=self.sandbox_tmpfs_size_mb,
            sandbox_kill_grace_seconds=self.sandbox_kill_grace_seconds,
            sandbox_cgroups_enabled=self.sandbox_cgroups_enabled,
            sandbox_network_enabled=self.sandbox_network_enabled,
        )

    @property
    def resources(self) -> ResourcesConfig:
        """Access resources configuration group."""
        return ResourcesConfig(
            default_timeout_ms=self.default_timeout_ms,
            max_timeout_ms=self.max_timeout_ms,
            max_code_length=self.max_code_length,
            max_stdin_length=self.max_stdin_length,
            max_output_bytes=self.max_output_bytes,
            max_concurrent_executions=self.max_concurrent_executions,
            max_active_executions_per_user=self.max_active_executions_per_user,
            max_file_size_mb=self.max_file_size_mb,
            max_files_per_request=self.max_files_per_request,
            max_filename_length=self.max_filename_length,
            uploads_dir=self.uploads_dir,
            output_retention_minutes=self.output_retention_minutes,
            interactive_session_timeout_seconds=self.interactive_session_timeout_seconds,
            interactive_max_sessions=self.interactive_max_sessions,
            interactive_max_sessions_per_user=self.interactive_max_sessions_per_user,
        )

    @property
    def terminal(self) -> TerminalConfig:
        """Access terminal configuration group."""
        return TerminalConfig(
            terminal_shell=self.terminal_shell,
            terminal_cols=self.terminal_cols,
            terminal_rows=self.terminal_rows,
            terminal_term=self.terminal_term,
            terminal_workdir_base=self.terminal_workdir_base,
            terminal_image=self.terminal_image,
            terminal_session_timeout_minutes=self.terminal_session_timeout_minutes,
            terminal_idle_timeout_minutes=self.terminal_idle_timeout_minutes,
            terminal_max_sessions=self.terminal_max_sessions,
            terminal_max_sessions_per_user=self.terminal_max_sessions_per_user,
            terminal_command_timeout_seconds=self.terminal_command_timeout_seconds,
            terminal_output_buffer_bytes=self.terminal_output_buffer_bytes,
            terminal_max_command_length=self.terminal_max_command_length,
            terminal_history_size=self.terminal_history_size,
            terminal_suspicious_log_size=self.terminal_suspicious_log_size,
        )

    @property
    def logging(self) -> LoggingConfig:
        """Access logging configuration group."""
        return LoggingConfig(
            log_level=self.log_level,
            log_format=self.log_format,
            log_file=self.log_file,
            enable_access_logs=self.enable_access_logs,
        )

    # ========================================================================
    # HELPER METHODS
    # ========================================================================

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    def get_valid_api_keys(self) -> List[str]:
        """Get all valid API keys including the primary key."""
        keys = [self.api_key]
        if self.api_keys:
            keys.extend(k for k in self.api_keys.split(",") if k)
        return keys

    def is_file_allowed(self, filename: str) -> bool:
        """Check if a file is allowed based on its extension.

        Files without an extension are accepted.
        """
        extension = Path(filename).suffix.lower()
        return not extension or extension in self.allowed_file_extensions


# Global settings instance
settings = Settings()

__all__ = [
    "Settings",
    "settings",
    "SANDBOX_BACKENDS",
    # Grouped configs
    "APIConfig",
    "LoggingConfig",
    "ResourcesConfig",
    "SandboxConfig",
    "TerminalConfig",
    # Language registry
    "LANGUAGES",
    "ForbiddenPattern",
    "LanguagePluginConfig",
    "LanguageRegistry",
    "ResourceCeiling",
    "StructuralRule",
    "get_language",
    "get_supported_languages",
    "is_supported_language",
    "language_registry",
    "resolve_language_id",
]
