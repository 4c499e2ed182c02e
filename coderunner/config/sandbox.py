"""Sandbox isolation configuration."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SandboxConfig(BaseSettings):
    """Isolation backend settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    sandbox_backend: str = Field(default="nsjail")
    nsjail_binary: str = Field(default="nsjail")
    docker_binary: str = Field(default="docker")
    sandbox_base_dir: str = Field(default="/var/lib/coderunner/sandboxes")
    sandbox_tmpfs_size_mb: int = Field(default=64, ge=8, le=1024)
    sandbox_kill_grace_seconds: float = Field(default=1.0, ge=0.1, le=10.0)
    sandbox_cgroups_enabled: bool = Field(default=False)
    sandbox_network_enabled: bool = Field(default=False)
