"""Unit tests for settings parsing and grouped config views."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from coderunner.config import Settings, settings


def _settings(**overrides):
    values = {"api_key": "a-long-enough-test-key"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestValidators:
    """Test field normalization and rejection."""

    def test_api_keys_normalized(self):
        """Test extra keys are trimmed and empties dropped."""
        config = _settings(api_keys=" k1 , ,k2,")
        assert config.api_keys == "k1,k2"
        assert config.get_valid_api_keys() == ["a-long-enough-test-key", "k1", "k2"]

    @pytest.mark.parametrize("value,expected", [("NSJAIL", "nsjail"), (" docker ", "docker")])
    def test_backend_normalized(self, value, expected):
        """Test backend names are case and space insensitive."""
        assert _settings(sandbox_backend=value).sandbox_backend == expected

    def test_unknown_backend(self):
        """Test an unknown backend is rejected at load time."""
        with pytest.raises(PydanticValidationError):
            _settings(sandbox_backend="chroot")

    def test_short_api_key(self):
        """Test very short API keys are refused."""
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, api_key="short")

    def test_extensions_normalized(self):
        """Test extensions get a leading dot and lower case."""
        config = _settings(allowed_file_extensions=["CSV", ".Txt"])
        assert config.allowed_file_extensions == [".csv", ".txt"]
        assert config.is_file_allowed("data.CSV")
        assert config.is_file_allowed("Makefile")
        assert not config.is_file_allowed("tool.exe")


class TestGroups:
    """Test the grouped read-only views."""

    def test_groups_mirror_flat_fields(self):
        """Test each group carries the flat field values."""
        config = _settings(
            api_port=9000,
            sandbox_backend="process",
            max_timeout_ms=20_000,
            terminal_session_timeout_minutes=5,
            log_format="console",
        )
        assert config.api.api_port == 9000
        assert config.sandbox.sandbox_backend == "process"
        assert config.resources.max_timeout_ms == 20_000
        assert config.terminal.session_timeout_seconds == 300
        assert config.logging.log_format == "console"

    def test_file_size_bytes(self):
        """Test the byte limit is derived from megabytes."""
        assert _settings(max_file_size_mb=2).max_file_size_bytes == 2 * 1024 * 1024

    def test_test_environment_loaded(self):
        """Test the suite runs on the process backend."""
        assert settings.sandbox_backend == "process"
        assert settings.master_api_key == "test-master-key-for-testing-12345"
