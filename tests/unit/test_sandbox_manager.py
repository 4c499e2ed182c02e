"""Unit tests for SandboxManager."""

from unittest.mock import patch

import pytest

from coderunner.config import LANGUAGES, ResourceCeiling
from coderunner.services.sandbox.manager import SandboxManager


class TestSandboxManagerAvailability:
    """Test SandboxManager availability checks."""

    def test_process_backend_always_available(self, tmp_path):
        """Test the process backend needs no external binary."""
        manager = SandboxManager(base_dir=str(tmp_path), backend="process")
        assert manager.is_available() is True
        assert manager.get_initialization_error() is None

    def test_nsjail_missing(self, tmp_path):
        """Test nsjail backend reports a missing binary."""
        with patch("shutil.which", return_value=None):
            manager = SandboxManager(base_dir=str(tmp_path), backend="nsjail")
            assert manager.is_available() is False
            error = manager.get_initialization_error()
        assert "nsjail" in error.lower()

    def test_docker_present(self, tmp_path):
        """Test docker backend is available when the CLI is found."""
        with patch("shutil.which", return_value="/usr/bin/docker"):
            manager = SandboxManager(base_dir=str(tmp_path), backend="docker")
            assert manager.is_available() is True
            assert manager.get_initialization_error() is None

    def test_base_dir_failure_reported(self, tmp_path):
        """Test a base directory that cannot be created is reported."""
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        manager = SandboxManager(base_dir=str(blocker / "sandboxes"), backend="process")
        assert "Failed to create sandbox base directory" in manager.get_initialization_error()


class TestSandboxLifecycle:
    """Test sandbox creation and destruction."""

    def test_create_sandbox_creates_directories(self, sandbox_manager):
        """Test create_sandbox lays out the data and scratch directories."""
        info = sandbox_manager.create_sandbox("session-1", "python")
        assert info.data_dir.is_dir()
        assert info.tmp_dir.is_dir()
        assert info.data_dir.parent == info.sandbox_dir
        assert info.backend == "process"
        assert info.labels["com.coderunner.session-id"] == "session-1"

    def test_sandboxes_are_distinct(self, sandbox_manager):
        """Test two sandboxes for one session never share a directory."""
        first = sandbox_manager.create_sandbox("session-1", "python")
        second = sandbox_manager.create_sandbox("session-1", "python")
        assert first.sandbox_dir != second.sandbox_dir
        assert len(sandbox_manager.list_sandboxes()) == 2

    def test_create_for_language(self, sandbox_manager):
        """Test the language's image and ceiling are pinned to the sandbox."""
        info = sandbox_manager.create_for_language("session-1", LANGUAGES["java"])
        assert info.image == LANGUAGES["java"].image
        assert info.ceiling == LANGUAGES["java"].resource_ceiling

    def test_default_ceiling(self, sandbox_manager):
        """Test sandboxes get the default ceiling when none is given."""
        info = sandbox_manager.create_sandbox("session-1", "terminal")
        assert info.ceiling == ResourceCeiling()

    @pytest.mark.asyncio
    async def test_destroy_sandbox_removes_directory(self, sandbox_manager):
        """Test destroy_sandbox removes everything on disk."""
        info = sandbox_manager.create_sandbox("session-1", "python")
        (info.data_dir / "out.txt").write_text("data")
        assert await sandbox_manager.destroy_sandbox(info) is True
        assert not info.sandbox_dir.exists()
        assert sandbox_manager.list_sandboxes() == []

    @pytest.mark.asyncio
    async def test_destroy_missing_sandbox(self, sandbox_manager):
        """Test destroying an already removed sandbox still succeeds."""
        info = sandbox_manager.create_sandbox("session-1", "python")
        await sandbox_manager.destroy_sandbox(info)
        assert await sandbox_manager.destroy_sandbox(info) is True


class TestWriteFile:
    """Test writing files into a sandbox."""

    def test_write_file(self, sandbox_manager):
        """Test content lands in the working directory."""
        info = sandbox_manager.create_sandbox("session-1", "python")
        path = sandbox_manager.write_file(info, "main.py", b"print(1)")
        assert path == info.data_dir / "main.py"
        assert path.read_bytes() == b"print(1)"

    @pytest.mark.parametrize("name", ["../escape.py", "dir/file.txt", "", "/etc/passwd"])
    def test_rejects_paths(self, sandbox_manager, name):
        """Test names with directory components are refused."""
        info = sandbox_manager.create_sandbox("session-1", "python")
        with pytest.raises(ValueError):
            sandbox_manager.write_file(info, name, b"x")
