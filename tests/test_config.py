"""Tests for backend configuration, settings models and local storage helpers."""

import os
import stat

import pytest
from pydantic import ValidationError

from gitvault.config import BackendConfig, log_path, session_path
from gitvault.errors import UnsafePath
from gitvault.models import VaultSettings
from gitvault.storage import iter_local_files, write_secure_file


class TestBackendConfig:
    def test_defaults(self):
        config = BackendConfig.from_env({})
        assert config.branch == "master"
        assert config.remote_url("alice") == "git@github.com:alice/.gitvault.git"
        assert config.raw_url("alice", "shared/x") == (
            "https://raw.githubusercontent.com/alice/.gitvault/refs/heads/master/shared/x"
        )

    def test_environment_overrides(self):
        config = BackendConfig.from_env({
            "GITVAULT_REMOTE": "ssh://git@example.com/{username}/vault.git",
            "GITVAULT_RAW_URL": "https://example.com/{username}/{branch}/{path}",
            "GITVAULT_BRANCH": "main",
            "GITVAULT_HTTP_TIMEOUT": "2.5",
            "GITVAULT_GIT_TIMEOUT": "",
        })
        assert config.remote_url("bob") == "ssh://git@example.com/bob/vault.git"
        assert config.raw_url("bob", "k") == "https://example.com/bob/main/k"
        assert config.http_timeout == 2.5
        assert config.git_timeout == 120.0

    def test_non_positive_timeout(self):
        with pytest.raises(ValidationError):
            BackendConfig.from_env({"GITVAULT_HTTP_TIMEOUT": "0"})

    def test_state_paths_follow_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GITVAULT_SESSION", str(tmp_path / "s.json"))
        monkeypatch.setenv("GITVAULT_LOG", str(tmp_path / "g.log"))
        assert session_path() == tmp_path / "s.json"
        assert log_path() == tmp_path / "g.log"


class TestVaultSettings:
    def test_defaults(self):
        s = VaultSettings()
        meta = s.commit_meta()
        assert (meta.author_name, meta.author_email, meta.message) == (
            "gitvault", "gitvault@users.noreply.github.com", "gitvault: updated vault",
        )
        assert (s.file_id_length, s.share_id_length) == (16, 6)

    def test_assignment_is_validated(self):
        s = VaultSettings()
        with pytest.raises(ValidationError):
            s.file_id_length = 5

    def test_from_stored_ignores_blank_values(self):
        s = VaultSettings.from_stored({"commit_message": "", "share_id_length": -1, "file_id_length": None})
        assert s == VaultSettings()


class TestStorage:
    def test_write_secure_file_is_owner_only(self, tmp_path):
        target = tmp_path / "out.bin"
        write_secure_file(target, b"data")
        assert target.read_bytes() == b"data"
        assert stat.S_IMODE(target.stat().st_mode) == 0o600
        assert [p.name for p in tmp_path.iterdir()] == ["out.bin"]

    def test_write_secure_file_refuses_symlink_target(self, tmp_path):
        (tmp_path / "real").write_bytes(b"")
        os.symlink(tmp_path / "real", tmp_path / "link")
        with pytest.raises(UnsafePath):
            write_secure_file(tmp_path / "link", b"x")

    def test_iter_local_files_sorted_and_skips_symlinks(self, tmp_path):
        (tmp_path / "b").mkdir()
        (tmp_path / "b" / "z.txt").write_text("z")
        (tmp_path / "a.txt").write_text("a")
        os.symlink(tmp_path / "a.txt", tmp_path / "b" / "link.txt")
        assert [rel for rel, _ in iter_local_files(tmp_path)] == ["a.txt", "b/z.txt"]
