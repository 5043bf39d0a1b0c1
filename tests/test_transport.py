"""Tests for the git/HTTP transport.

The read path runs against httpx.MockTransport.  The write path runs the real
`git` executable against a local bare repository and is skipped when git is
not installed.
"""

import shutil
import subprocess

import httpx
import pytest

from gitvault.config import BackendConfig
from gitvault.errors import RemoteConflict, RemoteNotFound, RemoteUnavailable
from gitvault.models import CommitMeta
from gitvault.transport import GitRemote, _worktree_path

META = CommitMeta(author_name="Vault Bot", author_email="bot@example.com", message="gitvault: test")
KEY = b"not a real key"

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")


def _remote_with(handler, **config):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return GitRemote("alice", BackendConfig(**config), client=client)


# ─── Read path ─────────────────────────────────────────────────────────


class TestFetch:
    def test_builds_raw_url_and_busts_caches(self):
        seen = {}

        def handler(request):
            seen["url"] = request.url
            seen["headers"] = request.headers
            return httpx.Response(200, content=b"blob")

        remote = _remote_with(handler, branch="main")
        assert remote.fetch(".config/key") == b"blob"
        assert seen["url"].path == "/alice/.gitvault/refs/heads/main/.config/key"
        assert seen["url"].host == "raw.githubusercontent.com"
        assert "t" in seen["url"].params
        assert seen["headers"]["cache-control"] == "no-cache"

    def test_404_is_not_found(self):
        remote = _remote_with(lambda request: httpx.Response(404))
        with pytest.raises(RemoteNotFound):
            remote.fetch("shared/abc")

    def test_server_error_is_unavailable(self):
        remote = _remote_with(lambda request: httpx.Response(503))
        with pytest.raises(RemoteUnavailable, match="503"):
            remote.fetch(".config/index")

    def test_network_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(RemoteUnavailable):
            _remote_with(handler).fetch(".config/index")

    def test_remote_url_template(self):
        remote = GitRemote("bob", BackendConfig())
        assert remote.url == "git@github.com:bob/.gitvault.git"


# ─── Error classification ──────────────────────────────────────────────


class TestClassify:
    def setup_method(self):
        self.remote = GitRemote("alice", BackendConfig())

    def test_rejected_push_is_conflict(self):
        stderr = " ! [rejected]        HEAD -> master (fetch first)\nerror: failed to push some refs\n"
        assert isinstance(self.remote._classify(["push", "origin", "HEAD"], stderr), RemoteConflict)

    def test_missing_branch_on_clone_is_not_found(self):
        stderr = "fatal: Remote branch master not found in upstream origin\n"
        assert isinstance(self.remote._classify(["clone", "--depth", "1"], stderr), RemoteNotFound)

    def test_anything_else_is_unavailable(self):
        err = self.remote._classify(["push"], "fatal: Could not read from remote repository.\n")
        assert isinstance(err, RemoteUnavailable)
        assert "Could not read from remote repository" in str(err)

    def test_config_flags_are_skipped_when_naming_the_command(self):
        err = self.remote._classify(["-c", "commit.gpgsign=false", "commit"], "boom")
        assert "git commit failed" in str(err)

    def test_missing_git_executable(self, monkeypatch):
        def boom(*args, **kwargs):
            raise FileNotFoundError("git")

        monkeypatch.setattr(subprocess, "run", boom)
        with pytest.raises(RemoteUnavailable, match="not found"):
            self.remote._git(["status"], {})


class TestWorktreePath:
    @pytest.mark.parametrize("path", ["", "/abs", "a/../b", ".git/config", "a//b"])
    def test_rejects_escaping_paths(self, tmp_path, path):
        with pytest.raises(ValueError):
            _worktree_path(tmp_path, path)

    def test_nested(self, tmp_path):
        assert _worktree_path(tmp_path, "shared/.config/index") == tmp_path / "shared" / ".config" / "index"


# ─── Write path (real git) ─────────────────────────────────────────────


@pytest.fixture
def bare_repo(tmp_path):
    path = tmp_path / "vault.git"
    subprocess.run(["git", "init", "--quiet", "--bare", str(path)], check=True)
    return path


@pytest.fixture
def git_remote(bare_repo):
    return GitRemote("alice", BackendConfig(remote_template=bare_repo.as_uri(), git_timeout=60))


def _git_log(bare_repo, fmt):
    out = subprocess.run(
        ["git", "--git-dir", str(bare_repo), "log", f"--format={fmt}", "master"],
        check=True, capture_output=True, text=True,
    )
    return out.stdout.splitlines()


@requires_git
class TestGitWrites:
    def test_write_before_setup_is_not_found(self, git_remote):
        with pytest.raises(RemoteNotFound):
            git_remote.write(KEY, {"a": b"x"}, META)

    def test_reset_then_incremental_writes(self, git_remote, bare_repo):
        git_remote.reset(KEY, {".config/key": b"k", ".config/index": b"i"}, META)
        assert git_remote.list_objects(KEY) == [".config/index", ".config/key"]

        git_remote.write(KEY, {"abcd": b"data", ".config/index": b"i2"}, META)
        git_remote.write(KEY, {"shared/ref1": b"cap"}, META, removals=["abcd"])

        assert git_remote.list_objects(KEY) == [".config/index", ".config/key", "shared/ref1"]
        assert len(_git_log(bare_repo, "%H")) == 3
        assert set(_git_log(bare_repo, "%an <%ae>")) == {"Vault Bot <bot@example.com>"}

    def test_reset_discards_history(self, git_remote, bare_repo):
        git_remote.reset(KEY, {"a": b"1"}, META)
        git_remote.write(KEY, {"b": b"2"}, META)
        git_remote.reset(KEY, {}, META)
        assert git_remote.list_objects(KEY) == []
        assert len(_git_log(bare_repo, "%H")) == 1

    def test_removing_an_absent_object_still_commits(self, git_remote, bare_repo):
        git_remote.reset(KEY, {"a": b"1"}, META)
        git_remote.write(KEY, {}, META, removals=["ghost"])
        assert git_remote.list_objects(KEY) == ["a"]
        assert len(_git_log(bare_repo, "%H")) == 2

    def test_concurrent_push_is_a_conflict(self, bare_repo):
        config = BackendConfig(remote_template=bare_repo.as_uri(), git_timeout=60)
        other = GitRemote("alice", config)
        other.reset(KEY, {"a": b"1"}, META)

        class Racing(GitRemote):
            def _clone(self, work, env):
                super()._clone(work, env)
                other.write(KEY, {"b": b"from elsewhere"}, META)

        with pytest.raises(RemoteConflict):
            Racing("alice", config).write(KEY, {"c": b"mine"}, META)
        assert other.list_objects(KEY) == ["a", "b"]
