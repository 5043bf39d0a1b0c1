"""Remote storage protocol over a git repository.

Reads go through the anonymous raw-content HTTP endpoint; writes go through the
`git` executable with the vault's SSH deploy key:

* `write` (incremental): shallow clone, change only the given paths, commit, push.
  Untouched objects survive; the push either moves the branch or is rejected.
* `reset`: a parentless commit force-pushed over the branch, discarding all
  history.  Only setup and purge use it.
"""
import os, pathlib, shlex, subprocess, tempfile, time
from typing import Dict, Iterable, List, Optional, Protocol

import httpx

from .config import BackendConfig
from .errors import RemoteConflict, RemoteNotFound, RemoteUnavailable
from .logging import get_logger
from .models import CommitMeta
from .storage import write_secure_file

LOG = get_logger()

USER_AGENT = "gitvault/0.1"
CONFLICT_MARKERS = ("[rejected]", "non-fast-forward", "fetch first", "stale info")
MISSING_BRANCH_MARKERS = ("not found in upstream", "couldn't find remote ref", "Remote branch")


class Remote(Protocol):
    """What the vault needs from a storage backend."""
    username: str

    def fetch(self, path: str) -> bytes: ...

    def write(self, private_key: bytes, changes: Dict[str, bytes], meta: CommitMeta,
              removals: Iterable[str] = ()) -> str: ...

    def reset(self, private_key: bytes, files: Dict[str, bytes], meta: CommitMeta) -> str: ...

    def list_objects(self, private_key: bytes) -> List[str]: ...


def _worktree_path(work: pathlib.Path, path: str) -> pathlib.Path:
    parts = path.split("/")
    if not path or path.startswith("/") or any(p in ("", ".", "..", ".git") for p in parts):
        raise ValueError(f"invalid object path: {path!r}")
    return work.joinpath(*parts)


class GitRemote:
    def __init__(self, username: str, config: Optional[BackendConfig] = None,
                 client: Optional[httpx.Client] = None):
        self.username = username
        self.config = config or BackendConfig.from_env()
        self.url = self.config.remote_url(username)
        self._client = client

    # ------------------------------------------------------------------ #
    # Read path
    # ------------------------------------------------------------------ #

    def fetch(self, path: str) -> bytes:
        """GET one object from the raw endpoint; 404 is RemoteNotFound, anything else unavailable."""
        url = self.config.raw_url(self.username, path)
        headers = {"User-Agent": USER_AGENT, "Cache-Control": "no-cache"}
        params = {"t": str(time.time_ns())}
        try:
            if self._client is not None:
                resp = self._client.get(url, params=params, headers=headers, timeout=self.config.http_timeout)
            else:
                with httpx.Client(follow_redirects=True) as client:
                    resp = client.get(url, params=params, headers=headers, timeout=self.config.http_timeout)
        except httpx.HTTPError as exc:
            raise RemoteUnavailable(f"failed to fetch {path}: {exc}") from exc
        if resp.status_code == 404:
            LOG.debug("fetch_not_found", username=self.username, path=path)
            raise RemoteNotFound(f"{path} not found on remote")
        if resp.status_code != 200:
            raise RemoteUnavailable(f"fetching {path} returned HTTP {resp.status_code}")
        return resp.content

    # ------------------------------------------------------------------ #
    # Write paths
    # ------------------------------------------------------------------ #

    def write(self, private_key: bytes, changes: Dict[str, bytes], meta: CommitMeta,
              removals: Iterable[str] = ()) -> str:
        removals = list(removals)
        branch = self.config.branch
        with tempfile.TemporaryDirectory(prefix="gitvault-") as tmp:
            env = self._env(pathlib.Path(tmp), private_key)
            work = pathlib.Path(tmp) / "work"
            self._clone(work, env)
            for path in removals:
                if not _worktree_path(work, path).exists():
                    LOG.warning("object_already_gone", username=self.username, path=path)
                    continue
                self._git(["rm", "--quiet", "--", path], env, cwd=work)
            for path, data in changes.items():
                target = _worktree_path(work, path)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
            if changes:
                self._git(["add", "--", *changes], env, cwd=work)
            self._commit(work, env, meta)
            self._git(["push", "--quiet", "origin", f"HEAD:refs/heads/{branch}"], env, cwd=work)
            head = self._git(["rev-parse", "HEAD"], env, cwd=work).strip()
        LOG.debug("git_push", username=self.username, commit=head, changed=len(changes), removed=len(removals))
        return head

    def reset(self, private_key: bytes, files: Dict[str, bytes], meta: CommitMeta) -> str:
        branch = self.config.branch
        with tempfile.TemporaryDirectory(prefix="gitvault-") as tmp:
            env = self._env(pathlib.Path(tmp), private_key)
            work = pathlib.Path(tmp) / "work"
            self._git(["init", "--quiet", str(work)], env)
            for path, data in files.items():
                target = _worktree_path(work, path)
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)
            if files:
                self._git(["add", "--", *files], env, cwd=work)
            self._commit(work, env, meta)
            self._git(["push", "--quiet", "--force", self.url, f"HEAD:refs/heads/{branch}"], env, cwd=work)
            head = self._git(["rev-parse", "HEAD"], env, cwd=work).strip()
        LOG.info("git_reset", username=self.username, commit=head, files=len(files))
        return head

    def list_objects(self, private_key: bytes) -> List[str]:
        """Every path on the branch tip, from a shallow clone."""
        with tempfile.TemporaryDirectory(prefix="gitvault-") as tmp:
            env = self._env(pathlib.Path(tmp), private_key)
            work = pathlib.Path(tmp) / "work"
            self._clone(work, env)
            out = self._git(["ls-files", "-z"], env, cwd=work)
        return sorted(p for p in out.split("\0") if p)

    # ------------------------------------------------------------------ #
    # git plumbing
    # ------------------------------------------------------------------ #

    def _env(self, tmp: pathlib.Path, private_key: bytes) -> Dict[str, str]:
        key_path = tmp / "deploy_key"
        write_secure_file(key_path, private_key)
        env = dict(os.environ)
        env["GIT_SSH_COMMAND"] = f"ssh -i {shlex.quote(str(key_path))} {self.config.ssh_options}"
        env["GIT_TERMINAL_PROMPT"] = "0"
        return env

    def _clone(self, work: pathlib.Path, env: Dict[str, str]):
        self._git(
            ["clone", "--quiet", "--depth", "1", "--single-branch",
             "--branch", self.config.branch, self.url, str(work)],
            env,
        )
        # Cloning an empty repository succeeds on recent git, leaving HEAD unborn.
        try:
            self._git(["rev-parse", "--verify", "--quiet", "HEAD"], env, cwd=work)
        except RemoteUnavailable:
            raise RemoteNotFound(f"branch '{self.config.branch}' has no commits at {self.url}; run setup first") from None

    def _commit(self, work: pathlib.Path, env: Dict[str, str], meta: CommitMeta):
        env = dict(env)
        env.update(
            GIT_AUTHOR_NAME=meta.author_name,
            GIT_AUTHOR_EMAIL=meta.author_email,
            GIT_COMMITTER_NAME=meta.author_name,
            GIT_COMMITTER_EMAIL=meta.author_email,
        )
        self._git(["-c", "commit.gpgsign=false", "commit", "--quiet", "--allow-empty", "-m", meta.message],
                  env, cwd=work)

    def _git(self, args: List[str], env: Dict[str, str], cwd: Optional[pathlib.Path] = None) -> str:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.config.git_timeout,
                check=True,
            )
        except FileNotFoundError as exc:
            raise RemoteUnavailable("git executable not found on PATH") from exc
        except subprocess.TimeoutExpired as exc:
            raise RemoteUnavailable(f"git {args[0]} timed out after {self.config.git_timeout:g}s") from exc
        except subprocess.CalledProcessError as exc:
            raise self._classify(args, exc.stderr or "") from exc
        return result.stdout

    def _classify(self, args: List[str], stderr: str):
        command = next(a for a in args if not a.startswith("-") and "=" not in a)
        lines = [ln.strip() for ln in stderr.strip().splitlines() if ln.strip()]
        detail = lines[-1] if lines else "no output"
        if command == "push" and any(m in stderr for m in CONFLICT_MARKERS):
            return RemoteConflict("push rejected: the remote branch moved; reconnect and retry")
        if command == "clone" and any(m in stderr for m in MISSING_BRANCH_MARKERS):
            return RemoteNotFound(f"branch '{self.config.branch}' not found at {self.url}; run setup first")
        return RemoteUnavailable(f"git {command} failed: {detail}")
