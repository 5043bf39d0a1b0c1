import os
import pathlib

from pydantic import BaseModel, field_validator

STATE_DIR = pathlib.Path.home() / ".local" / "state" / "gitvault"

ENV_MAP = {
    "remote_template": "GITVAULT_REMOTE",
    "raw_template": "GITVAULT_RAW_URL",
    "branch": "GITVAULT_BRANCH",
    "http_timeout": "GITVAULT_HTTP_TIMEOUT",
    "git_timeout": "GITVAULT_GIT_TIMEOUT",
    "ssh_options": "GITVAULT_SSH_OPTIONS",
}


class BackendConfig(BaseModel):
    """Where a user's vault repository lives and how long to wait for it."""
    remote_template: str = "git@github.com:{username}/.gitvault.git"
    raw_template: str = "https://raw.githubusercontent.com/{username}/.gitvault/refs/heads/{branch}/{path}"
    branch: str = "master"
    http_timeout: float = 10.0
    git_timeout: float = 120.0
    ssh_options: str = "-o IdentitiesOnly=yes -o StrictHostKeyChecking=accept-new"

    @field_validator("http_timeout", "git_timeout")
    @classmethod
    def validate_timeout(cls, v: float):
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v

    @classmethod
    def from_env(cls, environ=None) -> "BackendConfig":
        environ = os.environ if environ is None else environ
        values = {field: environ[var] for field, var in ENV_MAP.items() if environ.get(var)}
        return cls.model_validate(values)

    def remote_url(self, username: str) -> str:
        return self.remote_template.format(username=username)

    def raw_url(self, username: str, path: str) -> str:
        return self.raw_template.format(username=username, branch=self.branch, path=path)


def session_path() -> pathlib.Path:
    return pathlib.Path(os.environ.get("GITVAULT_SESSION", STATE_DIR / "session.json"))


def log_path() -> pathlib.Path:
    return pathlib.Path(os.environ.get("GITVAULT_LOG", STATE_DIR / "gitvault.log"))
