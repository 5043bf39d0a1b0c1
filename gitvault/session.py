"""Key hierarchy and authenticated session state.

vault password -> master key (SSH deploy key) + index/shared index/settings blobs
               -> wrapped per-file keys -> file contents
"""
import base64, json, pathlib
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

from pydantic import ValidationError

from .config import BackendConfig, session_path
from .crypto import consteq, decrypt_with_password, encrypt_with_password, zero_bytes
from .errors import AuthFailed, InvalidSettings, Malformed, NotFound, RemoteNotFound
from .index import VaultIndex
from .logging import get_logger
from .models import CommitMeta, SessionState, VaultSettings
from .shared import SharedIndex
from .storage import ensure_not_symlink, safe_read_bytes, write_secure_file
from .transport import GitRemote, Remote

LOG = get_logger()

MASTER_KEY_PATH = ".config/key"
INDEX_PATH = ".config/index"
SETTINGS_PATH = ".config/settings"
SHARED_INDEX_PATH = "shared/.config/index"

T = TypeVar("T")


class Session:
    """Authenticated context for one user; pass it into every vault operation."""

    def __init__(self, username: str, password: str, master_key: bytes, remote: Remote,
                 index: Optional[VaultIndex] = None, shared_index: Optional[SharedIndex] = None,
                 settings: Optional[VaultSettings] = None):
        self.username = username
        self.password = password
        self.master_key = bytearray(master_key)
        self.remote = remote
        self.index = index if index is not None else VaultIndex()
        self.shared_index = shared_index if shared_index is not None else SharedIndex()
        self.settings = settings if settings is not None else VaultSettings()

    def __repr__(self) -> str:
        return f"Session(username={self.username!r})"

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc):
        self.close()

    @property
    def key(self) -> bytes:
        if not any(self.master_key):
            raise RuntimeError("session is closed")
        return bytes(self.master_key)

    def commit_meta(self) -> CommitMeta:
        return self.settings.commit_meta()

    def close(self):
        """Wipe the master key and drop the password."""
        zero_bytes(self.master_key)
        self.password = ""

    def to_state(self) -> SessionState:
        return SessionState(
            username=self.username,
            password=self.password,
            master_key_b64=base64.b64encode(bytes(self.master_key)).decode("ascii"),
            index=self.index.to_model(),
            shared_index=self.shared_index.to_model(),
            settings=self.settings,
        )

    @classmethod
    def from_state(cls, state: SessionState, remote: Remote) -> "Session":
        return cls(
            username=state.username,
            password=state.password,
            master_key=base64.b64decode(state.master_key_b64),
            remote=remote,
            index=VaultIndex.from_model(state.index),
            shared_index=SharedIndex(state.shared_index),
            settings=state.settings,
        )


def settings_to_bytes(settings: VaultSettings, password) -> bytes:
    return encrypt_with_password(settings.model_dump_json().encode("utf-8"), password)


def settings_from_bytes(blob: bytes, password) -> VaultSettings:
    plaintext = decrypt_with_password(blob, password)
    try:
        data = json.loads(plaintext)
    except ValueError as exc:
        raise Malformed("settings are not valid JSON") from exc
    if not isinstance(data, dict):
        raise Malformed("settings must be a JSON object")
    try:
        return VaultSettings.from_stored(data)
    except ValidationError as exc:
        raise Malformed(f"stored settings are invalid: {exc.error_count()} error(s)") from exc


def validate_settings(**values) -> VaultSettings:
    """Build settings from user input, rejecting unknown keys and out-of-range values."""
    unknown = set(values) - set(VaultSettings.model_fields)
    if unknown:
        raise InvalidSettings(f"unknown setting(s): {', '.join(sorted(unknown))}")
    try:
        return VaultSettings.model_validate(values)
    except ValidationError as exc:
        msgs = "; ".join(f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors())
        raise InvalidSettings(msgs) from exc


def _fetch_optional(remote: Remote, path: str, parse: Callable[[bytes], T], default: Callable[[], T]) -> T:
    """A missing object means a new vault; any other remote failure propagates."""
    try:
        blob = remote.fetch(path)
    except RemoteNotFound:
        return default()
    return parse(blob)


def bootstrap(username: str, ssh_private_key: bytes, vault_password: str,
              remote: Optional[Remote] = None, config: Optional[BackendConfig] = None,
              settings: Optional[VaultSettings] = None) -> Session:
    """Create a vault from nothing: master key, empty index and settings in one reset commit."""
    if not vault_password:
        raise ValueError("vault password cannot be empty")
    if not ssh_private_key:
        raise ValueError("SSH private key is empty")
    remote = remote if remote is not None else GitRemote(username, config)
    settings = settings if settings is not None else VaultSettings()
    index = VaultIndex()
    files = {
        MASTER_KEY_PATH: encrypt_with_password(ssh_private_key, vault_password),
        INDEX_PATH: index.to_bytes(vault_password),
        SETTINGS_PATH: settings_to_bytes(settings, vault_password),
    }
    remote.reset(ssh_private_key, files, settings.commit_meta())
    LOG.info("vault_bootstrapped", username=username)
    return Session(username, vault_password, ssh_private_key, remote, index, SharedIndex(), settings)


def authenticate(username: str, vault_password: str, remote: Optional[Remote] = None,
                 config: Optional[BackendConfig] = None) -> Session:
    remote = remote if remote is not None else GitRemote(username, config)
    try:
        encrypted_key = remote.fetch(MASTER_KEY_PATH)
    except RemoteNotFound:
        raise NotFound(f"no vault found for '{username}'; run setup first") from None
    try:
        master_key = decrypt_with_password(encrypted_key, vault_password)
    except AuthFailed:
        LOG.warning("auth_failed", username=username)
        raise AuthFailed("invalid password") from None

    index = _fetch_optional(remote, INDEX_PATH, lambda b: VaultIndex.from_bytes(b, vault_password), VaultIndex)
    shared = _fetch_optional(remote, SHARED_INDEX_PATH, lambda b: SharedIndex.from_bytes(b, vault_password), SharedIndex)
    settings = _fetch_optional(remote, SETTINGS_PATH, lambda b: settings_from_bytes(b, vault_password), VaultSettings)
    LOG.info("session_opened", username=username)
    return Session(username, vault_password, master_key, remote, index, shared, settings)


def change_password(session: Session, new_password: str, current_password: Optional[str] = None):
    """Re-encrypt every password-protected object and push them in one commit."""
    if not new_password:
        raise ValueError("new password cannot be empty")
    if current_password is not None and not consteq(
        current_password.encode("utf-8"), session.password.encode("utf-8")
    ):
        raise AuthFailed("current password is incorrect")

    index = session.index.rewrap_keys(session.password, new_password)
    files = {
        MASTER_KEY_PATH: encrypt_with_password(session.key, new_password),
        INDEX_PATH: index.to_bytes(new_password),
        SETTINGS_PATH: settings_to_bytes(session.settings, new_password),
        SHARED_INDEX_PATH: session.shared_index.to_bytes(new_password),
    }
    session.remote.write(session.key, files, session.commit_meta())
    session.index = index
    session.password = new_password
    LOG.info("password_changed", username=session.username)


class SessionStore:
    """Local cache of a decrypted session, reused across process invocations."""

    def __init__(self, path=None):
        self.path = pathlib.Path(path) if path is not None else session_path()

    def exists(self) -> bool:
        return self.path.exists()

    def save(self, session: Session):
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        ensure_not_symlink(self.path.parent, "Session directory")
        state = session.to_state()
        state.saved_at = datetime.now(timezone.utc).replace(microsecond=0).isoformat()
        write_secure_file(self.path, state.model_dump_json(indent=2).encode("utf-8"))

    def load(self, remote: Optional[Remote] = None, config: Optional[BackendConfig] = None) -> Optional[Session]:
        if not self.path.exists():
            return None
        raw = safe_read_bytes(self.path)
        try:
            state = SessionState.model_validate_json(raw)
        except ValidationError as exc:
            raise Malformed(f"session cache {self.path} is corrupt; disconnect and reconnect") from exc
        remote = remote if remote is not None else GitRemote(state.username, config)
        return Session.from_state(state, remote)

    def clear(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True
