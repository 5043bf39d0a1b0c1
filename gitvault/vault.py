"""Vault operations.

Each mutating operation works on a copy of the session's index, pushes exactly
one commit, and only then swaps the copy into the session.  A failed push
leaves both the remote and the session as they were.
"""
import pathlib, posixpath
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .config import BackendConfig
from .crypto import (
    decrypt_with_key,
    decrypt_with_password,
    encrypt_with_key,
    encrypt_with_password,
    generate_file_key,
    generate_id,
    generate_reference,
    unwrap_file_key,
    wrap_file_key,
    zero_bytes,
)
from .errors import NotAFile, NotFound, RemoteNotFound
from .index import VaultIndex, join_path, split_path
from .logging import get_logger
from .models import FileEntry, FolderEntry, SharedFileEntry, VaultSettings
from .session import INDEX_PATH, SETTINGS_PATH, SHARED_INDEX_PATH, Session, settings_to_bytes, validate_settings
from .shared import ShareString, SharedIndex, capsule_path
from .storage import iter_local_files, write_secure_file
from .transport import GitRemote, Remote

LOG = get_logger()


@dataclass
class VaultInfo:
    username: str
    files: int
    folders: int
    shared: int
    settings: VaultSettings


@dataclass
class FileInfo:
    vault_path: str
    storage_id: str
    encrypted_size: int


def _new_storage_id(session: Session, index: VaultIndex) -> str:
    taken = index.storage_ids()
    while True:
        storage_id = generate_id(session.settings.file_id_length // 2)
        if storage_id not in taken:
            return storage_id


def _prepare_entry(session: Session, index: VaultIndex, vault_path: str) -> Tuple[FileEntry, bytearray]:
    """Reuse the storage id and key of an existing file, or mint both for a new one."""
    try:
        existing = index.find(vault_path)
    except NotFound:
        existing = None
    if isinstance(existing, FolderEntry):
        raise NotAFile(f"'{vault_path}' is a folder, not a file")
    if existing is not None:
        return existing, bytearray(unwrap_file_key(existing.file_key, session.password))
    file_key = generate_file_key()
    entry = index.insert_file(vault_path, _new_storage_id(session, index), wrap_file_key(file_key, session.password))
    return entry, bytearray(file_key)


def _seal(session: Session, index: VaultIndex, vault_path: str, data: bytes) -> Tuple[FileEntry, bytes]:
    entry, file_key = _prepare_entry(session, index, vault_path)
    try:
        return entry, encrypt_with_key(data, bytes(file_key))
    finally:
        zero_bytes(file_key)


def upload(session: Session, local_path, vault_path: str) -> FileEntry:
    src = pathlib.Path(local_path)
    if src.is_dir():
        raise IsADirectoryError(f"{src} is a directory; use upload_directory")
    data = src.read_bytes()
    index = session.index.copy()
    entry, ciphertext = _seal(session, index, vault_path, data)
    changes = {
        entry.storage_id: ciphertext,
        INDEX_PATH: index.to_bytes(session.password),
    }
    session.remote.write(session.key, changes, session.commit_meta())
    session.index = index
    LOG.info("upload_completed", username=session.username, path=vault_path, storage_id=entry.storage_id, size=len(data))
    return entry


def upload_directory(session: Session, local_dir, vault_path: str) -> List[Tuple[str, FileEntry]]:
    """Upload every file under `local_dir`, preserving structure, in a single commit."""
    root = pathlib.Path(local_dir)
    if not root.is_dir():
        raise NotADirectoryError(f"path is not a directory: {root}")
    index = session.index.copy()
    changes = {}
    uploaded = []
    for rel, path in iter_local_files(root):
        target = join_path(vault_path, rel)
        entry, ciphertext = _seal(session, index, target, path.read_bytes())
        changes[entry.storage_id] = ciphertext
        uploaded.append((target, entry))
    if not uploaded:
        raise NotFound(f"no files found in directory: {root}")
    changes[INDEX_PATH] = index.to_bytes(session.password)
    session.remote.write(session.key, changes, session.commit_meta())
    session.index = index
    LOG.info("upload_directory_completed", username=session.username, path=vault_path, files=len(uploaded))
    return uploaded


def read_file(session: Session, vault_path: str) -> bytes:
    """Fetch and decrypt one vault file without touching the local disk."""
    entry = session.index.find_file(vault_path)
    blob = session.remote.fetch(entry.storage_id)
    file_key = bytearray(unwrap_file_key(entry.file_key, session.password))
    try:
        return decrypt_with_key(blob, bytes(file_key))
    finally:
        zero_bytes(file_key)


def download(session: Session, vault_path: str, local_path=None) -> pathlib.Path:
    data = read_file(session, vault_path)
    out = pathlib.Path(local_path) if local_path else pathlib.Path(posixpath.basename(vault_path.rstrip("/")))
    out.parent.mkdir(parents=True, exist_ok=True)
    write_secure_file(out, data)
    LOG.info("download_completed", username=session.username, path=vault_path, out=str(out))
    return out


def delete(session: Session, vault_path: str) -> List[str]:
    """Remove a file or a whole folder; returns the storage ids deleted from the remote."""
    index = session.index.copy()
    removed = index.remove(vault_path)
    changes = {INDEX_PATH: index.to_bytes(session.password)}
    session.remote.write(session.key, changes, session.commit_meta(), removals=removed)
    session.index = index
    LOG.info("delete_completed", username=session.username, path=vault_path, objects=len(removed))
    return removed


def purge(session: Session):
    """Force-push an empty, parentless commit. Irreversible; confirm before calling."""
    session.remote.reset(session.key, {}, session.commit_meta())
    session.index = VaultIndex()
    session.shared_index = SharedIndex()
    LOG.warning("vault_purged", username=session.username)


def share(session: Session, vault_path: str, share_password: str) -> ShareString:
    """Re-encrypt one file under an independent password and publish it at shared/{ref}."""
    if not share_password:
        raise ValueError("share password cannot be empty")
    if ":" in share_password:
        raise ValueError("share password cannot contain ':'")
    plaintext = read_file(session, vault_path)
    shared = session.shared_index.copy()
    reference = generate_reference(session.settings.share_id_length)
    while reference in shared:
        reference = generate_reference(session.settings.share_id_length)
    normalized = join_path(*split_path(vault_path))
    entry = SharedFileEntry(
        name=posixpath.basename(normalized),
        reference=reference,
        password=share_password,
        original_path=normalized,
    )
    shared.add(entry)
    changes = {
        capsule_path(reference): encrypt_with_password(plaintext, share_password),
        SHARED_INDEX_PATH: shared.to_bytes(session.password),
    }
    session.remote.write(session.key, changes, session.commit_meta())
    session.shared_index = shared
    LOG.info("share_created", username=session.username, path=normalized, reference=reference)
    return ShareString(session.username, reference, share_password, entry.name)


def share_string_for(session: Session, reference: str) -> ShareString:
    entry = session.shared_index.get(reference)
    return ShareString(session.username, entry.reference, entry.password, entry.name)


def read_shared(share_string, remote: Optional[Remote] = None, config: Optional[BackendConfig] = None) -> bytes:
    """Decrypt a share capsule using only the share string; no vault credentials needed."""
    parsed = share_string if isinstance(share_string, ShareString) else ShareString.parse(share_string)
    remote = remote if remote is not None else GitRemote(parsed.username, config)
    try:
        blob = remote.fetch(capsule_path(parsed.reference))
    except RemoteNotFound:
        raise NotFound(f"shared file '{parsed.reference}' does not exist or was revoked") from None
    return decrypt_with_password(blob, parsed.password)


def download_shared(share_string, local_path=None, remote: Optional[Remote] = None,
                    config: Optional[BackendConfig] = None) -> pathlib.Path:
    parsed = share_string if isinstance(share_string, ShareString) else ShareString.parse(share_string)
    data = read_shared(parsed, remote=remote, config=config)
    if local_path:
        out = pathlib.Path(local_path)
    else:
        out = pathlib.Path(posixpath.basename(parsed.filename or "") or parsed.reference)
    out.parent.mkdir(parents=True, exist_ok=True)
    write_secure_file(out, data)
    LOG.info("shared_download_completed", username=parsed.username, reference=parsed.reference, out=str(out))
    return out


def revoke(session: Session, reference_or_name: str) -> SharedFileEntry:
    """Drop a share from the index and delete its capsule in the same commit."""
    shared = session.shared_index.copy()
    entry = shared.resolve(reference_or_name)
    shared.remove(entry.reference)
    changes = {SHARED_INDEX_PATH: shared.to_bytes(session.password)}
    session.remote.write(session.key, changes, session.commit_meta(), removals=[capsule_path(entry.reference)])
    session.shared_index = shared
    LOG.info("share_revoked", username=session.username, reference=entry.reference)
    return entry


def update_settings(session: Session, **changes) -> VaultSettings:
    settings = validate_settings(**{**session.settings.model_dump(), **changes})
    session.remote.write(
        session.key,
        {SETTINGS_PATH: settings_to_bytes(settings, session.password)},
        settings.commit_meta(),
    )
    session.settings = settings
    LOG.info("settings_updated", username=session.username, fields=",".join(sorted(changes)))
    return settings


def vault_info(session: Session) -> VaultInfo:
    files, folders = session.index.counts()
    return VaultInfo(session.username, files, folders, len(session.shared_index.files), session.settings)


def file_info(session: Session, vault_path: str) -> FileInfo:
    entry = session.index.find_file(vault_path)
    blob = session.remote.fetch(entry.storage_id)
    return FileInfo(join_path(*split_path(vault_path)), entry.storage_id, len(blob))
