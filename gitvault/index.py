"""Encrypted hierarchical index: the vault's virtual filesystem.

The whole tree is one pydantic model (`IndexFile`) serialized to JSON and sealed
with the vault password.  Paths are `/`-separated; the empty path is the root.
"""
from typing import Iterator, List, Optional, Tuple

from pydantic import ValidationError

from .crypto import decrypt_with_password, encrypt_with_password, unwrap_file_key, wrap_file_key, zero_bytes
from .errors import Malformed, NotAFile, NotAFolder, NotFound
from .models import Entry, FileEntry, FolderEntry, IndexFile


def split_path(path: str) -> List[str]:
    """Split a vault path into components, rejecting `.` and `..`."""
    parts = [p for p in path.strip().strip("/").split("/") if p]
    for part in parts:
        if part in (".", ".."):
            raise ValueError(f"invalid path component '{part}' in '{path}'")
    return parts


def join_path(*parts: str) -> str:
    return "/".join(p.strip("/") for p in parts if p and p.strip("/"))


class VaultIndex:
    def __init__(self, root: Optional[FolderEntry] = None):
        self.root = root if root is not None else FolderEntry()

    @classmethod
    def from_model(cls, model: IndexFile) -> "VaultIndex":
        return cls(FolderEntry(contents=model.root))

    def to_model(self) -> IndexFile:
        return IndexFile(root=self.root.contents)

    def copy(self) -> "VaultIndex":
        """Deep copy, so an operation can mutate freely until its push succeeds."""
        return VaultIndex(self.root.model_copy(deep=True))

    def __eq__(self, other) -> bool:
        if not isinstance(other, VaultIndex):
            return NotImplemented
        return self.root == other.root

    # ------------------------------------------------------------------ #
    # Serialization
    # ------------------------------------------------------------------ #

    def to_bytes(self, password) -> bytes:
        return encrypt_with_password(self.to_model().model_dump_json().encode("utf-8"), password)

    @classmethod
    def from_bytes(cls, blob: bytes, password) -> "VaultIndex":
        # AuthFailed propagates before any tree is built.
        plaintext = decrypt_with_password(blob, password)
        try:
            model = IndexFile.model_validate_json(plaintext)
        except ValidationError as exc:
            raise Malformed("vault index is not a valid tree") from exc
        return cls.from_model(model)

    # ------------------------------------------------------------------ #
    # Lookup
    # ------------------------------------------------------------------ #

    def find(self, path: str) -> Entry:
        node: Entry = self.root
        parts = split_path(path)
        for i, part in enumerate(parts):
            if not isinstance(node, FolderEntry):
                raise NotAFolder(f"'{join_path(*parts[:i])}' is a file, not a folder")
            child = node.contents.get(part)
            if child is None:
                raise NotFound(f"path component '{part}' not found")
            node = child
        return node

    def find_file(self, path: str) -> FileEntry:
        entry = self.find(path)
        if not isinstance(entry, FileEntry):
            raise NotAFile(f"'{path}' is a folder, not a file")
        return entry

    def find_folder(self, path: str) -> FolderEntry:
        entry = self.find(path)
        if not isinstance(entry, FolderEntry):
            raise NotAFolder(f"'{path}' is a file, not a folder")
        return entry

    def list(self, path: str = "") -> List[Tuple[str, Entry]]:
        """Children of a folder, sorted by name."""
        return sorted(self.find_folder(path).contents.items())

    def walk(self, prefix: str = "", folder: Optional[FolderEntry] = None) -> Iterator[Tuple[str, Entry]]:
        """Yield `(full_path, entry)` for every node, parents before children."""
        folder = folder if folder is not None else self.root
        for name, entry in sorted(folder.contents.items()):
            full = join_path(prefix, name)
            yield full, entry
            if isinstance(entry, FolderEntry):
                yield from self.walk(full, entry)

    def iter_files(self) -> Iterator[Tuple[str, FileEntry]]:
        for path, entry in self.walk():
            if isinstance(entry, FileEntry):
                yield path, entry

    def search(self, query: str) -> List[Tuple[str, Entry]]:
        q = query.lower()
        return [(p, e) for p, e in self.walk() if q in p.lower()]

    def storage_ids(self) -> set:
        return {e.storage_id for _, e in self.iter_files()}

    def counts(self) -> Tuple[int, int]:
        files = folders = 0
        for _, entry in self.walk():
            if isinstance(entry, FileEntry):
                files += 1
            else:
                folders += 1
        return files, folders

    # ------------------------------------------------------------------ #
    # Mutation
    # ------------------------------------------------------------------ #

    def insert_file(self, path: str, storage_id: str, wrapped_key: str) -> FileEntry:
        """Create missing folders along `path`, then set the leaf file entry."""
        parts = split_path(path)
        if not parts:
            raise ValueError("vault path must name a file")
        node = self.root
        for i, part in enumerate(parts[:-1]):
            child = node.contents.get(part)
            if child is None:
                child = FolderEntry()
                node.contents[part] = child
            elif not isinstance(child, FolderEntry):
                raise NotAFolder(f"'{join_path(*parts[:i + 1])}' is a file, not a folder")
            node = child
        if isinstance(node.contents.get(parts[-1]), FolderEntry):
            raise NotAFile(f"'{path}' is a folder, not a file")
        leaf = FileEntry(storage_id=storage_id, file_key=wrapped_key)
        node.contents[parts[-1]] = leaf
        return leaf

    def remove(self, path: str) -> List[str]:
        """Detach the entry at `path`; return every storage id under it (post-order)."""
        parts = split_path(path)
        if not parts:
            raise ValueError("refusing to remove the vault root")
        parent = self.find_folder(join_path(*parts[:-1]))
        target = parent.contents.get(parts[-1])
        if target is None:
            raise NotFound(f"path '{path}' not found in vault")
        ids = list(dict.fromkeys(_collect_ids(target)))
        del parent.contents[parts[-1]]
        return ids

    def rewrap_keys(self, old_password, new_password) -> "VaultIndex":
        """Return a copy whose wrapped file keys are re-encrypted under `new_password`."""
        out = self.copy()
        for _, entry in out.iter_files():
            file_key = bytearray(unwrap_file_key(entry.file_key, old_password))
            try:
                entry.file_key = wrap_file_key(bytes(file_key), new_password)
            finally:
                zero_bytes(file_key)
        return out


def _collect_ids(entry: Entry) -> Iterator[str]:
    if isinstance(entry, FileEntry):
        yield entry.storage_id
        return
    for child in entry.contents.values():
        yield from _collect_ids(child)
