"""Local filesystem helpers: everything gitvault writes to disk goes through here."""
import os, pathlib, stat, tempfile
from typing import Iterator, Tuple

from .errors import UnsafePath

NOFOLLOW_FLAG = getattr(os, "O_NOFOLLOW", 0)


def ensure_not_symlink(path, label: str):
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    if stat.S_ISLNK(st.st_mode):
        raise UnsafePath(f"{label} {path} is a symlink; refusing to follow it")


def ensure_regular_file(path, label: str):
    """A single-link regular file; session caches and downloads must not be aliases."""
    st = os.lstat(path)
    if not stat.S_ISREG(st.st_mode):
        raise UnsafePath(f"{label} {path} is not a regular file")
    if st.st_nlink > 1:
        raise UnsafePath(f"{label} {path} has {st.st_nlink} hard links")


def safe_read_bytes(path) -> bytes:
    path = pathlib.Path(path)
    ensure_regular_file(path, "File")
    fd = os.open(path, os.O_RDONLY | NOFOLLOW_FLAG)
    with os.fdopen(fd, "rb") as f:
        return f.read()


def write_secure_file(path, data: bytes):
    """Replace `path` atomically with an owner-only (0600) file holding `data`."""
    path = pathlib.Path(path)
    ensure_not_symlink(path.parent, "Directory")
    ensure_not_symlink(path, "Destination")
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".part", dir=path.parent)
    try:
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        pathlib.Path(tmp_name).unlink(missing_ok=True)
        raise
    ensure_regular_file(path, "Destination")


def iter_local_files(root) -> Iterator[Tuple[str, pathlib.Path]]:
    """Yield `(posix relative path, path)` for regular files under `root`, sorted, skipping symlinks."""
    root = pathlib.Path(root)
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = pathlib.Path(dirpath)
        for name in sorted(filenames):
            p = base / name
            if p.is_symlink() or not p.is_file():
                continue
            yield p.relative_to(root).as_posix(), p
