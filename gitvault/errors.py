"""Error taxonomy shared by every layer of gitvault.

Messages never carry key material or passwords; callers may show them to users.
"""


class VaultError(Exception):
    """Base class for all gitvault failures."""


class CryptoError(VaultError, ValueError):
    """A blob could not be decrypted."""


class TooShort(CryptoError):
    """Ciphertext is shorter than its fixed-size header."""


class AuthFailed(CryptoError):
    """AEAD tag verification failed: wrong password/key or tampered data."""


class NotFound(VaultError, FileNotFoundError):
    """A path, reference or remote object does not exist."""


class RemoteNotFound(NotFound):
    """The remote answered 'object not found' for a path."""


class NotAFolder(VaultError):
    """A path component that must be a folder is a file."""


class NotAFile(VaultError):
    """A path that must resolve to a file is a folder."""


class Ambiguous(VaultError):
    """A name query matched more than one entry with the same score."""

    def __init__(self, query: str, matches):
        self.query = query
        self.matches = list(matches)
        super().__init__(f"'{query}' matches {len(self.matches)} entries; be more specific")


class Malformed(VaultError, ValueError):
    """A decrypted blob or wire string does not have the expected structure."""


class InvalidSettings(VaultError, ValueError):
    """Vault settings failed local validation."""


class RemoteError(VaultError):
    """Base class for failures talking to the git remote."""


class RemoteConflict(RemoteError):
    """Push was rejected because the branch moved (non-fast-forward)."""


class RemoteUnavailable(RemoteError):
    """Network, authentication or server failure; retry is up to the user."""


class UnsafePath(VaultError, OSError):
    """A local path is a symlink, hard link or non-regular file where a plain file is required."""
