from datetime import datetime, timezone
from typing import Annotated, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

DEFAULT_AUTHOR_NAME = "gitvault"
DEFAULT_AUTHOR_EMAIL = "gitvault@users.noreply.github.com"
DEFAULT_COMMIT_MESSAGE = "gitvault: updated vault"
DEFAULT_FILE_ID_LENGTH = 16
DEFAULT_SHARE_ID_LENGTH = 6


class FileEntry(BaseModel):
    """Leaf of the vault tree: where the ciphertext lives and how to unlock it."""
    type: Literal["file"] = "file"
    storage_id: str                  # remote object name (hex)
    file_key: str                    # hex(encrypt_with_password(file key, vault password))


class FolderEntry(BaseModel):
    """Inner node of the vault tree."""
    type: Literal["folder"] = "folder"
    contents: Dict[str, "Entry"] = {}


Entry = Annotated[Union[FileEntry, FolderEntry], Field(discriminator="type")]
FolderEntry.model_rebuild()


class IndexFile(BaseModel):
    """Serialized form of the vault tree stored at `.config/index`."""
    model_config = {"extra": "forbid"}

    version: int = 1
    root: Dict[str, Entry] = {}


class SharedFileEntry(BaseModel):
    """One published share capsule."""
    name: str
    reference: str
    password: str
    shared_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    original_path: str


class SharedIndexFile(BaseModel):
    """Serialized form of the shared index stored at `shared/.config/index`."""
    model_config = {"extra": "forbid"}

    files: Dict[str, SharedFileEntry] = {}


class CommitMeta(BaseModel):
    author_name: str
    author_email: str
    message: str


class VaultSettings(BaseModel):
    """Per-vault knobs persisted encrypted at `.config/settings`."""
    commit_author_name: str = DEFAULT_AUTHOR_NAME
    commit_author_email: str = DEFAULT_AUTHOR_EMAIL
    commit_message: str = DEFAULT_COMMIT_MESSAGE
    file_id_length: int = DEFAULT_FILE_ID_LENGTH
    share_id_length: int = DEFAULT_SHARE_ID_LENGTH

    model_config = {"validate_assignment": True}

    @field_validator("commit_author_name", "commit_author_email", "commit_message")
    @classmethod
    def validate_not_empty(cls, v: str):
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator("file_id_length")
    @classmethod
    def validate_file_id_length(cls, v: int):
        """Storage ids are hex, so the length must be an even count of 8-64 characters."""
        if v < 8 or v > 64:
            raise ValueError(f"file id length must be between 8 and 64 (got {v})")
        if v % 2:
            raise ValueError(f"file id length must be even (got {v})")
        return v

    @field_validator("share_id_length")
    @classmethod
    def validate_share_id_length(cls, v: int):
        if v < 4 or v > 32:
            raise ValueError(f"share id length must be between 4 and 32 (got {v})")
        return v

    @classmethod
    def from_stored(cls, data: dict) -> "VaultSettings":
        """Load persisted settings, treating blank or non-positive legacy values as absent."""
        cleaned = {}
        for k, v in data.items():
            if v is None or v == "":
                continue
            if isinstance(v, int) and v <= 0:
                continue
            cleaned[k] = v
        return cls.model_validate(cleaned)

    def commit_meta(self) -> CommitMeta:
        return CommitMeta(
            author_name=self.commit_author_name,
            author_email=self.commit_author_email,
            message=self.commit_message,
        )


class SessionState(BaseModel):
    """Local session cache; holds decrypted secrets, so it is written 0600."""
    username: str
    password: str
    master_key_b64: str
    index: IndexFile = IndexFile()
    shared_index: SharedIndexFile = SharedIndexFile()
    settings: VaultSettings = VaultSettings()
    saved_at: Optional[str] = None
