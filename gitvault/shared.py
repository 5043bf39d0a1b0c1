import base64
import binascii
import posixpath
from dataclasses import dataclass
from typing import List, Optional

from pydantic import ValidationError

from .crypto import decrypt_with_password, encrypt_with_password
from .errors import Ambiguous, Malformed, NotFound
from .models import SharedFileEntry, SharedIndexFile

SHARED_PREFIX = "shared"
SUBSTRING_PENALTY = 100


def capsule_path(reference: str) -> str:
    return f"{SHARED_PREFIX}/{reference}"


@dataclass
class ShareMatch:
    """A shared entry matched by name; lower score is a better match."""
    reference: str
    original_path: str
    file_name: str
    score: int

    @property
    def kind(self) -> str:
        if self.score == 0:
            return "exact"
        return "substring" if self.score >= SUBSTRING_PENALTY else "prefix"


class SharedIndex:
    def __init__(self, model: Optional[SharedIndexFile] = None):
        self.files = dict(model.files) if model is not None else {}

    def to_model(self) -> SharedIndexFile:
        return SharedIndexFile(files=self.files)

    def copy(self) -> "SharedIndex":
        return SharedIndex(self.to_model().model_copy(deep=True))

    def __contains__(self, reference: str) -> bool:
        return reference in self.files

    def to_bytes(self, password) -> bytes:
        return encrypt_with_password(self.to_model().model_dump_json().encode("utf-8"), password)

    @classmethod
    def from_bytes(cls, blob: bytes, password) -> "SharedIndex":
        plaintext = decrypt_with_password(blob, password)
        try:
            model = SharedIndexFile.model_validate_json(plaintext)
        except ValidationError as exc:
            raise Malformed("shared index is not valid") from exc
        return cls(model)

    def add(self, entry: SharedFileEntry):
        self.files[entry.reference] = entry

    def get(self, reference: str) -> SharedFileEntry:
        try:
            return self.files[reference]
        except KeyError:
            raise NotFound(f"shared file with reference '{reference}' not found") from None

    def remove(self, reference: str) -> SharedFileEntry:
        entry = self.get(reference)
        del self.files[reference]
        return entry

    def list(self) -> List[SharedFileEntry]:
        return sorted(self.files.values(), key=lambda e: (e.shared_at, e.reference))

    def find_by_name(self, query: str) -> List[ShareMatch]:
        """Case-insensitive match on file names: exact, then prefix, then substring."""
        q = query.lower()
        matches: List[ShareMatch] = []
        for entry in self.files.values():
            file_name = posixpath.basename(entry.original_path)
            lowered = file_name.lower()
            if lowered == q:
                score = 0
            elif lowered.startswith(q):
                score = len(file_name) - len(query)
            elif q in lowered:
                score = SUBSTRING_PENALTY + len(file_name) - len(query)
            else:
                continue
            matches.append(ShareMatch(entry.reference, entry.original_path, file_name, score))
        matches.sort(key=lambda m: (m.score, m.file_name, m.reference))
        return matches

    def resolve(self, reference_or_name: str) -> SharedFileEntry:
        """Exact reference first, then a unique best fuzzy name match."""
        if reference_or_name in self.files:
            return self.files[reference_or_name]
        matches = self.find_by_name(reference_or_name)
        if not matches:
            raise NotFound(f"no shared files found matching '{reference_or_name}'")
        best = [m for m in matches if m.score == matches[0].score]
        if len(best) > 1:
            raise Ambiguous(reference_or_name, best)
        return self.files[best[0].reference]


@dataclass
class ShareString:
    """`username:reference:password[:base64(filename)]`"""
    username: str
    reference: str
    password: str
    filename: Optional[str] = None

    def __str__(self) -> str:
        parts = [self.username, self.reference, self.password]
        if self.filename is not None:
            parts.append(base64.b64encode(self.filename.encode("utf-8")).decode("ascii"))
        return ":".join(parts)

    @classmethod
    def parse(cls, value: str) -> "ShareString":
        parts = value.strip().split(":")
        if len(parts) not in (3, 4) or not all(parts[:3]):
            raise Malformed("share string must be username:reference:password[:filename]")
        filename = None
        if len(parts) == 4:
            try:
                filename = base64.b64decode(parts[3].encode("ascii"), validate=True).decode("utf-8")
            except (binascii.Error, UnicodeError) as exc:
                raise Malformed("share string filename is not valid base64") from exc
        return cls(parts[0], parts[1], parts[2], filename)
