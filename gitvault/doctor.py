"""
Consistency checks for a gitvault remote.

This implements:
- Required config objects present on the branch tip
- Index vs remote object consistency (missing / orphaned objects)
- Shared index vs published capsules
- Storage ids reused by more than one vault path

`prune` deletes orphaned objects in one incremental commit.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .logging import get_logger
from .session import INDEX_PATH, MASTER_KEY_PATH, SETTINGS_PATH, SHARED_INDEX_PATH, Session
from .shared import capsule_path

LOG = get_logger()

CONFIG_OBJECTS = {MASTER_KEY_PATH, INDEX_PATH, SETTINGS_PATH, SHARED_INDEX_PATH}


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    OK = "OK"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class CheckResult:
    id: str
    severity: Severity
    message: str
    path: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "message": self.message,
            "path": self.path,
            "details": self.details or None,
        }


class VaultDoctor:
    def __init__(self, session: Session) -> None:
        self.session = session
        self._remote_objects: Optional[Set[str]] = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def remote_objects(self) -> Set[str]:
        if self._remote_objects is None:
            self._remote_objects = set(self.session.remote.list_objects(self.session.key))
        return self._remote_objects

    def run(self) -> List[CheckResult]:
        results: List[CheckResult] = []

        results.extend(self._check_config_objects())
        results.extend(self._check_index_objects())
        results.extend(self._check_capsules())
        results.extend(self._check_orphans())

        if not any(r.severity != Severity.OK for r in results):
            results.append(
                CheckResult(
                    id="summary_all_good",
                    severity=Severity.OK,
                    message="Vault passed all checks.",
                )
            )
        return results

    def orphans(self) -> List[str]:
        referenced = set(CONFIG_OBJECTS)
        referenced |= self.session.index.storage_ids()
        referenced |= {capsule_path(ref) for ref in self.session.shared_index.files}
        return sorted(self.remote_objects - referenced)

    def prune(self) -> List[str]:
        """Remove every orphaned object; no commit is made when there are none."""
        orphans = self.orphans()
        if orphans:
            self.session.remote.write(self.session.key, {}, self.session.commit_meta(), removals=orphans)
            self._remote_objects = None
            LOG.info("orphans_pruned", username=self.session.username, objects=len(orphans))
        return orphans

    # ------------------------------------------------------------------ #
    # Individual check groups
    # ------------------------------------------------------------------ #

    def _check_config_objects(self) -> List[CheckResult]:
        results: List[CheckResult] = []
        if MASTER_KEY_PATH not in self.remote_objects:
            results.append(
                CheckResult(
                    id="master_key_missing",
                    severity=Severity.ERROR,
                    message="Encrypted master key is missing; the vault cannot be unlocked again.",
                    path=MASTER_KEY_PATH,
                )
            )
        for path in (INDEX_PATH, SETTINGS_PATH):
            if path not in self.remote_objects:
                results.append(
                    CheckResult(
                        id="config_object_missing",
                        severity=Severity.WARNING,
                        message="Config object missing; defaults will be used on next connect.",
                        path=path,
                    )
                )
        return results

    def _check_index_objects(self) -> List[CheckResult]:
        results: List[CheckResult] = []
        owners: Dict[str, List[str]] = defaultdict(list)
        for path, entry in self.session.index.iter_files():
            owners[entry.storage_id].append(path)
            if entry.storage_id not in self.remote_objects:
                results.append(
                    CheckResult(
                        id="object_missing",
                        severity=Severity.ERROR,
                        message="Object referenced by the index is missing on the remote.",
                        path=path,
                        details={"storage_id": entry.storage_id},
                    )
                )
        for storage_id, paths in owners.items():
            if len(paths) > 1:
                results.append(
                    CheckResult(
                        id="storage_id_reused",
                        severity=Severity.ERROR,
                        message="One storage id backs more than one vault path.",
                        details={"storage_id": storage_id, "paths": paths},
                    )
                )
        if not results:
            results.append(
                CheckResult(
                    id="index_objects_ok",
                    severity=Severity.OK,
                    message="Every indexed file has its object on the remote.",
                )
            )
        return results

    def _check_capsules(self) -> List[CheckResult]:
        results: List[CheckResult] = []
        for entry in self.session.shared_index.list():
            path = capsule_path(entry.reference)
            if path not in self.remote_objects:
                results.append(
                    CheckResult(
                        id="capsule_missing",
                        severity=Severity.ERROR,
                        message="Shared index entry has no published capsule.",
                        path=path,
                        details={"original_path": entry.original_path},
                    )
                )
        return results

    def _check_orphans(self) -> List[CheckResult]:
        return [
            CheckResult(
                id="object_orphan",
                severity=Severity.WARNING,
                message="Object exists on the remote but is not referenced by any index (orphan).",
                path=path,
            )
            for path in self.orphans()
        ]
