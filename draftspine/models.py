"""
DraftSpine Models
=================

Records that make up a document's history.

    Version        - immutable numbered snapshot of the document
    Branch         - named line of versions forked from a parent branch
    ChangeRecord   - one editing step captured between two versions
    BranchVersion  - presentation join of a Version and a Branch (not persisted)

Persisted records use camelCase keys (the storage contract shared with the
editing surface); in memory everything is snake_case.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4


INITIAL_VERSION = 1
MAIN_BRANCH_ID = "main"
MAIN_BRANCH_NAME = "Main"
SCHEMA_VERSION = 1
STORAGE_KEY = "document-versions"
SAVE_DEBOUNCE_MS = 1000


def utc_now() -> str:
    """ISO-8601 timestamp in UTC."""
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid4().hex


# -------------------------------------------------------------------------------
# CHANGE RECORDS
# -------------------------------------------------------------------------------

@dataclass
class ChangeRecord:
    """A single editing step produced by the editing surface."""
    id: str
    version: int        # cursor when the step was applied
    timestamp: str
    step: Any           # opaque payload, never interpreted here

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "version": self.version,
            "timestamp": self.timestamp,
            "step": self.step,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Any:
        # Unknown shapes are passed through untouched so a corrupt record
        # still round-trips and gets flagged by the validator, not here.
        if not isinstance(data, dict):
            return data
        return cls(
            id=data.get("id"),
            version=data.get("version"),
            timestamp=data.get("timestamp"),
            step=data.get("step"),
        )


def change_to_dict(change: Any) -> Any:
    return change.to_dict() if isinstance(change, ChangeRecord) else change


# -------------------------------------------------------------------------------
# VERSIONS
# -------------------------------------------------------------------------------

@dataclass(frozen=True)
class Version:
    """
    Immutable snapshot of the document.

    `number` is unique across the whole store and grows by one per commit,
    regardless of branch. `parent_version` is the cursor at commit time.
    """
    number: int
    content: Any
    steps: List[Any]
    timestamp: str
    branch_id: str
    parent_version: Optional[int] = None

    def to_dict(self) -> dict:
        steps = self.steps
        if isinstance(steps, list):
            steps = [change_to_dict(s) for s in steps]
        return {
            "content": self.content,
            "steps": steps,
            "timestamp": self.timestamp,
            "branchId": self.branch_id,
            "parentVersion": self.parent_version,
        }

    @classmethod
    def from_dict(cls, number: int, data: Any) -> 'Version':
        """Lenient decode: missing or mistyped fields are kept for validation."""
        if not isinstance(data, dict):
            data = {}
        steps = data.get("steps")
        if isinstance(steps, list):
            steps = [ChangeRecord.from_dict(s) for s in steps]
        return cls(
            number=number,
            content=data.get("content"),
            steps=steps,
            timestamp=data.get("timestamp"),
            branch_id=data.get("branchId"),
            parent_version=data.get("parentVersion"),
        )


# -------------------------------------------------------------------------------
# BRANCHES
# -------------------------------------------------------------------------------

def _optional_str(value: Any) -> Optional[str]:
    """Parent references are lookup keys; anything but a string or an int is dropped."""
    if isinstance(value, str):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


@dataclass
class Branch:
    """A named line of history."""
    id: str
    name: str
    parent_branch_id: Optional[str]
    parent_version_id: Optional[str]    # fork point
    current_version_id: str             # tip
    created_at: str
    is_main: bool = False

    @property
    def tip(self) -> Optional[int]:
        try:
            return int(self.current_version_id)
        except (TypeError, ValueError):
            return None

    @property
    def fork_point(self) -> Optional[int]:
        try:
            return int(self.parent_version_id)
        except (TypeError, ValueError):
            return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "parentBranchId": self.parent_branch_id,
            "parentVersionId": self.parent_version_id,
            "currentVersionId": self.current_version_id,
            "createdAt": self.created_at,
            "isMain": self.is_main,
        }

    @classmethod
    def from_dict(cls, data: Any) -> 'Branch':
        if not isinstance(data, dict):
            data = {}
        return cls(
            id=data.get("id"),
            name=data.get("name"),
            parent_branch_id=_optional_str(data.get("parentBranchId")),
            parent_version_id=_optional_str(data.get("parentVersionId")),
            current_version_id=data.get("currentVersionId"),
            created_at=data.get("createdAt"),
            is_main=bool(data.get("isMain", False)),
        )

    @classmethod
    def main(cls, version: int = INITIAL_VERSION) -> 'Branch':
        """Fresh main branch with safe defaults."""
        return cls(
            id=MAIN_BRANCH_ID,
            name=MAIN_BRANCH_NAME,
            parent_branch_id=None,
            parent_version_id=str(INITIAL_VERSION),
            current_version_id=str(version),
            created_at=utc_now(),
            is_main=True,
        )


@dataclass
class BranchVersion:
    """A version as presented under a branch's effective history."""
    version: Version
    branch: Branch
    is_head: bool = False

    def to_dict(self) -> dict:
        return {
            "versionNumber": self.version.number,
            "version": self.version.to_dict(),
            "branch": self.branch.to_dict(),
            "isHead": self.is_head,
        }


@dataclass
class StorageValidationState:
    """Outcome of the last storage validation pass."""
    is_storage_valid: bool = True
    last_valid_version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isStorageValid": self.is_storage_valid,
            "lastValidVersion": self.last_valid_version,
        }


@dataclass
class HistorySnapshot:
    """Everything the storage codec needs to rebuild an engine."""
    current_version: int = INITIAL_VERSION
    versions: Dict[int, Version] = field(default_factory=dict)
    branches: Dict[str, Branch] = field(default_factory=dict)
    active_branch_id: str = MAIN_BRANCH_ID
    last_saved: Optional[str] = None
