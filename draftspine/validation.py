"""
DraftSpine Schema Validator
===========================

Pure predicates deciding whether a Version or Branch record is well-formed.

Records may be in-memory dataclasses or raw persisted dicts (camelCase keys),
and may be arbitrarily malformed after a partial write. Every function here
is total: missing or extra fields produce False, never an exception.
"""

from typing import Any, Optional, Tuple

from .models import INITIAL_VERSION

# (attribute name, persisted key)
VERSION_REQUIRED_STRING_PROPS: Tuple[Tuple[str, str], ...] = (
    ("timestamp", "timestamp"),
    ("branch_id", "branchId"),
)

BRANCH_REQUIRED_STRING_PROPS: Tuple[Tuple[str, str], ...] = (
    ("id", "id"),
    ("name", "name"),
    ("current_version_id", "currentVersionId"),
    ("created_at", "createdAt"),
)

_MISSING = object()


def _field(record: Any, attr: str, key: str) -> Any:
    if isinstance(record, dict):
        return record.get(key, _MISSING)
    return getattr(record, attr, _MISSING)


def is_valid_version(version: Any) -> bool:
    """String timestamp and branch id, a list of steps, and content present."""
    if version is None:
        return False

    for attr, key in VERSION_REQUIRED_STRING_PROPS:
        if not isinstance(_field(version, attr, key), str):
            return False

    if not isinstance(_field(version, "steps", "steps"), list):
        return False

    content = _field(version, "content", "content")
    return content is not _MISSING and content is not None


def is_valid_branch(branch: Any) -> bool:
    """Id, name, tip version id and creation timestamp are all strings."""
    if branch is None:
        return False

    return all(
        isinstance(_field(branch, attr, key), str)
        for attr, key in BRANCH_REQUIRED_STRING_PROPS
    )


def is_valid_version_number(number: Any) -> bool:
    # bool is an int subclass; True must not pass as version 1
    return isinstance(number, int) and not isinstance(number, bool) and number >= INITIAL_VERSION


def parse_version_id(value: Any) -> Optional[int]:
    """Accept an int or a decimal string; anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None
