"""
DraftSpine Timeline Helpers
===========================

Small functions the timeline slider and branch graph build on: ordering
branches for display, the slider's version range, previous/next stepping
and relative timestamps.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Union

from .errors import ErrorCode, ErrorMessages, Result
from .models import INITIAL_VERSION, Branch, BranchVersion, Version

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VersionRange:
    min: int
    max: int

    def __contains__(self, version: Any) -> bool:
        return isinstance(version, int) and self.min <= version <= self.max

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max}


def get_all_branches(branches: Union[dict, Iterable[Branch]]) -> List[Branch]:
    """Main first, then the others oldest first."""
    if isinstance(branches, dict):
        branches = branches.values()
    items = list(branches)
    main = [b for b in items if b.is_main]
    rest = sorted(
        (b for b in items if not b.is_main),
        key=lambda b: (b.created_at or "", b.id or ""),
    )
    return main + rest


def calculate_branch_version_range(
    branch_versions: Iterable[Union[BranchVersion, Version]],
    min_version: int = INITIAL_VERSION,
) -> VersionRange:
    """Slider bounds over a branch's effective history."""
    numbers = []
    for item in branch_versions:
        version = item.version if isinstance(item, BranchVersion) else item
        numbers.append(version.number)

    if not numbers:
        return VersionRange(min_version, min_version)
    return VersionRange(min(numbers + [min_version]), max(numbers + [min_version]))


# -------------------------------------------------------------------------------
# NAVIGATION
# -------------------------------------------------------------------------------

def can_navigate_previous(engine) -> bool:
    return engine.has_content and engine.current_version > INITIAL_VERSION


def can_navigate_next(engine) -> bool:
    return engine.has_content and engine.current_version < engine.max_version


def step_version(engine, delta: int) -> Result[None]:
    """Move the cursor `delta` versions, clamped to the stored range."""
    if not engine.has_content:
        return Result.failure(
            ErrorCode.VERSION_NOT_FOUND,
            ErrorMessages.version_content_not_found(engine.current_version),
        )
    target = engine.current_version + delta
    target = max(INITIAL_VERSION, min(target, engine.max_version))
    if target == engine.current_version:
        return Result.success()
    return engine.set_current_version(target)


def handle_version_change(engine, version: Any, version_range: VersionRange) -> Result[Any]:
    """
    Slider handler: range check, move the cursor, return the new content.

    The content sink has already been notified by the engine when this
    returns successfully.
    """
    if version not in version_range:
        logger.debug(f"[Timeline] Rejected v{version}, range {version_range.min}..{version_range.max}")
        return Result.failure(
            ErrorCode.INVALID_VERSION,
            ErrorMessages.version_out_of_range(version, version_range.min, version_range.max),
        )

    result = engine.set_current_version(version)
    if not result.ok:
        return result
    return engine.get_version_content(version)


# -------------------------------------------------------------------------------
# RELATIVE TIME
# -------------------------------------------------------------------------------

def _parse_moment(moment: Any) -> Optional[datetime]:
    if isinstance(moment, datetime):
        parsed = moment
    elif isinstance(moment, str):
        try:
            parsed = datetime.fromisoformat(moment)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _months_between(earlier: datetime, later: datetime) -> int:
    months = (later.year - earlier.year) * 12 + (later.month - earlier.month)
    if (later.day, later.time()) < (earlier.day, earlier.time()):
        months -= 1
    return max(months, 0)


def time_ago(moment: Any, now: Optional[datetime] = None) -> str:
    """'just now', '5m ago', '3h ago', '2d ago', '4mo ago', '1y ago' or 'unknown'."""
    then = _parse_moment(moment)
    if then is None:
        return "unknown"
    now = _parse_moment(now) if now is not None else datetime.now(timezone.utc)

    seconds = int((now - then).total_seconds())
    if seconds < 60:
        return "just now"

    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m ago"

    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"

    days = hours // 24
    if days < 30:
        return f"{days}d ago"

    months = max(_months_between(then, now), 1)
    if months < 12:
        return f"{months}mo ago"
    return f"{months // 12}y ago"
