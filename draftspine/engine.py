"""
DraftSpine History Engine
=========================

Owns every version and branch of one document and all operations on them:
commit, navigation, branching, effective-history resolution, storage
validation and corruption recovery.

The engine is a plain service object. Build one, hand it to whatever needs
it (save scheduler, storage codec, HTTP adapter); there is no module-level
instance.

Usage:
    engine = HistoryEngine(on_content_change=editor.set_content)
    engine.apply_change({"insert": "Hello"})
    engine.commit({"type": "doc", "text": "Hello"})

    result = engine.create_branch("1")
    if result.ok:
        engine.commit({"type": "doc", "text": "Hi"})

Invariants:
    - version numbers are global: next = highest existing + 1, first = 1
    - a commit lands on the active branch and advances only that branch's tip
    - every navigation (switch, create, reset, recover) clears pending changes
      and cancels any scheduled save
"""

import logging
import threading
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import ErrorCode, ErrorMessages, Result
from .models import (
    INITIAL_VERSION,
    MAIN_BRANCH_ID,
    Branch,
    BranchVersion,
    ChangeRecord,
    HistorySnapshot,
    StorageValidationState,
    Version,
    new_id,
    utc_now,
)
from .validation import (
    is_valid_branch,
    is_valid_version,
    is_valid_version_number,
    parse_version_id,
)

logger = logging.getLogger(__name__)

ContentSink = Callable[[Any], None]
SaveHook = Callable[["HistoryEngine"], Any]


class HistoryEngine:
    """
    Version/branch history for a single document.

    Args:
        on_content_change: called with a content snapshot whenever navigation
            changes the visible version (editing surface sink)
        save_hook: called with the engine after every successful mutation
    """

    def __init__(
        self,
        on_content_change: Optional[ContentSink] = None,
        save_hook: Optional[SaveHook] = None,
    ):
        self.on_content_change = on_content_change
        self.save_hook = save_hook

        # Public operations are serialized; the save timer fires on its own thread
        self._lock = threading.RLock()
        self._scheduler = None

        self._init_state()
        logger.info("[HistoryEngine] Initialized")

    def _init_state(self):
        self._current_version = INITIAL_VERSION
        self._pending: List[ChangeRecord] = []
        self._versions: Dict[int, Version] = {}
        self._branches: Dict[str, Branch] = {}
        self._active_branch_id = MAIN_BRANCH_ID
        self._is_dirty = False
        self._last_saved = utc_now()
        self._is_initial_editing = True
        self._storage_state = StorageValidationState()

    # -------------------------------------------------------------------------
    # STATE ACCESS
    # -------------------------------------------------------------------------

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def current_version(self) -> int:
        return self._current_version

    @property
    def active_branch_id(self) -> str:
        return self._active_branch_id

    @property
    def pending_changes(self) -> List[ChangeRecord]:
        with self._lock:
            return list(self._pending)

    @property
    def versions(self) -> Dict[int, Version]:
        with self._lock:
            return {n: self._versions[n] for n in sorted(self._versions)}

    @property
    def branches(self) -> Dict[str, Branch]:
        with self._lock:
            return {b: self._branches[b] for b in sorted(self._branches)}

    @property
    def is_dirty(self) -> bool:
        return self._is_dirty

    @property
    def last_saved(self) -> str:
        return self._last_saved

    @property
    def storage_state(self) -> StorageValidationState:
        return self._storage_state

    @property
    def has_content(self) -> bool:
        return bool(self._versions)

    @property
    def is_initial_editing(self) -> bool:
        return self._is_initial_editing

    @property
    def max_version(self) -> int:
        with self._lock:
            return max(self._versions) if self._versions else INITIAL_VERSION

    def attach_scheduler(self, scheduler) -> None:
        """Register the save scheduler so navigation can cancel pending saves."""
        self._scheduler = scheduler

    def get_branch(self, branch_id: str) -> Optional[Branch]:
        with self._lock:
            return self._branches.get(branch_id)

    def get_active_branch(self) -> Optional[Branch]:
        """The active branch; present once anything has been committed or loaded."""
        with self._lock:
            return self._branches.get(self._active_branch_id)

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "current_version": self._current_version,
                "active_branch_id": self._active_branch_id,
                "is_dirty": self._is_dirty,
                "last_saved": self._last_saved,
                "has_content": self.has_content,
                "is_initial_editing": self._is_initial_editing,
                "pending_changes": len(self._pending),
                "version_count": len(self._versions),
                "branch_count": len(self._branches),
                "storage": self._storage_state.to_dict(),
            }

    def snapshot(self) -> HistorySnapshot:
        """Copy of the persistable state."""
        with self._lock:
            return HistorySnapshot(
                current_version=self._current_version,
                versions=dict(self._versions),
                branches=dict(self._branches),
                active_branch_id=self._active_branch_id,
                last_saved=self._last_saved,
            )

    # -------------------------------------------------------------------------
    # EDITING SURFACE SINKS
    # -------------------------------------------------------------------------

    def apply_change(self, step: Any) -> ChangeRecord:
        """Buffer one change record until the next commit."""
        with self._lock:
            change = ChangeRecord(
                id=new_id(),
                version=self._current_version,
                timestamp=utc_now(),
                step=step,
            )
            self._pending.append(change)
            self._is_dirty = True
            return change

    def set_dirty(self, is_dirty: bool) -> None:
        with self._lock:
            self._is_dirty = is_dirty

    # -------------------------------------------------------------------------
    # VERSIONS
    # -------------------------------------------------------------------------

    def commit(self, content: Any, changes: Optional[List[Any]] = None) -> Result[Version]:
        """
        Create the next version on the active branch.

        Pending change records (followed by any passed in `changes`) are
        attached to the version and cleared. Every call creates a version;
        identical content is not deduplicated.
        """
        if content is None:
            return Result.failure(ErrorCode.INVALID_CONTENT, ErrorMessages.INVALID_CONTENT)

        with self._lock:
            number = max(self._versions) + 1 if self._versions else INITIAL_VERSION
            parent = self._current_version if self._versions else None

            branch = self._branches.get(self._active_branch_id)
            if branch is None:
                branch = self._ensure_main(number)
                self._active_branch_id = branch.id

            version = Version(
                number=number,
                content=content,
                steps=self._pending + list(changes or []),
                timestamp=utc_now(),
                branch_id=branch.id,
                parent_version=parent,
            )
            self._versions[number] = version
            self._branches[branch.id] = replace(branch, current_version_id=str(number))

            self._current_version = number
            self._pending = []
            self._is_dirty = False
            self._last_saved = version.timestamp
            self._is_initial_editing = False

            logger.debug(
                f"[HistoryEngine] Committed v{number} on {branch.id} "
                f"(parent={parent}, steps={len(version.steps)})"
            )
            self._persist()
            return Result.success(version)

    def get_version(self, number: Any) -> Result[Version]:
        with self._lock:
            failure = self._check_version(number)
            if failure is not None:
                return failure
            return Result.success(self._versions[number])

    def get_version_content(self, number: Any) -> Result[Any]:
        """Content snapshot of a version, or a typed error."""
        with self._lock:
            if not self._versions:
                return Result.failure(
                    ErrorCode.VERSION_NOT_FOUND,
                    ErrorMessages.version_content_not_found(number),
                )
            failure = self._check_version(number)
            if failure is not None:
                return failure

            version = self._versions[number]
            if not is_valid_version(version):
                return Result.failure(ErrorCode.CONTENT_CORRUPTED, ErrorMessages.CONTENT_CORRUPTED)
            return Result.success(version.content)

    def get_version_range(self, start: Any, end: Any) -> Result[List[Version]]:
        """Versions numbered start..end inclusive, ascending."""
        with self._lock:
            for bound in (start, end):
                failure = self._check_version(bound)
                if failure is not None:
                    return failure
            if start > end:
                return Result.failure(ErrorCode.INVALID_VERSION, ErrorMessages.START_GREATER_THAN_END)

            return Result.success([
                self._versions[n] for n in sorted(self._versions) if start <= n <= end
            ])

    def set_current_version(self, number: Any) -> Result[None]:
        """Move the cursor; branch tips are left alone."""
        with self._lock:
            failure = self._check_version(number)
            if failure is not None:
                return failure

            self._current_version = number
            self._persist()
            self._notify_content(number)
            return Result.success()

    def _check_version(self, number: Any) -> Optional[Result]:
        if not is_valid_version_number(number):
            return Result.failure(ErrorCode.INVALID_VERSION, ErrorMessages.version_invalid(number))
        if number not in self._versions:
            return Result.failure(ErrorCode.VERSION_NOT_FOUND, ErrorMessages.version_not_found(number))
        return None

    # -------------------------------------------------------------------------
    # BRANCHES
    # -------------------------------------------------------------------------

    def create_branch(self, parent_version_id: Any) -> Result[Branch]:
        """
        Fork a new branch off the active branch at `parent_version_id`.

        The new branch becomes active and the cursor moves to the fork
        version, so the next commit lands on the new branch.
        """
        with self._lock:
            number = parse_version_id(parent_version_id)
            if number is None or number not in self._versions:
                return Result.failure(
                    ErrorCode.INVALID_OPERATION,
                    ErrorMessages.version_not_found(parent_version_id),
                )

            active = self._branches.get(self._active_branch_id)
            if active is None:
                return Result.failure(
                    ErrorCode.INVALID_OPERATION,
                    ErrorMessages.branch_not_found(self._active_branch_id),
                )

            if number not in self._effective_history(active):
                return Result.failure(
                    ErrorCode.INVALID_OPERATION,
                    f"Version {number} is not part of branch {active.name}",
                )

            non_main = sum(1 for b in self._branches.values() if not b.is_main)
            branch = Branch(
                id=new_id(),
                name=f"Branch {non_main + 1}",
                parent_branch_id=active.id,
                parent_version_id=str(number),
                current_version_id=str(number),
                created_at=utc_now(),
                is_main=False,
            )
            self._branches[branch.id] = branch

            self._checkpoint()
            self._active_branch_id = branch.id
            self._current_version = number

            logger.info(f"[HistoryEngine] Created {branch.name} ({branch.id}) from v{number} of {active.id}")
            self._persist()
            self._notify_content(number)
            return Result.success(branch)

    def switch_branch(self, branch_id: Any) -> Result[Branch]:
        """
        Make `branch_id` active and move the cursor to its tip.

        Uncommitted changes on the branch being left are discarded and any
        scheduled save is cancelled: a switch is a hard checkpoint.
        """
        with self._lock:
            if not isinstance(branch_id, str) or not branch_id:
                return Result.failure(ErrorCode.INVALID_BRANCH, ErrorMessages.branch_invalid(branch_id))

            branch = self._branches.get(branch_id)
            if branch is None:
                return Result.failure(ErrorCode.BRANCH_NOT_FOUND, ErrorMessages.branch_not_found(branch_id))

            tip = branch.tip
            if tip is None or tip not in self._versions:
                return Result.failure(
                    ErrorCode.INVALID_OPERATION,
                    f"Branch {branch_id} points at missing version {branch.current_version_id}",
                )

            if self._pending:
                logger.info(
                    f"[HistoryEngine] Discarding {len(self._pending)} pending changes "
                    f"on {self._active_branch_id}"
                )
            self._checkpoint()
            self._active_branch_id = branch_id
            self._current_version = tip

            logger.info(f"[HistoryEngine] Switched to {branch.name} at v{tip}")
            self._persist()
            self._notify_content(tip)
            return Result.success(branch)

    def get_branch_versions(self, branch_id: Any) -> Result[List[BranchVersion]]:
        """
        Effective history of a branch, ancestors included.

        Each ancestor contributes only its own versions up to the fork point
        into its child; the branch contributes its own versions up to its tip.
        Sorted by version number (commit order).
        """
        with self._lock:
            if not isinstance(branch_id, str) or not branch_id:
                return Result.failure(ErrorCode.INVALID_BRANCH, ErrorMessages.branch_invalid(branch_id))

            branch = self._branches.get(branch_id)
            if branch is None:
                return Result.failure(ErrorCode.BRANCH_NOT_FOUND, ErrorMessages.branch_not_found(branch_id))

            history = self._effective_history(branch)
            tip = branch.tip
            return Result.success([
                BranchVersion(version=history[n], branch=branch, is_head=(n == tip))
                for n in sorted(history)
            ])

    def _effective_history(
        self,
        branch: Branch,
        limit: Optional[int] = None,
        visited: Optional[Set[str]] = None,
    ) -> Dict[int, Version]:
        visited = visited if visited is not None else set()
        if not isinstance(branch.id, str) or branch.id in visited:
            # Parent cycle or unusable id in corrupt data
            return {}
        visited.add(branch.id)

        collected: Dict[int, Version] = {}

        if isinstance(branch.parent_branch_id, str):
            parent = self._branches.get(branch.parent_branch_id)
            fork = branch.fork_point
            if parent is not None and fork is not None:
                bound = fork if limit is None else min(fork, limit)
                collected.update(self._effective_history(parent, bound, visited))

        upper = branch.tip
        if upper is None:
            return collected
        if limit is not None:
            upper = min(upper, limit)

        for number in sorted(self._versions):
            if number > upper:
                break
            version = self._versions[number]
            if getattr(version, "branch_id", None) == branch.id:
                collected.setdefault(number, version)

        return collected

    def _ensure_main(self, tip: int = INITIAL_VERSION) -> Branch:
        main = self._branches.get(MAIN_BRANCH_ID)
        if main is None:
            main = Branch.main(tip)
            self._branches[MAIN_BRANCH_ID] = main
            logger.info("[HistoryEngine] Created main branch")
        return main

    # -------------------------------------------------------------------------
    # STORAGE HEALTH
    # -------------------------------------------------------------------------

    def validate_storage(self) -> StorageValidationState:
        """
        Scan versions in ascending order, stopping at the first malformed
        record, then scan branches the same way.
        """
        with self._lock:
            is_valid = True
            last_valid = INITIAL_VERSION - 1

            for number in sorted(self._versions):
                if not is_valid_version(self._versions[number]):
                    logger.warning(f"[HistoryEngine] Version {number} failed validation")
                    is_valid = False
                    break
                last_valid = number

            for branch_id in sorted(self._branches):
                if not is_valid_branch(self._branches[branch_id]):
                    logger.warning(f"[HistoryEngine] Branch {branch_id} failed validation")
                    is_valid = False
                    break

            self._storage_state = StorageValidationState(
                is_storage_valid=is_valid,
                last_valid_version=last_valid,
            )
            return self._storage_state

    def recover_from_corruption(self) -> Result[int]:
        """
        Truncate history to the last valid version.

        No-op when the last validation was clean. The returned error is
        informational: STORAGE_ERROR with `recoverable=True` and the version
        recovered to, or `recoverable=False, content_reset=True` when nothing
        survived and the document starts over.
        """
        with self._lock:
            if self._storage_state.is_storage_valid:
                return Result.success()

            last_valid = self._storage_state.last_valid_version
            kept_versions = {
                n: self._versions[n]
                for n in sorted(self._versions)
                if n <= last_valid and is_valid_version(self._versions[n])
            }

            self._checkpoint()

            if not kept_versions:
                self._versions = {}
                self._branches = {MAIN_BRANCH_ID: Branch.main()}
                self._active_branch_id = MAIN_BRANCH_ID
                self._current_version = INITIAL_VERSION
                self._is_initial_editing = True
                self._storage_state = StorageValidationState(True, INITIAL_VERSION - 1)

                logger.error("[HistoryEngine] Nothing recoverable, history reset")
                self._persist()
                return Result.failure(
                    ErrorCode.STORAGE_ERROR,
                    ErrorMessages.STORAGE_CORRUPTED,
                    recoverable=False,
                    content_reset=True,
                )

            kept_branches = self._salvage_branches(kept_versions)
            recovered_to = max(kept_versions)
            dropped = len(self._versions) - len(kept_versions)

            self._versions = kept_versions
            self._branches = kept_branches

            owner = kept_versions[recovered_to].branch_id
            if owner in kept_branches:
                self._active_branch_id = owner
                self._current_version = recovered_to
            else:
                self._active_branch_id = MAIN_BRANCH_ID
                main_tip = kept_branches[MAIN_BRANCH_ID].tip
                self._current_version = main_tip if main_tip in kept_versions else recovered_to

            self._is_initial_editing = False
            self._storage_state = StorageValidationState(True, recovered_to)

            logger.warning(
                f"[HistoryEngine] Recovered to v{recovered_to}: kept {len(kept_versions)} versions "
                f"and {len(kept_branches)} branches, dropped {dropped} versions"
            )
            self._persist()
            self._notify_content(self._current_version)
            return Result.failure(
                ErrorCode.STORAGE_ERROR,
                ErrorMessages.storage_recovered(recovered_to),
                data=recovered_to,
                recoverable=True,
            )

    def _salvage_branches(self, kept_versions: Dict[int, Version]) -> Dict[str, Branch]:
        """
        Keep valid branches that own a surviving version or whose tip is one.
        Tips past the kept range rewind to the branch's newest surviving
        version; parents that were dropped are replaced by the nearest kept
        ancestor.
        """
        owners: Dict[str, List[int]] = {}
        for number, version in kept_versions.items():
            owners.setdefault(version.branch_id, []).append(number)

        kept: Dict[str, Branch] = {}
        for branch_id in sorted(self._branches):
            branch = self._branches[branch_id]
            if not is_valid_branch(branch):
                continue
            if branch_id not in owners and branch.tip not in kept_versions:
                logger.info(f"[HistoryEngine] Dropping branch {branch_id}, tip v{branch.current_version_id} lost")
                continue
            if branch.tip not in kept_versions:
                branch = replace(branch, current_version_id=str(max(owners[branch_id])))
            kept[branch_id] = branch

        if MAIN_BRANCH_ID not in kept:
            kept[MAIN_BRANCH_ID] = Branch.main(min(kept_versions))

        for branch_id, branch in list(kept.items()):
            parent_id = branch.parent_branch_id
            if branch.is_main or (isinstance(parent_id, str) and parent_id in kept):
                continue
            kept[branch_id] = replace(branch, parent_branch_id=self._nearest_kept_ancestor(branch, kept))

        return kept

    def _nearest_kept_ancestor(self, branch: Branch, kept: Dict[str, Branch]) -> str:
        seen: Set[str] = set()
        parent_id = branch.parent_branch_id
        while isinstance(parent_id, str) and parent_id not in seen:
            if parent_id in kept:
                return parent_id
            seen.add(parent_id)
            parent = self._branches.get(parent_id)
            parent_id = parent.parent_branch_id if parent is not None else None
        return MAIN_BRANCH_ID

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    def reset(self) -> None:
        """Drop all history and start over."""
        with self._lock:
            self._checkpoint()
            self._init_state()
            logger.info("[HistoryEngine] Reset to empty history")
            self._persist()

    def restore(self, snapshot: HistorySnapshot) -> None:
        """Adopt loaded state. Does not persist; validation is the caller's job."""
        with self._lock:
            self._checkpoint()
            self._versions = dict(snapshot.versions)
            self._branches = dict(snapshot.branches)
            self._current_version = snapshot.current_version
            self._active_branch_id = snapshot.active_branch_id
            self._last_saved = snapshot.last_saved or utc_now()
            self._is_initial_editing = not self._versions
            self._storage_state = StorageValidationState()

    def _checkpoint(self):
        """Cancel scheduled saves and drop uncommitted changes."""
        if self._scheduler is not None:
            self._scheduler.cancel()
        self._pending = []
        self._is_dirty = False

    def _persist(self):
        if self.save_hook is None:
            return
        try:
            self.save_hook(self)
        except Exception as e:
            logger.error(f"[HistoryEngine] Save hook failed: {e}")

    def _notify_content(self, number: int):
        if self.on_content_change is None:
            return
        version = self._versions.get(number)
        if not is_valid_version(version):
            logger.warning(f"[HistoryEngine] Not publishing content of v{number}, record invalid")
            return
        try:
            self.on_content_change(version.content)
        except Exception as e:
            logger.error(f"[HistoryEngine] Content sink failed: {e}")
