"""
DraftSpine Storage Codec
========================

Serializes the whole history into one key-value entry and rebuilds it on
start.

Load flow:
1. Read the raw blob (absent -> empty engine, nothing to recover)
2. Parse JSON and rebuild versions/branches leniently
3. Make sure a main branch exists
4. Hand the collections to the engine and validate
5. Recover to the last valid version if validation fails

Any parse or serialize failure is logged and returned as a STORAGE_ERROR
result; the engine falls back to an empty history rather than crashing.

Usage:
    codec = StorageCodec(KeyValueStore(db_path))
    result = codec.load(engine)     # recovery result, informational
    codec.attach(engine)            # persist after every mutation
"""

import json
import logging
from dataclasses import replace
from typing import Any, Dict, Optional

from .errors import ErrorCode, ErrorMessages, Result
from .metrics import MetricsCollector
from .models import (
    INITIAL_VERSION,
    MAIN_BRANCH_ID,
    SCHEMA_VERSION,
    STORAGE_KEY,
    Branch,
    HistorySnapshot,
    Version,
)
from .validation import is_valid_branch, parse_version_id

logger = logging.getLogger(__name__)


class StorageCodecError(ValueError):
    """Raised internally when a blob cannot be decoded at all."""


class StorageCodec:
    """Full-history persistence for a HistoryEngine."""

    def __init__(
        self,
        store,
        key: str = STORAGE_KEY,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.key = key
        self.metrics = metrics or MetricsCollector()

    def attach(self, engine) -> None:
        """Persist after every successful mutating engine operation."""
        engine.save_hook = self.save

    # -------------------------------------------------------------------------
    # ENCODE
    # -------------------------------------------------------------------------

    def encode(self, engine) -> Dict[str, Any]:
        snapshot = engine.snapshot()
        return {
            "currentVersion": snapshot.current_version,
            "versions": [
                [number, snapshot.versions[number].to_dict()]
                for number in sorted(snapshot.versions)
            ],
            "branches": [
                [branch_id, snapshot.branches[branch_id].to_dict()]
                for branch_id in sorted(snapshot.branches)
            ],
            "activeBranchId": snapshot.active_branch_id,
            "lastSaved": snapshot.last_saved,
            "schemaVersion": SCHEMA_VERSION,
        }

    def save(self, engine) -> Result[None]:
        """Write the full history. Never raises."""
        try:
            with self.metrics.timer("storage_save"):
                blob = json.dumps(self.encode(engine))
                self.store.set(self.key, blob)
        except Exception as e:
            logger.error(f"[StorageCodec] Save failed: {e}")
            return Result.failure(ErrorCode.STORAGE_ERROR, ErrorMessages.STORAGE_WRITE_FAILED)

        logger.debug(f"[StorageCodec] Saved {len(blob)} bytes under {self.key}")
        return Result.success()

    # -------------------------------------------------------------------------
    # DECODE
    # -------------------------------------------------------------------------

    def decode(self, raw: str) -> HistorySnapshot:
        """
        Rebuild collections from a blob.

        Records are decoded leniently so the engine's validator can decide
        which ones are corrupt; only entries that cannot be placed at all
        (unusable keys) are skipped here.
        """
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise StorageCodecError("stored history is not an object")

        schema = data.get("schemaVersion", SCHEMA_VERSION)
        if isinstance(schema, int) and schema > SCHEMA_VERSION:
            logger.warning(f"[StorageCodec] Blob schema v{schema} is newer than v{SCHEMA_VERSION}, loading anyway")

        versions: Dict[int, Version] = {}
        for entry in self._pairs(data.get("versions")):
            number = parse_version_id(entry[0])
            if number is None or number < INITIAL_VERSION:
                logger.warning(f"[StorageCodec] Skipping version with unusable key {entry[0]!r}")
                continue
            versions[number] = Version.from_dict(number, entry[1])

        branches: Dict[str, Branch] = {}
        for entry in self._pairs(data.get("branches")):
            branch_id = entry[0]
            if not isinstance(branch_id, str) or not branch_id:
                logger.warning(f"[StorageCodec] Skipping branch with unusable key {branch_id!r}")
                continue
            branches[branch_id] = Branch.from_dict(entry[1])

        self._ensure_main(branches, versions)

        active = data.get("activeBranchId")
        if not isinstance(active, str) or active not in branches:
            active = MAIN_BRANCH_ID

        current = parse_version_id(data.get("currentVersion"))
        if current not in versions:
            current = self._fallback_cursor(branches.get(active), versions, current)

        last_saved = data.get("lastSaved")
        return HistorySnapshot(
            current_version=current,
            versions=versions,
            branches=branches,
            active_branch_id=active,
            last_saved=last_saved if isinstance(last_saved, str) else None,
        )

    @staticmethod
    def _fallback_cursor(active: Optional[Branch], versions: Dict[int, Version], stored: Any) -> int:
        if not versions:
            return INITIAL_VERSION
        tip = active.tip if active is not None else None
        cursor = tip if tip in versions else max(versions)
        logger.warning(f"[StorageCodec] Cursor v{stored} has no version, moved to v{cursor}")
        return cursor

    @staticmethod
    def _pairs(entries: Any):
        if isinstance(entries, dict):
            entries = list(entries.items())
        if not isinstance(entries, list):
            return
        for entry in entries:
            if isinstance(entry, (list, tuple)) and len(entry) == 2:
                yield entry

    @staticmethod
    def _ensure_main(branches: Dict[str, Branch], versions: Dict[int, Version]):
        for branch_id in sorted(branches):
            if branch_id != MAIN_BRANCH_ID and branches[branch_id].is_main:
                logger.warning(f"[StorageCodec] Branch {branch_id} claimed to be main, cleared")
                branches[branch_id] = replace(branches[branch_id], is_main=False)

        main = branches.get(MAIN_BRANCH_ID)
        if main is not None and is_valid_branch(main):
            branches[MAIN_BRANCH_ID] = replace(main, is_main=True, parent_branch_id=None)
            return
        if main is not None:
            # Present but malformed: leave it for validation/recovery to handle
            return

        on_main = [n for n, v in versions.items() if v.branch_id == MAIN_BRANCH_ID]
        tip = max(on_main) if on_main else INITIAL_VERSION
        branches[MAIN_BRANCH_ID] = Branch.main(tip)
        logger.warning(f"[StorageCodec] Main branch missing, synthesized at v{tip}")

    def load(self, engine) -> Result[Any]:
        """
        Load persisted history into `engine`. Never raises.

        Returns success, the engine's recovery result when the blob was
        partially corrupt, or STORAGE_ERROR when the blob was unreadable and
        the engine started empty.
        """
        try:
            with self.metrics.timer("storage_load"):
                raw = self.store.get(self.key)
                if raw is None:
                    engine.restore(HistorySnapshot())
                    logger.info("[StorageCodec] No stored history, starting empty")
                    return Result.success()
                snapshot = self.decode(raw)
        except Exception as e:
            logger.error(f"[StorageCodec] Load failed, starting empty: {e}")
            engine.restore(HistorySnapshot())
            result = Result.failure(ErrorCode.STORAGE_ERROR, ErrorMessages.STORAGE_UNREADABLE)
            self.metrics.record_result("storage_load", result)
            return result

        try:
            return self._adopt(engine, snapshot)
        except Exception as e:
            logger.error(f"[StorageCodec] Stored history unusable, starting empty: {e}")
            engine.restore(HistorySnapshot())
            result = Result.failure(ErrorCode.STORAGE_ERROR, ErrorMessages.STORAGE_UNREADABLE)
            self.metrics.record_result("storage_load", result)
            self.metrics.update_health("storage", "reset")
            return result

    def _adopt(self, engine, snapshot: HistorySnapshot) -> Result[Any]:
        """Hand decoded state to the engine, then validate and recover."""
        engine.restore(snapshot)
        logger.info(
            f"[StorageCodec] Loaded {len(snapshot.versions)} versions, "
            f"{len(snapshot.branches)} branches (active={snapshot.active_branch_id})"
        )

        state = engine.validate_storage()
        if state.is_storage_valid:
            self.metrics.update_health("storage", "healthy", versions=len(snapshot.versions))
            return Result.success()

        logger.warning(f"[StorageCodec] Stored history corrupt after v{state.last_valid_version}, recovering")
        result = engine.recover_from_corruption()
        self.metrics.record_result("storage_load", result)
        self.metrics.update_health("storage", "recovered", last_valid_version=state.last_valid_version)
        return result
