"""
DraftSpine Save Scheduler
=========================

Debounces editing bursts into a single commit.

Every schedule() restarts the quiet window; when it elapses the most recent
snapshot is committed once. The timer handle is explicit so navigation can
cancel it: the engine calls cancel() on branch switch, branch create, reset
and recovery.

Policy for saves interrupted by navigation: they are dropped, never rebound
to the new branch. The branch and generation captured at schedule time are
re-checked when the timer fires as a second guard.

Usage:
    scheduler = SaveScheduler(engine, debounce_ms=1000)
    scheduler.schedule(editor.get_json())   # on every edit
    scheduler.flush()                       # on shutdown
"""

import logging
import threading
from typing import Any, Optional

from .models import SAVE_DEBOUNCE_MS

logger = logging.getLogger(__name__)


class SaveScheduler:
    """Cancellable debounce in front of HistoryEngine.commit."""

    def __init__(self, engine, debounce_ms: int = SAVE_DEBOUNCE_MS):
        self.engine = engine
        self.debounce_seconds = debounce_ms / 1000.0

        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._snapshot: Any = None
        self._branch_id: Optional[str] = None
        self._generation = 0

        self.stats = {
            "scheduled": 0,
            "committed": 0,
            "cancelled": 0,
            "dropped": 0,
        }

        engine.attach_scheduler(self)

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def schedule(self, snapshot: Any) -> None:
        """Replace the pending snapshot and restart the quiet window."""
        with self._lock:
            if self._timer:
                self._timer.cancel()

            self._generation += 1
            self._snapshot = snapshot
            self._branch_id = self.engine.active_branch_id
            self.stats["scheduled"] += 1

            self._timer = threading.Timer(self.debounce_seconds, self._fire, args=(self._generation,))
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        """Drop the pending snapshot, if any."""
        with self._lock:
            # Bumped even when idle so a save already past its timer goes stale
            self._generation += 1
            if self._timer is None:
                return
            self._timer.cancel()
            self._timer = None
            self._snapshot = None
            self.stats["cancelled"] += 1
            logger.debug("[SaveScheduler] Pending save cancelled")

    def flush(self):
        """Commit the pending snapshot now instead of waiting for the timer."""
        with self._lock:
            if self._timer is None:
                return None
            self._timer.cancel()
            generation = self._generation
        return self._fire(generation)

    def _fire(self, generation: int):
        with self._lock:
            if generation != self._generation or self._timer is None:
                return None
            snapshot = self._snapshot
            branch_id = self._branch_id
            self._timer = None
            self._snapshot = None

        # Engine lock first, then ours, same order as engine -> cancel()
        with self.engine.lock:
            with self._lock:
                stale = generation != self._generation
            if stale or self.engine.active_branch_id != branch_id:
                self.stats["dropped"] += 1
                logger.warning(
                    f"[SaveScheduler] Dropped save scheduled on {branch_id}, "
                    f"active branch is now {self.engine.active_branch_id}"
                )
                return None

            result = self.engine.commit(snapshot)

        if result.ok:
            self.stats["committed"] += 1
            logger.debug(f"[SaveScheduler] Saved v{result.data.number}")
        else:
            logger.error(f"[SaveScheduler] Save failed: {result.error.message}")
        return result
