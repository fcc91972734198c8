"""
DraftSpine Metrics
==================

What the storage codec and the HTTP adapter report about themselves:

    latency    - recent samples per operation ("storage_save", "POST /save")
    failures   - counts per operation and per history ErrorCode
    responses  - HTTP status counts per route
    health     - last known state per component ("storage", "engine")

Usage:
    metrics = MetricsCollector(window_size=500)
    with metrics.timer("storage_save"):
        store.set(key, blob)
    metrics.record_result("storage_load", result)
    metrics.snapshot()
"""

import math
import threading
import time
from collections import Counter, deque
from contextlib import contextmanager
from typing import Any, Deque, Dict, List, Optional

from .errors import ErrorCode
from .models import utc_now


def _nearest_rank(ordered: List[float], pct: float) -> float:
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return ordered[rank - 1]


class MetricsCollector:
    """Per-instance counters; pass one to the codec and the server."""

    def __init__(self, window_size: int = 1000):
        self.window_size = window_size
        self._lock = threading.Lock()
        self._started = time.monotonic()
        self._init_counters()

    def _init_counters(self):
        self._latency: Dict[str, Deque[float]] = {}
        self._failures: Counter = Counter()
        self._codes: Counter = Counter()
        self._responses: Counter = Counter()
        self._health: Dict[str, Dict[str, Any]] = {}

    # -------------------------------------------------------------------------
    # RECORDING
    # -------------------------------------------------------------------------

    def record(self, operation: str, latency_ms: float) -> None:
        with self._lock:
            window = self._latency.get(operation)
            if window is None:
                window = self._latency[operation] = deque(maxlen=self.window_size)
            window.append(latency_ms)

    def record_error(self, operation: str, code: Optional[ErrorCode] = None) -> None:
        with self._lock:
            self._failures[operation] += 1
            if code is not None:
                self._codes[code.value] += 1

    def record_result(self, operation: str, result) -> None:
        """Count a failed Result under its operation and error code."""
        if result is not None and not result.ok:
            self.record_error(operation, result.error.code)

    def record_response(self, route: str, status_code: int) -> None:
        with self._lock:
            self._responses[f"{route} {status_code}"] += 1

    def update_health(self, component: str, status: str, **details) -> None:
        with self._lock:
            self._health[component] = {"status": status, "checked_at": utc_now(), **details}

    @contextmanager
    def timer(self, operation: str):
        """Time the block; an exception counts as a failure and propagates."""
        start = time.perf_counter()
        failed = False
        try:
            yield
        except Exception:
            failed = True
            raise
        finally:
            self.record(operation, (time.perf_counter() - start) * 1000)
            if failed:
                self.record_error(operation)

    # -------------------------------------------------------------------------
    # READING
    # -------------------------------------------------------------------------

    def latency(self, operation: str) -> Dict[str, Any]:
        """Sample count, median, p95 and worst case over the current window."""
        with self._lock:
            ordered = sorted(self._latency.get(operation, ()))
        if not ordered:
            return {"count": 0, "p50": 0.0, "p95": 0.0, "max": 0.0}
        return {
            "count": len(ordered),
            "p50": round(_nearest_rank(ordered, 50), 2),
            "p95": round(_nearest_rank(ordered, 95), 2),
            "max": round(ordered[-1], 2),
        }

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            operations = sorted(self._latency)
            failures = {
                "by_operation": dict(self._failures),
                "by_code": dict(self._codes),
            }
            responses = dict(self._responses)
            health = {name: dict(state) for name, state in self._health.items()}

        return {
            "uptime_seconds": round(time.monotonic() - self._started, 1),
            "latency": {op: self.latency(op) for op in operations},
            "failures": failures,
            "responses": responses,
            "health": health,
        }

    def reset(self) -> None:
        with self._lock:
            self._init_counters()
            self._started = time.monotonic()
