"""
DraftSpine Server - local HTTP adapter for the history engine

Lets the editing surface and the branch graph (running in a browser on the
same machine) drive one HistoryEngine over JSON. Nothing is synced anywhere;
the server binds to localhost by default.

Port: 7790 (DRAFTSPINE_PORT)
Test: curl http://127.0.0.1:7790/branches/main/versions
"""

import atexit
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from . import __version__
from .config import DraftSpineConfig
from .engine import HistoryEngine
from .errors import ErrorCode, Result
from .kv_store import KeyValueStore
from .metrics import MetricsCollector
from .models import Version
from .scheduler import SaveScheduler
from .storage import StorageCodec
from .timeline import calculate_branch_version_range, get_all_branches, time_ago

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {ErrorCode.VERSION_NOT_FOUND, ErrorCode.BRANCH_NOT_FOUND}
SERVER_ERROR_CODES = {ErrorCode.STORAGE_ERROR, ErrorCode.INVALID_STORAGE}


# Request models
class CreateBranchRequest(BaseModel):
    parent_version_id: Union[int, str]


class SetVersionRequest(BaseModel):
    version: int


class ChangesRequest(BaseModel):
    steps: List[Any]


class SaveRequest(BaseModel):
    content: Any
    immediate: bool = False


def _unwrap(result: Result) -> Any:
    """Return the result's data or raise the matching HTTPException."""
    if result.ok:
        return result.data
    code = result.error.code
    if code in NOT_FOUND_CODES:
        status = 404
    elif code in SERVER_ERROR_CODES:
        status = 500
    else:
        status = 400
    raise HTTPException(status_code=status, detail=result.error.to_dict())


def _version_json(version: Version) -> Dict[str, Any]:
    return {"number": version.number, **version.to_dict()}


def create_app(
    engine: HistoryEngine,
    scheduler: SaveScheduler,
    codec: StorageCodec,
    metrics: Optional[MetricsCollector] = None,
) -> FastAPI:
    """Build the FastAPI app around already-wired service objects."""
    metrics = metrics or codec.metrics
    started = time.time()

    app = FastAPI(title="DraftSpine", version=__version__)
    app.state.engine = engine
    app.state.scheduler = scheduler
    app.state.codec = codec
    app.state.metrics = metrics

    # Browser panels on localhost
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def record_latency(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        route = request.scope.get("route")
        path = route.path if route is not None else request.url.path
        operation = f"{request.method} {path}"
        metrics.record(operation, (time.perf_counter() - start) * 1000)
        metrics.record_response(operation, response.status_code)
        return response

    @app.get("/")
    def root():
        """Root endpoint."""
        return {"service": "DraftSpine", "version": __version__}

    @app.get("/health")
    def health() -> Dict[str, Any]:
        status = engine.status()
        healthy = status["storage"]["isStorageValid"]
        metrics.update_health("engine", "healthy" if healthy else "degraded", versions=status["version_count"])
        return {
            "status": "healthy" if healthy else "degraded",
            "uptime": time.time() - started,
            "version": __version__,
            "last_saved_ago": time_ago(status["last_saved"]),
            "save_pending": scheduler.pending,
            **status,
        }

    @app.get("/metrics")
    def get_metrics() -> Dict[str, Any]:
        """Latency, failures by error code, responses per route, scheduler and store stats."""
        snapshot = metrics.snapshot()
        snapshot["scheduler"] = dict(scheduler.stats)
        snapshot["store"] = codec.store.stats()
        return snapshot

    # -------------------------------------------------------------------------
    # BRANCHES
    # -------------------------------------------------------------------------

    @app.get("/branches")
    def list_branches() -> Dict[str, Any]:
        return {
            "activeBranchId": engine.active_branch_id,
            "branches": [b.to_dict() for b in get_all_branches(engine.branches)],
        }

    @app.get("/branches/active")
    def active_branch() -> Dict[str, Any]:
        branch = engine.get_active_branch()
        if branch is None:
            raise HTTPException(status_code=404, detail="No active branch yet")
        return branch.to_dict()

    @app.get("/branches/{branch_id}/versions")
    def branch_versions(branch_id: str) -> Dict[str, Any]:
        items = _unwrap(engine.get_branch_versions(branch_id))
        return {
            "branchId": branch_id,
            "range": calculate_branch_version_range(items).to_dict(),
            "versions": [item.to_dict() for item in items],
        }

    @app.post("/branches")
    def create_branch(request: CreateBranchRequest) -> Dict[str, Any]:
        branch = _unwrap(engine.create_branch(request.parent_version_id))
        return branch.to_dict()

    @app.post("/branches/{branch_id}/switch")
    def switch_branch(branch_id: str) -> Dict[str, Any]:
        branch = _unwrap(engine.switch_branch(branch_id))
        return {"branch": branch.to_dict(), "currentVersion": engine.current_version}

    # -------------------------------------------------------------------------
    # VERSIONS
    # -------------------------------------------------------------------------

    @app.get("/versions")
    def version_range(start: int, end: int) -> Dict[str, Any]:
        versions = _unwrap(engine.get_version_range(start, end))
        return {"versions": [_version_json(v) for v in versions]}

    @app.get("/versions/{number}")
    def get_version(number: int) -> Dict[str, Any]:
        content = _unwrap(engine.get_version_content(number))
        version = _unwrap(engine.get_version(number))
        return {**_version_json(version), "content": content}

    @app.post("/versions/current")
    def set_current_version(request: SetVersionRequest) -> Dict[str, Any]:
        _unwrap(engine.set_current_version(request.version))
        content = _unwrap(engine.get_version_content(request.version))
        return {"currentVersion": engine.current_version, "content": content}

    @app.post("/changes")
    def apply_changes(request: ChangesRequest) -> Dict[str, Any]:
        changes = [engine.apply_change(step) for step in request.steps]
        return {
            "accepted": len(changes),
            "pending": len(engine.pending_changes),
            "isDirty": engine.is_dirty,
        }

    @app.post("/save")
    def save(request: SaveRequest) -> Dict[str, Any]:
        """Debounced commit; `immediate` commits now and drops any pending save."""
        if not request.immediate:
            scheduler.schedule(request.content)
            return {"scheduled": True, "debounceMs": int(scheduler.debounce_seconds * 1000)}

        scheduler.cancel()
        version = _unwrap(engine.commit(request.content))
        return {"scheduled": False, "version": _version_json(version)}

    # -------------------------------------------------------------------------
    # STORAGE
    # -------------------------------------------------------------------------

    @app.post("/storage/validate")
    def validate_storage() -> Dict[str, Any]:
        return engine.validate_storage().to_dict()

    @app.post("/storage/recover")
    def recover_storage() -> Dict[str, Any]:
        """Recovery outcome is informational, so it is returned, not raised."""
        result = engine.recover_from_corruption()
        metrics.record_result("storage_recover", result)
        return result.to_dict()

    return app


# -------------------------------------------------------------------------------
# RUNTIME
# -------------------------------------------------------------------------------

@dataclass
class Runtime:
    """Wired service objects for one document."""
    store: KeyValueStore
    engine: HistoryEngine
    codec: StorageCodec
    scheduler: SaveScheduler
    metrics: MetricsCollector

    def shutdown(self) -> None:
        """Commit any pending save, then close the store."""
        logger.info("[Server] Shutting down...")
        self.scheduler.flush()
        self.store.close()
        logger.info("[Server] Shutdown complete")


def build_runtime(config: DraftSpineConfig) -> Runtime:
    """store -> engine -> codec (attached, then loaded) -> scheduler."""
    metrics = MetricsCollector(window_size=config.metrics_window)
    store = KeyValueStore(config.db_path)
    engine = HistoryEngine()

    codec = StorageCodec(store, key=config.storage_key, metrics=metrics)
    codec.attach(engine)
    result = codec.load(engine)
    if not result.ok:
        logger.warning(f"[Server] Load finished with {result.error.code.value}: {result.error.message}")

    scheduler = SaveScheduler(engine, debounce_ms=config.save_debounce_ms)
    return Runtime(store=store, engine=engine, codec=codec, scheduler=scheduler, metrics=metrics)


def main():
    config = DraftSpineConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    runtime = build_runtime(config)
    app = create_app(runtime.engine, runtime.scheduler, runtime.codec, runtime.metrics)
    atexit.register(runtime.shutdown)

    logger.info("=" * 50)
    logger.info(f"[Server] DraftSpine {__version__} on {config.host}:{config.port}")
    logger.info(f"[Server] History: {config.db_path} ({config.storage_key})")
    logger.info("=" * 50)

    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
