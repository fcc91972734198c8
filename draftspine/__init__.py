"""
DraftSpine - Version and Branch History for a Single Document
=============================================================

DraftSpine keeps every saved state of a document as an immutable, numbered
version, lets the writer fork branches off any version in the current line,
and persists the whole history to a local SQLite file. On start the stored
history is validated and, if partially corrupt, truncated back to the last
good version instead of failing.

Architecture:
    engine.py     - HistoryEngine: versions, branches, validation, recovery
    scheduler.py  - SaveScheduler: debounced, cancellable commits
    storage.py    - StorageCodec: whole-history encode/decode + load recovery
    kv_store.py   - KeyValueStore: SQLite key-value entries
    timeline.py   - slider range, stepping, relative times
    server.py     - local HTTP adapter (port 7790)

Usage:
    from draftspine import HistoryEngine, KeyValueStore, SaveScheduler, StorageCodec

    engine = HistoryEngine(on_content_change=editor.set_content)
    codec = StorageCodec(KeyValueStore("data/draftspine.db"))
    codec.attach(engine)
    codec.load(engine)

    scheduler = SaveScheduler(engine)
    scheduler.schedule(editor.get_json())
"""

from .engine import HistoryEngine
from .errors import ErrorCode, HistoryError, Result
from .kv_store import KeyValueStore
from .models import Branch, BranchVersion, ChangeRecord, Version
from .scheduler import SaveScheduler
from .storage import StorageCodec

__all__ = [
    "HistoryEngine",
    "SaveScheduler",
    "StorageCodec",
    "KeyValueStore",
    "Version",
    "Branch",
    "BranchVersion",
    "ChangeRecord",
    "ErrorCode",
    "HistoryError",
    "Result",
    "__version__",
]
__version__ = "1.0.0"
