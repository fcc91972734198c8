"""
DraftSpine Configuration
========================

Defaults live on the dataclass; deployments override them through the
environment or a .env file in the working directory.

    DRAFTSPINE_DB_PATH           SQLite file holding the history
    DRAFTSPINE_STORAGE_KEY       key of the history entry
    DRAFTSPINE_SAVE_DEBOUNCE_MS  quiet window before an autosave commits
    DRAFTSPINE_HOST / _PORT      local HTTP adapter bind address
    DRAFTSPINE_LOG_LEVEL         logging level name
    DRAFTSPINE_METRICS_WINDOW    samples kept per latency window
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .models import SAVE_DEBOUNCE_MS, STORAGE_KEY

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path("data") / "draftspine.db"
DEFAULT_PORT = 7790


@dataclass
class DraftSpineConfig:
    """Runtime configuration."""
    db_path: Path = DEFAULT_DB_PATH
    storage_key: str = STORAGE_KEY
    save_debounce_ms: int = SAVE_DEBOUNCE_MS
    host: str = "127.0.0.1"             # local only
    port: int = DEFAULT_PORT
    log_level: str = "INFO"
    metrics_window: int = 1000

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> 'DraftSpineConfig':
        """Build a config from environment variables (after loading .env)."""
        load_dotenv(env_file)

        defaults = cls()
        return cls(
            db_path=Path(os.getenv("DRAFTSPINE_DB_PATH", str(defaults.db_path))),
            storage_key=os.getenv("DRAFTSPINE_STORAGE_KEY", defaults.storage_key),
            save_debounce_ms=_int_env("DRAFTSPINE_SAVE_DEBOUNCE_MS", defaults.save_debounce_ms),
            host=os.getenv("DRAFTSPINE_HOST", defaults.host),
            port=_int_env("DRAFTSPINE_PORT", defaults.port),
            log_level=os.getenv("DRAFTSPINE_LOG_LEVEL", defaults.log_level).upper(),
            metrics_window=_int_env("DRAFTSPINE_METRICS_WINDOW", defaults.metrics_window),
        )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"[Config] {name}={raw!r} is not an integer, using {default}")
        return default
