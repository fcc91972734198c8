"""
Unit tests for the SQLite key-value store and config loading
============================================================

Run with: pytest draftspine/test_kv_store.py -v
"""

import os
import sqlite3

from draftspine.config import DraftSpineConfig
from draftspine.kv_store import KeyValueStore
from draftspine.models import SAVE_DEBOUNCE_MS, STORAGE_KEY


class TestKeyValueStore:

    def test_get_missing(self, store):
        assert store.get("absent") is None
        assert store.stats()["misses"] == 1

    def test_set_overwrites(self, store):
        store.set("k", "one")
        store.set("k", "two")

        assert store.get("k") == "two"
        assert store.keys() == ["k"]
        assert store.stats()["entries"] == 1
        assert store.stats()["writes"] == 2

    def test_delete(self, store):
        store.set("k", "v")

        assert store.delete("k") is True
        assert store.delete("k") is False
        assert store.get("k") is None

    def test_persists_across_connections(self, tmp_path):
        db_path = tmp_path / "nested" / "kv.db"
        with KeyValueStore(db_path) as first:
            first.set(STORAGE_KEY, "{}")

        with KeyValueStore(db_path) as second:
            assert second.get(STORAGE_KEY) == "{}"

    def test_schema_version_recorded_once(self, tmp_path):
        db_path = tmp_path / "kv.db"
        KeyValueStore(db_path).close()
        KeyValueStore(db_path).close()

        conn = sqlite3.connect(str(db_path))
        try:
            rows = conn.execute("SELECT version FROM schema_version").fetchall()
        finally:
            conn.close()
        assert rows == [(KeyValueStore.DB_VERSION,)]


class TestConfig:

    def test_defaults(self, monkeypatch, tmp_path):
        for name in ("DRAFTSPINE_DB_PATH", "DRAFTSPINE_SAVE_DEBOUNCE_MS", "DRAFTSPINE_PORT"):
            monkeypatch.delenv(name, raising=False)

        config = DraftSpineConfig.from_env(tmp_path / "missing.env")

        assert config.save_debounce_ms == SAVE_DEBOUNCE_MS
        assert config.storage_key == STORAGE_KEY
        assert config.host == "127.0.0.1"

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DRAFTSPINE_DB_PATH", str(tmp_path / "h.db"))
        monkeypatch.setenv("DRAFTSPINE_SAVE_DEBOUNCE_MS", "250")
        monkeypatch.setenv("DRAFTSPINE_LOG_LEVEL", "debug")

        config = DraftSpineConfig.from_env(tmp_path / "missing.env")

        assert config.db_path == tmp_path / "h.db"
        assert config.save_debounce_ms == 250
        assert config.log_level == "DEBUG"

    def test_dotenv_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv("DRAFTSPINE_STORAGE_KEY", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("DRAFTSPINE_STORAGE_KEY=notes-versions\n")

        try:
            config = DraftSpineConfig.from_env(env_file)
        finally:
            # load_dotenv writes straight into os.environ
            os.environ.pop("DRAFTSPINE_STORAGE_KEY", None)

        assert config.storage_key == "notes-versions"

    def test_bad_number_falls_back(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DRAFTSPINE_PORT", "eighty")

        config = DraftSpineConfig.from_env(tmp_path / "missing.env")

        assert config.port == DraftSpineConfig().port
