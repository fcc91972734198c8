"""Shared fixtures for DraftSpine tests."""

import pytest
from unittest.mock import Mock

from draftspine.engine import HistoryEngine
from draftspine.kv_store import KeyValueStore
from draftspine.metrics import MetricsCollector
from draftspine.storage import StorageCodec


def make_doc(text):
    """Minimal editor document snapshot."""
    return {"type": "doc", "content": [{"type": "paragraph", "text": text}]}


@pytest.fixture
def content_sink():
    """Mock editing surface content setter"""
    return Mock()


@pytest.fixture
def engine(content_sink):
    return HistoryEngine(on_content_change=content_sink)


@pytest.fixture
def store():
    """Throwaway in-memory store"""
    kv = KeyValueStore()
    yield kv
    kv.close()


@pytest.fixture
def metrics():
    return MetricsCollector(window_size=100)


@pytest.fixture
def codec(store, metrics):
    return StorageCodec(store, metrics=metrics)


@pytest.fixture
def doc():
    return make_doc
