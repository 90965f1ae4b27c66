"""Pytest configuration and fixtures."""
from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pytest

from treesync.config import Settings
from treesync.core.session import StreamSession
from treesync.core.tree_store import TreeStore, UITree


def pytest_configure(config):
    """Ensure asyncio_mode is auto so async tests run without markers."""
    if hasattr(config.option, "asyncio_mode") and config.option.asyncio_mode is None:
        config.option.asyncio_mode = "auto"


def _frame(event: dict[str, Any], sequence: int = 0, tag: str = "d") -> str:
    return f"{tag}:{json.dumps({'sequence': sequence, 'event': event})}"


@pytest.fixture
def make_frame() -> Callable[..., str]:
    """Build one ``d:`` wire-frame line (no trailing newline)."""
    return _frame


@pytest.fixture
def sample_tree() -> UITree:
    """page ─┬─ header
             └─ body ── card"""
    return UITree.from_dict({
        "root": "page",
        "elements": {
            "page": {"key": "page", "type": "Page", "props": {}, "children": ["header", "body"], "parentKey": None},
            "header": {"key": "header", "type": "Header", "props": {"text": "Title"}, "children": [], "parentKey": "page"},
            "body": {"key": "body", "type": "Stack", "props": {"gap": "md"}, "children": ["card"], "parentKey": "page"},
            "card": {"key": "card", "type": "Card", "props": {"title": "Hi"}, "children": [], "parentKey": "body"},
        },
    })


@pytest.fixture
def test_settings() -> Settings:
    """Settings with batching effectively disabled by a long interval."""
    return Settings(flush_interval_ms=1000, max_buffer_size=100, validate_after_flush=True)


@pytest.fixture
def store() -> TreeStore:
    return TreeStore(protected_types=())


@pytest.fixture
def session(store: TreeStore, test_settings: Settings) -> StreamSession:
    return StreamSession(store, settings=test_settings, turn_id="turn-test")
