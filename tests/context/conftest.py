# tests/context/conftest.py
"""
Shared fixtures for context engine tests.

Provides a deterministic token estimator (4 chars/token), an entry
factory with strictly increasing timestamps, and helpers for building
typical agent-session entry lists.
"""

import itertools
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure source is importable
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))


# =============================================================================
# Token Estimator Fixtures
# =============================================================================


@pytest.fixture
def estimator():
    """Fresh TokenEstimator with the default cl100k ratio (4 chars/token)."""
    from contextcore.context.tokens import TokenEstimator

    return TokenEstimator()


# =============================================================================
# Entry Factories
# =============================================================================


@pytest.fixture
def make_entry():
    """
    Factory for entries with strictly increasing ``created_at`` and a token
    count of ``ceil(len(content) / 4)``.
    """
    from contextcore.models import Entry, EntryType

    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    ticks = itertools.count()

    def _make(entry_type="user", content="hello", **fields):
        fields.setdefault("created_at", base + timedelta(seconds=next(ticks)))
        return Entry(type=EntryType(entry_type), content=content, **fields)

    return _make


@pytest.fixture
def tool_results(make_entry):
    """Factory for ``n`` tool-result entries with distinct contents."""

    def _make(n, content_size=40):
        return [
            make_entry("tool_result", f"result {i:03d} " + "x" * content_size)
            for i in range(n)
        ]

    return _make


@pytest.fixture
def tracked_dag(estimator):
    """Factory for a DAGCompactor that already tracks the given entries."""
    from contextcore.config import DAGConfig
    from contextcore.context.dag import DAGCompactor

    def _make(entries, **config):
        dag = DAGCompactor(DAGConfig(**config), estimator)
        for entry in entries:
            dag.track(entry)
        return dag

    return _make
