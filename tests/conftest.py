"""Shared pytest configuration and fixtures for the test suite.

This module centralizes:
- Path setup so ``graph_corpus`` and ``scripts`` import from a checkout
- Pytest markers for test categorization (unit, integration, property)
- Store fixtures backed by temporary SQLite files
- The in-memory store double and scripted API used by orchestrator tests
"""
from __future__ import annotations

import sys
from pathlib import Path

import pytest


# ==============================================================================
# Path Setup
# ==============================================================================

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


# ==============================================================================
# Pytest Configuration
# ==============================================================================

def pytest_configure(config):
    """Register custom markers for test categorization."""
    config.addinivalue_line(
        "markers",
        "unit: Fast tests with no I/O (mocked dependencies)",
    )
    config.addinivalue_line(
        "markers",
        "integration: Tests hitting SQLite, threads, or the file system",
    )
    config.addinivalue_line(
        "markers",
        "property: Hypothesis property-based tests",
    )


# ==============================================================================
# Store Fixtures
# ==============================================================================

@pytest.fixture
def corpus_db(tmp_path: Path) -> Path:
    """Path to a fresh SQLite file.

    The writer thread and readers use separate connections, so tests need a
    file rather than ``:memory:``.
    """
    return tmp_path / "corpus.db"


@pytest.fixture
def corpus_store(corpus_db: Path):
    """A real CorpusStore on a temporary file, closed after the test."""
    from sqlalchemy import create_engine

    from graph_corpus.data.corpus_store import CorpusStore

    store = CorpusStore(create_engine(f"sqlite:///{corpus_db}"))
    yield store
    store.close()


@pytest.fixture
def recording_store():
    """In-memory store double that applies writes immediately."""
    from tests.helpers.recording_corpus_store import RecordingCorpusStore

    return RecordingCorpusStore()


@pytest.fixture
def fake_api():
    """Scripted API with no profiles; tests add what they need."""
    from tests.helpers.fake_api import FakeTwitterAPI

    return FakeTwitterAPI()

