"""
Shared Test Fixtures
====================

A temporary project database, a session factory, and a helper that creates
sessions with a transcript, fields and an outcome.
"""

import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from ruleforge.db import init_db, dispose_db
from ruleforge.outcome_store import OutcomeStore, Outcome


DEFAULT_TRANSCRIPT = [
    ("user", "My merchant account was frozen by risk control"),
    ("assistant", "I understand. Please submit the following documents:\n1. business license"),
    ("user", "Ok, I have the license ready"),
]


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest_asyncio.fixture
async def session_maker(temp_project):
    """Initialize the project database and close it after the test."""
    maker = await init_db(temp_project)
    yield maker
    await dispose_db()


@pytest.fixture
def store(session_maker):
    """Create an OutcomeStore for testing."""
    return OutcomeStore(session_maker)


@pytest.fixture
def make_session(store):
    """Factory that creates a session with a transcript, fields and an outcome."""

    async def _make(session_id, fields=None, outcome=None, messages=None, created_at=None):
        await store.create_session(session_id, created_at=created_at)
        for role, content in (DEFAULT_TRANSCRIPT if messages is None else messages):
            await store.append_message(session_id, role, content)
        for name, value in (fields or {}).items():
            await store.set_field(session_id, name, value)
        if outcome:
            await store.record_outcome(session_id, Outcome(outcome))
        return session_id

    return _make
