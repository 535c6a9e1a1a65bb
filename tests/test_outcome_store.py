"""
Tests for Outcome Store Module
==============================

Tests for outcome_store.py - sessions, messages, field history and import.
"""

import pytest

from ruleforge.errors import MalformedImportError, NotFoundError
from ruleforge.outcome_store import Outcome


# =============================================================================
# Session Tests
# =============================================================================

class TestSessions:
    """Tests for session creation and messages."""

    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, store):
        """Test that creating an existing session returns the stored one."""
        first = await store.create_session("s1", user_id="u1")
        await store.append_message("s1", "user", "hello")
        again = await store.create_session("s1")

        assert first.session_id == again.session_id == "s1"
        assert len(again.messages) == 1

    @pytest.mark.asyncio
    async def test_messages_are_ordered(self, store):
        """Test that messages keep their append order."""
        await store.create_session("s1")
        for i in range(3):
            await store.append_message("s1", "user" if i % 2 == 0 else "assistant", f"m{i}")

        session = await store.get_session("s1")

        assert [m.seq for m in session.messages] == [1, 2, 3]
        assert [m["content"] for m in session.transcript()] == ["m0", "m1", "m2"]
        assert len(session.user_messages) == 2

    @pytest.mark.asyncio
    async def test_unknown_session(self, store):
        """Test that operations on a missing session raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await store.get_session("missing")
        with pytest.raises(NotFoundError):
            await store.append_message("missing", "user", "x")
        with pytest.raises(NotFoundError):
            await store.record_outcome("missing", Outcome.SUCCESS)


# =============================================================================
# Field Tests
# =============================================================================

class TestFields:
    """Tests for collected fields."""

    @pytest.mark.asyncio
    async def test_set_field_records_history(self, store):
        """Test that only real changes are recorded in field history."""
        await store.create_session("s1")

        assert await store.set_field("s1", "industry", "retail") is True
        assert await store.set_field("s1", "industry", "retail") is False
        assert await store.set_field("s1", "industry", "gaming") is True

        session = await store.get_session("s1")
        history = await store.field_history("s1", "industry")

        assert session.collected_fields == {"industry": "gaming"}
        assert [(h["old_value"], h["new_value"]) for h in history] == [(None, "retail"), ("retail", "gaming")]


# =============================================================================
# Outcome Tests
# =============================================================================

class TestOutcomes:
    """Tests for outcomes and store statistics."""

    @pytest.mark.asyncio
    async def test_record_outcome(self, store):
        """Test recording a session outcome."""
        await store.create_session("s1")
        assert (await store.get_session("s1")).outcome == "unknown"

        await store.record_outcome("s1", Outcome.SUCCESS)

        assert (await store.get_session("s1")).outcome == "success"

    @pytest.mark.asyncio
    async def test_stats(self, make_session, store):
        """Test session counts by outcome."""
        await make_session("s1", outcome="success")
        await make_session("s2", outcome="fail")
        await make_session("s3")

        stats = await store.get_stats()

        assert stats["total"] == 3
        assert stats["by_outcome"] == {"success": 1, "fail": 1, "unknown": 1}
        assert stats["pending_analysis"] == 3


# =============================================================================
# Import Tests
# =============================================================================

class TestImport:
    """Tests for bulk session import."""

    @pytest.mark.asyncio
    async def test_import_creates_and_updates(self, store):
        """Test that a second import updates the existing session."""
        payload = [
            {
                "id": "s1",
                "created_at": "2026-01-05T10:00:00+00:00",
                "messages": [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
                "fields": {"industry": "retail"},
                "outcome": "fail",
            },
        ]
        assert await store.import_sessions(payload) == {"created": 1, "updated": 0}

        payload[0]["outcome"] = "success"
        assert await store.import_sessions(payload) == {"created": 0, "updated": 1}

        session = await store.get_session("s1")
        assert session.outcome == "success"
        assert len(session.messages) == 2
        assert session.created_at.year == 2026

    @pytest.mark.asyncio
    async def test_zulu_timestamp(self, store):
        """Test that a trailing Z is read as UTC and stored naive."""
        await store.import_sessions([{"id": "s1", "created_at": "2026-01-05T10:00:00Z"}])

        created_at = (await store.get_session("s1")).created_at

        assert created_at.tzinfo is None
        assert (created_at.hour, created_at.minute) == (10, 0)

    @pytest.mark.asyncio
    async def test_offset_timestamp_converted_to_utc(self, store):
        """Test that an offset timestamp is shifted to UTC."""
        await store.import_sessions([{"id": "s1", "created_at": "2026-01-05T12:30:00+02:00"}])

        created_at = (await store.get_session("s1")).created_at

        assert (created_at.hour, created_at.minute) == (10, 30)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("item,reason", [
        ({"messages": []}, "missing id"),
        ({"id": "s2", "outcome": "won"}, "unknown outcome"),
        ({"id": "s2", "created_at": "yesterday"}, "bad created_at"),
        ({"id": "s2", "messages": [{"content": "no role"}]}, "needs a role"),
        ("s2", "expected an object"),
    ])
    async def test_malformed_item_rejected(self, store, item, reason):
        """Test that a malformed item raises MalformedImportError."""
        payload = [{"id": "s1"}, item]

        with pytest.raises(MalformedImportError) as exc_info:
            await store.import_sessions(payload)

        assert exc_info.value.code == "MALFORMED_IMPORT"
        assert exc_info.value.index == 1
        assert reason in exc_info.value.message

    @pytest.mark.asyncio
    async def test_malformed_payload_writes_nothing(self, store):
        """Test that nothing is imported when any item is malformed."""
        with pytest.raises(MalformedImportError):
            await store.import_sessions([{"id": "s1"}, {"id": "s2", "outcome": "won"}])

        with pytest.raises(NotFoundError):
            await store.get_session("s1")
