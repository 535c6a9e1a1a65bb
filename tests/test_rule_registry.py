"""
Tests for Rule Registry Module
==============================

Tests for rule_registry.py - rule lifecycle, versioning and writer ownership.
"""

import asyncio

import pytest

from ruleforge.errors import InvalidTransitionError, InvariantViolation, NotFoundError
from ruleforge.rule_registry import (
    ReviewActor,
    RuleRegistry,
    RuleSource,
    RuleStatus,
    Writer,
    count_trailing_low,
)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def registry(session_maker):
    """Create a RuleRegistry for testing."""
    return RuleRegistry(session_maker)


# =============================================================================
# Creation Tests
# =============================================================================

class TestCreation:
    """Tests for creating rules."""

    @pytest.mark.asyncio
    async def test_new_rule_is_pending(self, registry):
        """Test that a new rule starts pending and unscored."""
        rule, created = await registry.create_rule("ask_license", "missing:license_no", name="Ask for the license")

        assert created is True
        assert rule.status == RuleStatus.PENDING
        assert rule.version == 1
        assert rule.effectiveness_score is None
        assert rule.sample_count == 0

    @pytest.mark.asyncio
    async def test_live_key_is_idempotent(self, registry):
        """Test that creating a live key returns the existing rule."""
        first, _ = await registry.create_rule("ask_license", "missing:license_no")
        second, created = await registry.create_rule("ask_license", "other_category")

        assert created is False
        assert second.id == first.id
        assert len(await registry.list_rules()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_creates_yield_one_rule(self, registry):
        """Test that concurrent creates of one key make one rule."""
        results = await asyncio.gather(*(registry.create_rule("ask_license", "c") for _ in range(5)))

        assert sum(created for _, created in results) == 1
        assert len({rule.id for rule, _ in results}) == 1

    @pytest.mark.asyncio
    async def test_terminal_key_gets_new_version(self, registry):
        """Test that a rejected key is recreated as a new version."""
        rule, _ = await registry.create_rule("ask_license", "c")
        await registry.transition(Writer.PROMOTION_CONTROLLER, rule.id, RuleStatus.REJECTED, "low score")

        newer, created = await registry.create_rule("ask_license", "c", source=RuleSource.DERIVED_FROM_CLUSTER)

        assert created is True
        assert newer.version == 2
        assert newer.source == RuleSource.DERIVED_FROM_CLUSTER
        assert (await registry.get_rule(rule.id)).status == RuleStatus.REJECTED

    @pytest.mark.asyncio
    async def test_missing_rule(self, registry):
        """Test that a missing rule raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await registry.get_rule(999)


# =============================================================================
# Transition Tests
# =============================================================================

class TestTransitions:
    """Tests for rule status transitions."""

    @pytest.mark.asyncio
    async def test_allowed_path(self, registry):
        """Test pending to active to retired, with the change log."""
        rule, _ = await registry.create_rule("r", "c")

        assert await registry.transition(Writer.PROMOTION_CONTROLLER, rule.id, RuleStatus.ACTIVE, "good") is True
        assert await registry.transition(Writer.PROMOTION_CONTROLLER, rule.id, RuleStatus.RETIRED, "bad") is True

        log = await registry.change_log(rule.id)
        assert [(e["action"], e["from_status"], e["to_status"]) for e in log] == [
            ("created", None, "pending"),
            ("transition", "pending", "active"),
            ("transition", "active", "retired"),
        ]

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self, registry):
        """Test that moving to the current status changes nothing."""
        rule, _ = await registry.create_rule("r", "c")
        await registry.transition(Writer.PROMOTION_CONTROLLER, rule.id, RuleStatus.ACTIVE)

        assert await registry.transition(Writer.PROMOTION_CONTROLLER, rule.id, RuleStatus.ACTIVE) is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", [
        [RuleStatus.RETIRED],
        [RuleStatus.REJECTED, RuleStatus.ACTIVE],
        [RuleStatus.ACTIVE, RuleStatus.PENDING],
        [RuleStatus.ACTIVE, RuleStatus.REJECTED],
    ])
    async def test_disallowed_moves(self, registry, path):
        """Test that moves outside the lifecycle raise InvalidTransitionError."""
        rule, _ = await registry.create_rule("r", "c")
        for status in path[:-1]:
            await registry.transition(Writer.PROMOTION_CONTROLLER, rule.id, status)

        with pytest.raises(InvalidTransitionError):
            await registry.transition(Writer.PROMOTION_CONTROLLER, rule.id, path[-1])

    @pytest.mark.asyncio
    async def test_concurrent_transitions_one_winner(self, registry):
        """Test that concurrent transitions record one change."""
        rule, _ = await registry.create_rule("r", "c")

        results = await asyncio.gather(
            registry.transition(Writer.PROMOTION_CONTROLLER, rule.id, RuleStatus.ACTIVE),
            registry.transition(Writer.AUTO_REVIEWER, rule.id, RuleStatus.ACTIVE),
        )

        assert results.count(True) == 1
        transitions = [e for e in await registry.change_log(rule.id) if e["action"] == "transition"]
        assert len(transitions) == 1

    @pytest.mark.asyncio
    async def test_reviewer_transition_records_actor(self, registry):
        """Test that a reviewer transition records the review actor."""
        rule, _ = await registry.create_rule("r", "c")

        await registry.transition(Writer.AUTO_REVIEWER, rule.id, RuleStatus.ACTIVE, "ok", actor=ReviewActor.HUMAN)

        updated = await registry.get_rule(rule.id)
        assert updated.last_review_actor == "human"
        assert updated.last_reviewed_at is not None


# =============================================================================
# Writer Ownership Tests
# =============================================================================

class TestWriterOwnership:
    """Tests for which writer may change which columns."""

    @pytest.mark.asyncio
    async def test_only_evaluator_writes_scores(self, registry):
        """Test that only the evaluator writes scores."""
        rule, _ = await registry.create_rule("r", "c")

        with pytest.raises(InvariantViolation):
            await registry.update_scores(Writer.PROMOTION_CONTROLLER, rule.id, 0.9, 10, 0.4)

        assert (await registry.get_rule(rule.id)).effectiveness_score is None

    @pytest.mark.asyncio
    async def test_evaluator_cannot_change_status(self, registry):
        """Test that the evaluator cannot change status."""
        rule, _ = await registry.create_rule("r", "c")

        with pytest.raises(InvariantViolation):
            await registry.transition(Writer.EVALUATOR, rule.id, RuleStatus.ACTIVE)

    @pytest.mark.asyncio
    async def test_only_reviewer_marks_reviews(self, registry):
        """Test that only the auto-reviewer marks reviews."""
        rule, _ = await registry.create_rule("r", "c")

        with pytest.raises(InvariantViolation):
            await registry.mark_reviewed(Writer.PROMOTION_CONTROLLER, rule.id, "no")

        await registry.mark_reviewed(Writer.AUTO_REVIEWER, rule.id, "deferred")
        assert (await registry.get_rule(rule.id)).last_reviewed_at is not None


# =============================================================================
# Score Tests
# =============================================================================

class TestScores:
    """Tests for scores, ordering and stats."""

    @pytest.mark.asyncio
    async def test_update_scores_appends_history(self, registry):
        """Test that each score update appends to the history."""
        rule, _ = await registry.create_rule("r", "c")

        await registry.update_scores(Writer.EVALUATOR, rule.id, None, 2, 0.4)
        await registry.update_scores(Writer.EVALUATOR, rule.id, 0.35, 6, 0.4)
        updated = await registry.update_scores(Writer.EVALUATOR, rule.id, 0.2, 7, 0.4)

        history = await registry.evaluation_history(rule.id)
        assert [h["score"] for h in history] == [None, 0.35, 0.2]
        assert updated.effectiveness_score == 0.2
        assert updated.sample_count == 7
        assert updated.consecutive_low_scores == 2

    @pytest.mark.asyncio
    async def test_list_active_ordering(self, registry):
        """Test that active rules are listed best score first, unscored last."""
        for key, score in (("a", 0.75), ("b", None), ("c", 0.9)):
            rule, _ = await registry.create_rule(key, "c")
            await registry.update_scores(Writer.EVALUATOR, rule.id, score, 5, 0.4)
            await registry.transition(Writer.PROMOTION_CONTROLLER, rule.id, RuleStatus.ACTIVE)

        active = await registry.list_active()
        assert [r.rule_key for r in active] == ["c", "a", "b"]

    @pytest.mark.asyncio
    async def test_stats(self, registry):
        """Test rule counts by status and the average score."""
        rule, _ = await registry.create_rule("a", "c")
        await registry.create_rule("b", "c")
        await registry.update_scores(Writer.EVALUATOR, rule.id, 0.5, 5, 0.4)

        stats = await registry.get_stats()
        assert stats["total"] == 2
        assert stats["by_status"]["pending"] == 2
        assert stats["average_score"] == 0.5


# =============================================================================
# Helper Function Tests
# =============================================================================

def test_count_trailing_low():
    """Test counting the trailing run of low scores."""
    assert count_trailing_low([0.1, 0.2, 0.9, 0.1, None, 0.3], 0.4) == 2
    assert count_trailing_low([0.5], 0.4) == 0
    assert count_trailing_low([], 0.4) == 0
