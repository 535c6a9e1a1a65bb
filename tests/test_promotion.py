"""
Tests for Promotion Module
==========================

Tests for promotion.py - the pending/active/retired state machine.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from ruleforge.config import EngineConfig
from ruleforge.db.models import RuleModel, utcnow
from ruleforge.promotion import PromotionController
from ruleforge.rule_registry import RuleRegistry, RuleStatus, Writer


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def registry(session_maker):
    """Create a RuleRegistry for testing."""
    return RuleRegistry(session_maker)


@pytest.fixture
def controller(registry):
    """Create a PromotionController with default thresholds."""
    return PromotionController(registry, EngineConfig())


async def scored_rule(registry, key, score, samples, status=RuleStatus.PENDING):
    rule, _ = await registry.create_rule(key, "needs_docs")
    if status != RuleStatus.PENDING:
        await registry.transition(Writer.PROMOTION_CONTROLLER, rule.id, status)
    if score is not None or samples:
        await registry.update_scores(Writer.EVALUATOR, rule.id, score, samples, 0.4)
    return await registry.get_rule(rule.id)


async def age_rule(session_maker, rule_id, days):
    async with session_maker() as db:
        async with db.begin():
            await db.execute(
                update(RuleModel).where(RuleModel.id == rule_id).values(created_at=utcnow() - timedelta(days=days))
            )


# =============================================================================
# Pending Rule Tests
# =============================================================================

class TestPendingRules:
    """Tests for deciding pending rules."""

    @pytest.mark.asyncio
    async def test_promote_and_reject(self, registry, controller):
        """Test that scores above and below the thresholds decide the rule."""
        good = await scored_rule(registry, "good", 0.85, 10)
        bad = await scored_rule(registry, "bad", 0.1, 10)
        middle = await scored_rule(registry, "middle", 0.5, 10)

        summary = await controller.run_pass()

        assert (summary.promoted, summary.rejected, summary.undecided) == (1, 1, 1)
        assert (await registry.get_rule(good.id)).status == RuleStatus.ACTIVE
        assert (await registry.get_rule(bad.id)).status == RuleStatus.REJECTED
        assert (await registry.get_rule(middle.id)).status == RuleStatus.PENDING

    @pytest.mark.asyncio
    async def test_sample_gate(self, registry, controller):
        """Test that too few samples leave the rule undecided."""
        rule = await scored_rule(registry, "few", 0.95, 4)

        target, reason = controller.decide(rule)

        assert target is None
        assert reason == "undecided"

    @pytest.mark.asyncio
    async def test_second_pass_changes_nothing(self, registry, controller):
        """Test that a repeated pass writes no new transitions."""
        await scored_rule(registry, "good", 0.85, 10)
        await scored_rule(registry, "bad", 0.1, 10)

        await controller.run_pass()
        log_size = sum([len(await registry.change_log(r.id)) for r in await registry.list_rules()])
        second = await controller.run_pass()

        assert (second.promoted, second.rejected, second.retired) == (0, 0, 0)
        assert sum([len(await registry.change_log(r.id)) for r in await registry.list_rules()]) == log_size

    @pytest.mark.asyncio
    async def test_expired_pending_rule(self, session_maker, registry):
        """Test that a stale pending rule is rejected when expiry is enabled."""
        controller = PromotionController(registry, EngineConfig(pending_expiry_days=7))
        rule = await scored_rule(registry, "stale", None, 0)
        await age_rule(session_maker, rule.id, 8)

        summary = await controller.run_pass()

        assert summary.rejected == 1
        log = await registry.change_log(rule.id)
        assert log[-1]["reason"] == "expired"

    @pytest.mark.asyncio
    async def test_unscored_rule_stays_pending_by_default(self, session_maker, registry, controller):
        """Test that an old rule with a null score stays pending and reviewable."""
        rule = await scored_rule(registry, "thin_evidence", None, 2)
        await age_rule(session_maker, rule.id, 8)

        summary = await controller.run_pass()

        assert (summary.rejected, summary.undecided) == (0, 1)
        assert (await registry.get_rule(rule.id)).status == RuleStatus.PENDING
        assert [r.id for r in await controller.undecided_rules()] == [rule.id]

    @pytest.mark.asyncio
    async def test_undecided_rules(self, registry, controller):
        """Test that only undecided pending rules are listed for review."""
        await scored_rule(registry, "good", 0.85, 10)
        middle = await scored_rule(registry, "middle", 0.5, 10)

        assert [r.id for r in await controller.undecided_rules()] == [middle.id]


# =============================================================================
# Demotion Tests
# =============================================================================

class TestDemotion:
    """Tests for retiring active rules."""

    @pytest.mark.asyncio
    async def test_hysteresis(self, registry, controller):
        """Test that only consecutive low scores retire a rule."""
        rule = await scored_rule(registry, "live", None, 0, status=RuleStatus.ACTIVE)
        statuses = []

        for score in (0.2, 0.3, 0.8, 0.1, 0.2, 0.3):
            await registry.update_scores(Writer.EVALUATOR, rule.id, score, 10, 0.4)
            await controller.run_pass()
            statuses.append((await registry.get_rule(rule.id)).status)

        assert statuses == [RuleStatus.ACTIVE] * 5 + [RuleStatus.RETIRED]

    @pytest.mark.asyncio
    async def test_unscored_pass_does_not_reset_counter(self, registry, controller):
        """Test that a null score keeps the low-score streak."""
        rule = await scored_rule(registry, "live", None, 0, status=RuleStatus.ACTIVE)

        for score in (0.1, 0.1, None, 0.1):
            await registry.update_scores(Writer.EVALUATOR, rule.id, score, 10, 0.4)

        assert (await registry.get_rule(rule.id)).consecutive_low_scores == 3
        assert (await controller.run_pass()).retired == 1
