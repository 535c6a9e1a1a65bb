"""
Tests for Auto Review Module
============================

Tests for auto_review.py - automated review passes and manual verdicts.
"""

import asyncio

import pytest

from ruleforge.analyzer import Analyzer
from ruleforge.auto_review import AutoReviewer
from ruleforge.capabilities import HeuristicScorer, ReviewCapability, ReviewVerdict, Verdict
from ruleforge.config import EngineConfig
from ruleforge.errors import InvalidTransitionError, InvariantViolation, NotFoundError
from ruleforge.rule_registry import RuleRegistry, RuleStatus, Writer


# =============================================================================
# Reviewers
# =============================================================================

class StaticReviewer:
    """Returns the same verdict and remembers what it was shown."""

    def __init__(self, verdict, confidence):
        self.verdict = verdict
        self.confidence = confidence
        self.seen = []

    async def review(self, rule_definition, supporting_analyses):
        self.seen.append((rule_definition, supporting_analyses))
        return ReviewVerdict(verdict=self.verdict, confidence=self.confidence, reason="static")


class HangingReviewer:
    async def review(self, rule_definition, supporting_analyses):
        await asyncio.sleep(30)


class GarbageReviewer:
    async def review(self, rule_definition, supporting_analyses):
        return {"verdict": "approve"}


class LookupFailingReviewer(StaticReviewer):
    """Raises NotFoundError for one rule key and approves the rest."""

    def __init__(self, missing_key):
        super().__init__(Verdict.APPROVE, 0.9)
        self.missing_key = missing_key

    async def review(self, rule_definition, supporting_analyses):
        if rule_definition["rule_key"] == self.missing_key:
            raise NotFoundError("Policy", self.missing_key)
        return await super().review(rule_definition, supporting_analyses)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def registry(session_maker):
    """Create a RuleRegistry for testing."""
    return RuleRegistry(session_maker)


def make_reviewer(session_maker, registry, reviewer=None, **overrides):
    return AutoReviewer(session_maker, registry, reviewer, EngineConfig(**overrides))


# =============================================================================
# Review Batch Tests
# =============================================================================

class TestReviewBatch:
    """Tests for automated review passes."""

    @pytest.mark.asyncio
    async def test_confident_approval_activates(self, session_maker, registry):
        """Test that a confident approval activates the rule."""
        rule, _ = await registry.create_rule("r", "needs_docs")
        capability = StaticReviewer(Verdict.APPROVE, 0.9)
        assert isinstance(capability, ReviewCapability)

        summary = await make_reviewer(session_maker, registry, capability).review_batch()

        reviewed = await registry.get_rule(rule.id)
        assert summary.approved == 1
        assert reviewed.status == RuleStatus.ACTIVE
        assert reviewed.last_review_actor == "automated"

    @pytest.mark.asyncio
    async def test_confident_rejection(self, session_maker, registry):
        """Test that a confident rejection rejects the rule."""
        rule, _ = await registry.create_rule("r", "needs_docs")

        summary = await make_reviewer(session_maker, registry, StaticReviewer(Verdict.REJECT, 0.95)).review_batch()

        assert summary.rejected == 1
        assert (await registry.get_rule(rule.id)).status == RuleStatus.REJECTED

    @pytest.mark.asyncio
    async def test_low_confidence_defers(self, session_maker, registry):
        """Test that a low-confidence verdict leaves the rule pending."""
        rule, _ = await registry.create_rule("r", "needs_docs")

        summary = await make_reviewer(session_maker, registry, StaticReviewer(Verdict.APPROVE, 0.3)).review_batch()

        reviewed = await registry.get_rule(rule.id)
        assert summary.deferred == 1
        assert reviewed.status == RuleStatus.PENDING
        assert reviewed.last_reviewed_at is not None

    @pytest.mark.asyncio
    async def test_no_capability_defers(self, session_maker, registry):
        """Test that reviews are deferred when no reviewer is configured."""
        rule, _ = await registry.create_rule("r", "needs_docs")

        summary = await make_reviewer(session_maker, registry).review_batch()

        assert (summary.attempted, summary.deferred) == (1, 1)
        assert (await registry.get_rule(rule.id)).status == RuleStatus.PENDING
        assert (await registry.change_log(rule.id))[-1]["action"] == "review_deferred"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("capability", [HangingReviewer(), GarbageReviewer()])
    async def test_failed_review_leaves_pending(self, session_maker, registry, capability):
        """Test that a timed-out or invalid review leaves the rule pending."""
        rule, _ = await registry.create_rule("r", "needs_docs")
        reviewer = make_reviewer(session_maker, registry, capability, capability_timeout_seconds=0.1)

        summary = await reviewer.review_batch()

        reviewed = await registry.get_rule(rule.id)
        assert summary.failed == 1
        assert reviewed.status == RuleStatus.PENDING
        assert reviewed.last_reviewed_at is not None

    @pytest.mark.asyncio
    async def test_reviewer_engine_error_fails_one_rule(self, session_maker, registry):
        """Test that an engine error raised by the reviewer fails only its rule."""
        missing, _ = await registry.create_rule("missing_policy", "needs_docs")
        other, _ = await registry.create_rule("other", "needs_docs")
        reviewer = make_reviewer(session_maker, registry, LookupFailingReviewer("missing_policy"))

        summary = await reviewer.review_batch()

        assert (summary.attempted, summary.approved, summary.failed) == (2, 1, 1)
        failed = await registry.get_rule(missing.id)
        assert failed.status == RuleStatus.PENDING
        assert failed.last_reviewed_at is not None
        assert (await registry.get_rule(other.id)).status == RuleStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_error_outside_reviewer_counts_as_failed(self, session_maker, registry):
        """Test that an error while preparing a review does not abort the pass."""
        await registry.create_rule("a", "needs_docs")
        await registry.create_rule("b", "needs_docs")
        reviewer = make_reviewer(session_maker, registry, StaticReviewer(Verdict.APPROVE, 0.9))

        async def broken_support(rule):
            if rule.rule_key == "a":
                raise NotFoundError("Analysis", rule.rule_key)
            return []

        reviewer.supporting_analyses = broken_support

        summary = await reviewer.review_batch()

        assert (summary.attempted, summary.approved, summary.failed) == (2, 1, 1)

    @pytest.mark.asyncio
    async def test_rule_decided_during_review_is_deferred(self, session_maker, registry):
        """Test that a rule rejected while its review runs is deferred, not failed."""
        rule, _ = await registry.create_rule("r", "needs_docs")

        class RacingReviewer(StaticReviewer):
            async def review(self, rule_definition, supporting_analyses):
                await registry.transition(Writer.AUTO_REVIEWER, rule.id, RuleStatus.REJECTED, "decided elsewhere")
                return await super().review(rule_definition, supporting_analyses)

        summary = await make_reviewer(session_maker, registry, RacingReviewer(Verdict.APPROVE, 0.9)).review_batch()

        assert (summary.deferred, summary.failed) == (1, 0)
        assert (await registry.get_rule(rule.id)).status == RuleStatus.REJECTED

    @pytest.mark.asyncio
    async def test_invariant_violation_propagates(self, session_maker, registry):
        """Test that an invariant violation is raised from the pass, not counted."""
        await registry.create_rule("r", "needs_docs")
        reviewer = make_reviewer(session_maker, registry, StaticReviewer(Verdict.APPROVE, 0.9))

        async def forbidden(rule):
            raise InvariantViolation("writer may not read analyses")

        reviewer.supporting_analyses = forbidden

        with pytest.raises(InvariantViolation):
            await reviewer.review_batch()

    @pytest.mark.asyncio
    async def test_decided_rules_not_reviewed(self, session_maker, registry):
        """Test that rules with a decision score are left to the controller."""
        rule, _ = await registry.create_rule("r", "needs_docs")
        await registry.update_scores(Writer.EVALUATOR, rule.id, 0.9, 10, 0.4)
        capability = StaticReviewer(Verdict.REJECT, 0.9)

        summary = await make_reviewer(session_maker, registry, capability).review_batch()

        assert summary.attempted == 0
        assert capability.seen == []

    @pytest.mark.asyncio
    async def test_least_recently_reviewed_first(self, session_maker, registry):
        """Test that never-reviewed rules are reviewed first."""
        first, _ = await registry.create_rule("first", "c")
        second, _ = await registry.create_rule("second", "c")
        reviewer = make_reviewer(session_maker, registry)

        await reviewer.review_batch(limit=1)
        await reviewer.review_batch(limit=1)

        assert (await registry.get_rule(first.id)).last_reviewed_at is not None
        assert (await registry.get_rule(second.id)).last_reviewed_at is not None

    @pytest.mark.asyncio
    async def test_supporting_analyses_passed(self, session_maker, registry, make_session):
        """Test that matching analyses are shown to the reviewer."""
        await make_session("s1", fields={"industry": "retail"})
        await Analyzer(session_maker, HeuristicScorer(), EngineConfig()).analyze_batch(10)
        await registry.create_rule("retail_tips", "industry:retail")
        capability = StaticReviewer(Verdict.APPROVE, 0.9)

        await make_reviewer(session_maker, registry, capability).review_batch()

        [(definition, support)] = capability.seen
        assert definition["rule_key"] == "retail_tips"
        assert [a["session_id"] for a in support] == ["s1"]

    @pytest.mark.asyncio
    async def test_cancelled_batch_reviews_nothing(self, session_maker, registry):
        """Test that a cancelled pass reviews nothing."""
        await registry.create_rule("r", "c")
        cancel = asyncio.Event()
        cancel.set()
        capability = StaticReviewer(Verdict.APPROVE, 0.9)

        summary = await make_reviewer(session_maker, registry, capability).review_batch(cancel_event=cancel)

        assert summary.attempted == 0
        assert capability.seen == []


# =============================================================================
# Manual Verdict Tests
# =============================================================================

class TestManualVerdict:
    """Tests for human verdicts."""

    @pytest.mark.asyncio
    async def test_manual_approve(self, session_maker, registry):
        """Test that a manual approval activates the rule as the human actor."""
        rule, _ = await registry.create_rule("r", "c")

        assert await make_reviewer(session_maker, registry).apply_manual_verdict(rule.id, Verdict.APPROVE) is True

        approved = await registry.get_rule(rule.id)
        assert approved.status == RuleStatus.ACTIVE
        assert approved.last_review_actor == "human"
        assert (await registry.change_log(rule.id))[-1]["actor"] == "human"

    @pytest.mark.asyncio
    async def test_manual_reject_retires_active_rule(self, session_maker, registry):
        """Test that rejecting an active rule retires it."""
        rule, _ = await registry.create_rule("r", "c")
        reviewer = make_reviewer(session_maker, registry)
        await reviewer.apply_manual_verdict(rule.id, Verdict.APPROVE)

        await reviewer.apply_manual_verdict(rule.id, Verdict.REJECT, "harmful")

        assert (await registry.get_rule(rule.id)).status == RuleStatus.RETIRED

    @pytest.mark.asyncio
    async def test_manual_verdict_on_terminal_rule(self, session_maker, registry):
        """Test that a verdict on a rejected rule raises InvalidTransitionError."""
        rule, _ = await registry.create_rule("r", "c")
        reviewer = make_reviewer(session_maker, registry)
        await reviewer.apply_manual_verdict(rule.id, Verdict.REJECT)

        with pytest.raises(InvalidTransitionError):
            await reviewer.apply_manual_verdict(rule.id, Verdict.APPROVE)
