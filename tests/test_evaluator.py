"""
Tests for Evaluator Module
==========================

Tests for evaluator.py - effectiveness scores over matching analyses.
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from ruleforge.analyzer import Analyzer
from ruleforge.capabilities import ScoreResult
from ruleforge.config import EngineConfig
from ruleforge.db.models import ConversationAnalysisModel, utcnow
from ruleforge.evaluator import EffectivenessEvaluator, Sample
from ruleforge.promotion import PromotionController
from ruleforge.rule_registry import RuleRegistry, RuleStatus, Writer


class TaggedScorer:
    def __init__(self, completion=80.0, tags=("needs_docs",), estimate=0.5):
        self.completion = completion
        self.tags = list(tags)
        self.estimate = estimate

    async def score(self, transcript, collected_fields):
        return ScoreResult(
            completion=self.completion,
            professionalism=60.0,
            violation_tags=list(self.tags),
            appeal_success_estimate=self.estimate,
        )


async def seed(session_maker, make_session, outcomes, prefix="s", **scorer_kwargs):
    """Create and analyze one session per outcome."""
    for i, outcome in enumerate(outcomes):
        await make_session(f"{prefix}{i:02d}", outcome=outcome)
    analyzer = Analyzer(session_maker, TaggedScorer(**scorer_kwargs), EngineConfig())
    await analyzer.analyze_batch(len(outcomes))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def registry(session_maker):
    """Create a RuleRegistry for testing."""
    return RuleRegistry(session_maker)


# =============================================================================
# Score Computation Tests
# =============================================================================

class TestScoring:
    """Tests for EffectivenessEvaluator.compute_score."""

    def test_weighted_score(self):
        """Test the weighted success and completion score."""
        evaluator = EffectivenessEvaluator(None, None, EngineConfig())
        samples = [Sample(frozenset({"t"}), "success" if i < 8 else "fail", 80.0, 0.5) for i in range(10)]

        assert evaluator.compute_score(samples) == pytest.approx(0.8)

    def test_below_min_samples(self):
        """Test that too few samples give no score."""
        evaluator = EffectivenessEvaluator(None, None, EngineConfig(min_samples=5))
        samples = [Sample(frozenset(), "success", 100.0, 1.0)] * 4

        assert evaluator.compute_score(samples) is None

    def test_unknown_outcome_uses_estimate(self):
        """Test that an unknown outcome counts as its success estimate."""
        evaluator = EffectivenessEvaluator(None, None, EngineConfig(min_samples=1, completion_weight=0.0))
        samples = [Sample(frozenset(), "unknown", 0.0, 0.25), Sample(frozenset(), "success", 0.0, 0.0)]

        assert evaluator.compute_score(samples) == pytest.approx(0.625)


# =============================================================================
# Evaluation Pass Tests
# =============================================================================

class TestEvaluation:
    """Tests for EffectivenessEvaluator.evaluate_all."""

    @pytest.mark.asyncio
    async def test_scenario_promotes_rule(self, session_maker, make_session, registry):
        """Test that a well-scored rule is promoted by the next pass."""
        await seed(session_maker, make_session, ["success"] * 8 + ["fail"] * 2)
        rule, _ = await registry.create_rule("docs_checklist", "needs_docs")
        config = EngineConfig()

        summary = await EffectivenessEvaluator(session_maker, registry, config).evaluate_all()
        scored = await registry.get_rule(rule.id)

        assert summary.scored == 1
        assert scored.sample_count == 10
        assert scored.effectiveness_score == pytest.approx(0.8)

        await PromotionController(registry, config).run_pass()
        assert (await registry.get_rule(rule.id)).status == RuleStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_insufficient_samples(self, session_maker, make_session, registry):
        """Test that a rule with too few samples keeps a null score."""
        await seed(session_maker, make_session, ["success"] * 3)
        rule, _ = await registry.create_rule("docs_checklist", "needs_docs")

        summary = await EffectivenessEvaluator(session_maker, registry, EngineConfig()).evaluate_all()
        evaluated = await registry.get_rule(rule.id)

        assert summary.insufficient == 1
        assert evaluated.effectiveness_score is None
        assert evaluated.sample_count == 3

    @pytest.mark.asyncio
    async def test_only_matching_category_counts(self, session_maker, make_session, registry):
        """Test that a rule is scored only on analyses tagged with its category."""
        await seed(session_maker, make_session, ["success"] * 5, prefix="a", tags=["needs_docs"])
        await seed(session_maker, make_session, ["fail"] * 5, prefix="b", tags=["slow_reply"])
        docs, _ = await registry.create_rule("docs", "needs_docs")
        slow, _ = await registry.create_rule("slow", "slow_reply")

        await EffectivenessEvaluator(session_maker, registry, EngineConfig()).evaluate_all()

        assert (await registry.get_rule(docs.id)).effectiveness_score == pytest.approx(0.7 + 0.3 * 0.8)
        assert (await registry.get_rule(slow.id)).effectiveness_score == pytest.approx(0.3 * 0.8)

    @pytest.mark.asyncio
    async def test_unknown_outcomes_excluded_by_default(self, session_maker, make_session, registry):
        """Test that sessions without an outcome are not samples by default."""
        await seed(session_maker, make_session, ["success"] * 5 + [None] * 5)
        rule, _ = await registry.create_rule("docs", "needs_docs")

        await EffectivenessEvaluator(session_maker, registry, EngineConfig()).evaluate_all()

        assert (await registry.get_rule(rule.id)).sample_count == 5

    @pytest.mark.asyncio
    async def test_evaluation_window(self, session_maker, make_session, registry):
        """Test that analyses older than the window are ignored."""
        await seed(session_maker, make_session, ["success"] * 6)
        async with session_maker() as db:
            async with db.begin():
                await db.execute(
                    update(ConversationAnalysisModel)
                    .where(ConversationAnalysisModel.session_id.in_(["s00", "s01"]))
                    .values(created_at=utcnow() - timedelta(days=60))
                )
        rule, _ = await registry.create_rule("docs", "needs_docs")

        await EffectivenessEvaluator(session_maker, registry, EngineConfig(evaluation_window_days=30)).evaluate_all()

        assert (await registry.get_rule(rule.id)).sample_count == 4

    @pytest.mark.asyncio
    async def test_terminal_rules_not_evaluated(self, session_maker, make_session, registry):
        """Test that rejected rules are skipped."""
        rule, _ = await registry.create_rule("docs", "needs_docs")
        await registry.transition(Writer.PROMOTION_CONTROLLER, rule.id, RuleStatus.REJECTED)

        summary = await EffectivenessEvaluator(session_maker, registry, EngineConfig()).evaluate_all()

        assert summary.evaluated == 0
        assert await registry.evaluation_history(rule.id) == []
