"""
Effectiveness Evaluator
=======================

Correlates rule applicability with recorded outcomes.

A rule applies to a session when the session's newest analysis carries the
rule's category among its derived tags. The score of a rule is

    w_s * success_rate + w_c * mean(completion / 100)

over applicable sessions with a decided outcome. With fewer than
``min_samples`` such sessions the score is None: not decidable yet.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ruleforge.analyzer import latest_revision_ids
from ruleforge.config import EngineConfig
from ruleforge.db.models import ConversationAnalysisModel, SessionModel, utcnow
from ruleforge.outcome_store import Outcome
from ruleforge.rule_registry import Rule, RuleRegistry, RuleStatus, Writer

logger = logging.getLogger(__name__)


@dataclass
class Sample:
    """One applicable session as seen by the evaluator."""
    tags: frozenset
    outcome: str
    completion: float
    appeal_success_estimate: float


@dataclass
class EvaluationSummary:
    evaluated: int = 0
    scored: int = 0
    insufficient: int = 0

    def to_dict(self) -> dict:
        return {"evaluated": self.evaluated, "scored": self.scored, "insufficient": self.insufficient}


class EffectivenessEvaluator:
    """Writes effectiveness score and sample count for every live rule."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        registry: RuleRegistry,
        config: Optional[EngineConfig] = None,
    ):
        self.session_maker = session_maker
        self.registry = registry
        self.config = config or EngineConfig()

    async def load_samples(self) -> list[Sample]:
        """Newest analysis per session joined with the session outcome, within the window."""
        query = (
            select(
                ConversationAnalysisModel.derived_tags,
                ConversationAnalysisModel.completion,
                ConversationAnalysisModel.appeal_success_estimate,
                SessionModel.outcome,
            )
            .join(SessionModel, SessionModel.id == ConversationAnalysisModel.session_id)
            .where(ConversationAnalysisModel.id.in_(latest_revision_ids()))
        )
        if self.config.evaluation_window_days is not None:
            since = utcnow() - timedelta(days=self.config.evaluation_window_days)
            query = query.where(ConversationAnalysisModel.created_at >= since)
        if not self.config.count_unknown_outcomes:
            query = query.where(SessionModel.outcome.in_((Outcome.SUCCESS.value, Outcome.FAIL.value)))

        async with self.session_maker() as db:
            rows = (await db.execute(query)).all()
        return [
            Sample(
                tags=frozenset(tags or []),
                outcome=outcome,
                completion=completion,
                appeal_success_estimate=estimate,
            )
            for tags, completion, estimate, outcome in rows
        ]

    def compute_score(self, samples: list[Sample]) -> Optional[float]:
        """Score for a set of applicable samples, or None below min_samples."""
        if len(samples) < self.config.min_samples:
            return None

        successes = 0.0
        for s in samples:
            if s.outcome == Outcome.SUCCESS.value:
                successes += 1.0
            elif s.outcome == Outcome.UNKNOWN.value:
                # Only reachable with count_unknown_outcomes
                successes += s.appeal_success_estimate
        success_rate = successes / len(samples)
        mean_completion = sum(s.completion for s in samples) / len(samples) / 100.0

        total_weight = self.config.success_weight + self.config.completion_weight
        w_s = self.config.success_weight / total_weight
        w_c = self.config.completion_weight / total_weight
        return round(w_s * success_rate + w_c * mean_completion, 6)

    async def evaluate_rule(self, rule: Rule, samples: Optional[list[Sample]] = None) -> Rule:
        if samples is None:
            samples = await self.load_samples()
        applicable = [s for s in samples if rule.category in s.tags]
        score = self.compute_score(applicable)
        return await self.registry.update_scores(
            Writer.EVALUATOR, rule.id, score, len(applicable), self.config.demote_threshold,
        )

    async def evaluate_all(self) -> EvaluationSummary:
        """Evaluate every pending and active rule once. Each rule gets one evaluation record."""
        summary = EvaluationSummary()
        samples = await self.load_samples()
        rules = (
            await self.registry.list_rules(status=RuleStatus.PENDING)
            + await self.registry.list_rules(status=RuleStatus.ACTIVE)
        )
        for rule in rules:
            updated = await self.evaluate_rule(rule, samples)
            summary.evaluated += 1
            if updated.effectiveness_score is None:
                summary.insufficient += 1
            else:
                summary.scored += 1

        logger.info(
            "Evaluation pass: %d rules, %d scored, %d insufficient (%d samples)",
            summary.evaluated, summary.scored, summary.insufficient, len(samples),
        )
        return summary
