"""
Evolution Pipeline
==================

Wires the engine components together, runs them as one cycle, and schedules
the periodic jobs:

- analysis + evaluation every ``analysis_interval_seconds``;
- promotion + auto-review every ``promotion_interval_seconds``;
- daily aggregation, cluster refresh and cluster rule proposals once a day
  at the configured UTC time, for the day that just ended.

Every stage runs through the engine health circuit breaker, so a failing
stage is skipped for a cooldown instead of failing the whole cycle.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ruleforge.aggregator import KnowledgeAggregator
from ruleforge.analyzer import Analyzer
from ruleforge.auto_review import AutoReviewer
from ruleforge.capabilities import HeuristicScorer, ReviewCapability, ScoringCapability
from ruleforge.config import EngineConfig
from ruleforge.db.models import utcnow
from ruleforge.engine_health import EngineHealth
from ruleforge.evaluator import EffectivenessEvaluator
from ruleforge.outcome_store import OutcomeStore
from ruleforge.promotion import PromotionController
from ruleforge.reporting import ReportingFacade
from ruleforge.rule_registry import RuleRegistry

logger = logging.getLogger(__name__)


class Component:
    """Engine health component names."""
    ANALYSIS = "batch_analysis"
    EVALUATION = "rule_evaluation"
    PROMOTION = "auto_promote"
    REVIEW = "auto_review"
    DAILY = "daily_aggregation"
    CLUSTERING = "knowledge_clustering"


@dataclass
class CycleReport:
    """Per-stage results of one cycle. A None stage was skipped or failed."""
    analysis: Optional[dict] = None
    evaluation: Optional[dict] = None
    promotion: Optional[dict] = None
    review: Optional[dict] = None
    clusters: Optional[dict] = None
    proposals: Optional[int] = None
    daily: Optional[dict] = None
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "analysis": self.analysis,
            "evaluation": self.evaluation,
            "promotion": self.promotion,
            "review": self.review,
            "clusters": self.clusters,
            "proposals": self.proposals,
            "daily": self.daily,
            "skipped": list(self.skipped),
        }


class RuleEvolutionEngine:
    """All engine components over one database."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: Optional[EngineConfig] = None,
        scorer: Optional[ScoringCapability] = None,
        reviewer: Optional[ReviewCapability] = None,
    ):
        self.config = config or EngineConfig()
        self.store = OutcomeStore(session_maker)
        self.registry = RuleRegistry(session_maker)
        self.analyzer = Analyzer(session_maker, scorer or HeuristicScorer(), self.config, self.registry)
        self.evaluator = EffectivenessEvaluator(session_maker, self.registry, self.config)
        self.controller = PromotionController(self.registry, self.config)
        self.reviewer = AutoReviewer(session_maker, self.registry, reviewer, self.config)
        self.aggregator = KnowledgeAggregator(session_maker, self.registry, self.config)
        self.health = EngineHealth(session_maker, self.config)
        self.reporting = ReportingFacade(
            self.store, self.registry, self.analyzer, self.aggregator, self.health,
        )

    async def _stage(self, report: CycleReport, component: str, fn) -> Any:
        result = await self.health.safe_execute(component, fn)
        if result is None:
            report.skipped.append(component)
        return result

    async def run_analysis(self, report: CycleReport, cancel_event: Optional[asyncio.Event] = None) -> None:
        batch = await self._stage(
            report, Component.ANALYSIS, lambda: self.analyzer.analyze_batch(cancel_event=cancel_event),
        )
        report.analysis = batch.to_dict() if batch else None
        evaluation = await self._stage(report, Component.EVALUATION, self.evaluator.evaluate_all)
        report.evaluation = evaluation.to_dict() if evaluation else None

    async def run_promotion(self, report: CycleReport, cancel_event: Optional[asyncio.Event] = None) -> None:
        promotion = await self._stage(report, Component.PROMOTION, self.controller.run_pass)
        report.promotion = promotion.to_dict() if promotion else None
        review = await self._stage(
            report, Component.REVIEW, lambda: self.reviewer.review_batch(cancel_event=cancel_event),
        )
        report.review = review.to_dict() if review else None
        self.reporting.invalidate_prompt_cache()

    async def run_daily(self, report: CycleReport, day: Optional[date] = None) -> None:
        report.daily = await self._stage(report, Component.DAILY, lambda: self.aggregator.aggregate_daily(day))

        async def clustering() -> dict:
            refreshed = await self.aggregator.refresh_clusters()
            report.proposals = await self.aggregator.propose_rules_from_clusters()
            return refreshed.to_dict()

        report.clusters = await self._stage(report, Component.CLUSTERING, clustering)

    async def run_cycle(
        self,
        cancel_event: Optional[asyncio.Event] = None,
        day: Optional[date] = None,
    ) -> CycleReport:
        """Run every stage once, in pipeline order. Safe to repeat."""
        report = CycleReport()
        await self.run_analysis(report, cancel_event)
        await self.run_promotion(report, cancel_event)
        await self.run_daily(report, day)
        logger.info("Cycle complete (skipped: %s)", ", ".join(report.skipped) or "none")
        return report


def seconds_until(now: datetime, hour: int, minute: int) -> float:
    """Seconds from ``now`` to the next hour:minute (same clock as ``now``)."""
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


class EvolutionScheduler:
    """Runs the engine stages periodically until stopped."""

    def __init__(self, engine: RuleEvolutionEngine):
        self.engine = engine
        self.settings = engine.config.scheduler
        self.stop_event = asyncio.Event()

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped. Returns False once stop was requested."""
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False

    async def _analysis_loop(self) -> None:
        while await self._sleep(self.settings.analysis_interval_seconds):
            await self.engine.run_analysis(CycleReport(), self.stop_event)

    async def _promotion_loop(self) -> None:
        while await self._sleep(self.settings.promotion_interval_seconds):
            await self.engine.run_promotion(CycleReport(), self.stop_event)

    async def _daily_loop(self) -> None:
        while True:
            delay = seconds_until(
                utcnow(), self.settings.daily_aggregation_hour_utc, self.settings.daily_aggregation_minute_utc,
            )
            logger.info("Next daily aggregation in %d minutes", delay // 60)
            if not await self._sleep(delay):
                return
            yesterday = utcnow().date() - timedelta(days=1)
            await self.engine.run_daily(CycleReport(), yesterday)

    async def run(self) -> None:
        """Run all loops until stop() is called."""
        logger.info(
            "Scheduler started: analysis every %ds, promotion every %ds, daily at %02d:%02d UTC",
            self.settings.analysis_interval_seconds, self.settings.promotion_interval_seconds,
            self.settings.daily_aggregation_hour_utc, self.settings.daily_aggregation_minute_utc,
        )
        await asyncio.gather(self._analysis_loop(), self._promotion_loop(), self._daily_loop())
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self.stop_event.set()
