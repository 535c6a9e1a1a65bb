"""
Auto-Reviewer
=============

Adjudicates pending rules the promotion controller left undecided by asking
the review capability. A confident approval activates the rule without
waiting for the sample gate; a confident rejection rejects it. Anything else
(unavailable capability, timeout, low confidence) leaves the rule pending
with ``last_reviewed_at`` updated, so it is picked up again on a later pass.

Admin decisions go through the same guarded transition with actor ``human``.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ruleforge.analyzer import ConversationAnalysis, latest_revision_ids
from ruleforge.capabilities import ReviewCapability, ReviewVerdict, Verdict
from ruleforge.config import EngineConfig
from ruleforge.db.models import ConversationAnalysisModel
from ruleforge.errors import (
    CapabilityError,
    CapabilityTimeout,
    InvalidCapabilityResponse,
    InvalidTransitionError,
    InvariantViolation,
)
from ruleforge.promotion import PromotionController
from ruleforge.rule_registry import ReviewActor, Rule, RuleRegistry, RuleStatus, Writer

logger = logging.getLogger(__name__)


@dataclass
class ReviewSummary:
    attempted: int = 0
    approved: int = 0
    rejected: int = 0
    deferred: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "approved": self.approved,
            "rejected": self.rejected,
            "deferred": self.deferred,
            "failed": self.failed,
        }


class AutoReviewer:
    """Reviews undecided pending rules and applies manual verdicts."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        registry: RuleRegistry,
        reviewer: Optional[ReviewCapability] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.session_maker = session_maker
        self.registry = registry
        self.reviewer = reviewer
        self.config = config or EngineConfig()
        self.controller = PromotionController(registry, self.config)

    async def supporting_analyses(self, rule: Rule) -> list[dict]:
        """Newest analyses the rule applies to, up to review_support_limit."""
        async with self.session_maker() as db:
            rows = (await db.execute(
                select(ConversationAnalysisModel)
                .where(ConversationAnalysisModel.id.in_(latest_revision_ids()))
                .order_by(ConversationAnalysisModel.created_at.desc(), ConversationAnalysisModel.id.desc())
            )).scalars().all()

        support = []
        for row in rows:
            if rule.category in (row.derived_tags or []):
                support.append(ConversationAnalysis.from_model(row).to_dict())
                if len(support) >= self.config.review_support_limit:
                    break
        return support

    async def _call_reviewer(self, rule: Rule, support: list[dict]) -> ReviewVerdict:
        timeout = self.config.capability_timeout_seconds
        try:
            verdict = await asyncio.wait_for(self.reviewer.review(rule.definition(), support), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise CapabilityTimeout(timeout, {"rule_id": rule.id}) from e
        except CapabilityError:
            raise
        except Exception as e:
            raise CapabilityError(f"Review failed: {e}", {"rule_id": rule.id}) from e

        if not isinstance(verdict, ReviewVerdict):
            raise InvalidCapabilityResponse(f"Reviewer returned {type(verdict).__name__}, expected ReviewVerdict")
        return verdict.validate()

    async def review_rule(self, rule: Rule) -> str:
        """Review one pending rule. Returns approved, rejected, deferred or failed."""
        if self.reviewer is None:
            await self.registry.mark_reviewed(Writer.AUTO_REVIEWER, rule.id, "review capability unavailable")
            return "deferred"

        support = await self.supporting_analyses(rule)
        try:
            verdict = await self._call_reviewer(rule, support)
        except CapabilityError as e:
            logger.warning("Review of rule %s failed: %s", rule.rule_key, e)
            await self.registry.mark_reviewed(Writer.AUTO_REVIEWER, rule.id, f"review failed: {e}")
            return "failed"

        if verdict.confidence < self.config.min_review_confidence:
            await self.registry.mark_reviewed(
                Writer.AUTO_REVIEWER, rule.id,
                f"{verdict.verdict.value} with confidence {verdict.confidence:.2f}: {verdict.reason}",
            )
            return "deferred"

        target = RuleStatus.ACTIVE if verdict.verdict == Verdict.APPROVE else RuleStatus.REJECTED
        reason = f"auto-review {verdict.verdict.value} ({verdict.confidence:.2f}): {verdict.reason}"
        try:
            changed = await self.registry.transition(
                Writer.AUTO_REVIEWER, rule.id, target, reason, actor=ReviewActor.AUTOMATED,
            )
        except InvalidTransitionError:
            # No longer pending since it was listed
            changed = False
        if not changed:
            # Decided concurrently by the controller or another reviewer
            return "deferred"
        return "approved" if target == RuleStatus.ACTIVE else "rejected"

    async def review_batch(
        self,
        limit: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ReviewSummary:
        """Review undecided pending rules, least recently reviewed first."""
        candidates = await self.controller.undecided_rules()
        candidates.sort(key=lambda r: (r.last_reviewed_at is not None, r.last_reviewed_at or r.created_at, r.id))
        if limit is not None:
            candidates = candidates[:limit]

        summary = ReviewSummary()
        semaphore = asyncio.Semaphore(self.config.review_concurrency)

        async def worker(rule: Rule) -> None:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    return
                summary.attempted += 1
                try:
                    outcome = await self.review_rule(rule)
                except InvariantViolation:
                    summary.failed += 1
                    raise
                except Exception:
                    logger.exception("Review of rule %s aborted", rule.rule_key)
                    outcome = "failed"
                setattr(summary, outcome, getattr(summary, outcome) + 1)

        await asyncio.gather(*(worker(r) for r in candidates))
        logger.info(
            "Review pass: %d attempted, %d approved, %d rejected, %d deferred, %d failed",
            summary.attempted, summary.approved, summary.rejected, summary.deferred, summary.failed,
        )
        return summary

    async def apply_manual_verdict(self, rule_id: int, verdict: Verdict, reason: str = "") -> bool:
        """
        Record an admin decision.

        Approve activates a pending rule. Reject rejects a pending rule or
        retires an active one. Disallowed moves raise InvalidTransitionError.
        """
        verdict = Verdict(verdict)
        rule = await self.registry.get_rule(rule_id)
        if verdict == Verdict.APPROVE:
            target = RuleStatus.ACTIVE
        elif rule.status == RuleStatus.ACTIVE:
            target = RuleStatus.RETIRED
        else:
            target = RuleStatus.REJECTED
        return await self.registry.transition(
            Writer.AUTO_REVIEWER, rule_id, target, reason or f"manual {verdict.value}", actor=ReviewActor.HUMAN,
        )
