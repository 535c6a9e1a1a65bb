"""
Promotion Controller
====================

Threshold state machine over rule status.

    pending -> active    sample_count >= min_samples and score >= promote_threshold
    pending -> rejected  sample_count >= min_samples and score <  reject_threshold
    pending -> rejected  still pending after pending_expiry_days, when that is set
    active  -> retired   consecutive low scores >= demote_consecutive

Everything else stays where it is. Pending rules left undecided are the
auto-reviewer's candidates. Running a pass twice changes nothing the second
time.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from ruleforge.config import EngineConfig
from ruleforge.db.models import utcnow
from ruleforge.rule_registry import Rule, RuleRegistry, RuleStatus, Writer

logger = logging.getLogger(__name__)


@dataclass
class PromotionSummary:
    examined: int = 0
    promoted: int = 0
    rejected: int = 0
    retired: int = 0
    undecided: int = 0

    def to_dict(self) -> dict:
        return {
            "examined": self.examined,
            "promoted": self.promoted,
            "rejected": self.rejected,
            "retired": self.retired,
            "undecided": self.undecided,
        }


class PromotionController:
    """Applies the promotion thresholds to every live rule."""

    def __init__(self, registry: RuleRegistry, config: Optional[EngineConfig] = None):
        self.registry = registry
        self.config = config or EngineConfig()

    def decide(self, rule: Rule) -> tuple[Optional[RuleStatus], str]:
        """Target status for a rule (None to leave it) and the reason."""
        cfg = self.config
        if rule.status == RuleStatus.PENDING:
            decidable = rule.effectiveness_score is not None and rule.sample_count >= cfg.min_samples
            if decidable and rule.effectiveness_score >= cfg.promote_threshold:
                return RuleStatus.ACTIVE, (
                    f"score {rule.effectiveness_score:.3f} >= {cfg.promote_threshold} "
                    f"over {rule.sample_count} samples"
                )
            if decidable and rule.effectiveness_score < cfg.reject_threshold:
                return RuleStatus.REJECTED, (
                    f"score {rule.effectiveness_score:.3f} < {cfg.reject_threshold} "
                    f"over {rule.sample_count} samples"
                )
            if cfg.pending_expiry_days is not None and rule.created_at is not None:
                if utcnow() - rule.created_at > timedelta(days=cfg.pending_expiry_days):
                    return RuleStatus.REJECTED, "expired"
            return None, "undecided"

        if rule.status == RuleStatus.ACTIVE:
            if rule.consecutive_low_scores >= cfg.demote_consecutive:
                return RuleStatus.RETIRED, (
                    f"{rule.consecutive_low_scores} consecutive scores below {cfg.demote_threshold}"
                )
        return None, ""

    async def run_pass(self) -> PromotionSummary:
        summary = PromotionSummary()
        rules = (
            await self.registry.list_rules(status=RuleStatus.PENDING)
            + await self.registry.list_rules(status=RuleStatus.ACTIVE)
        )
        for rule in rules:
            summary.examined += 1
            target, reason = self.decide(rule)
            if target is None:
                if rule.status == RuleStatus.PENDING:
                    summary.undecided += 1
                continue

            changed = await self.registry.transition(Writer.PROMOTION_CONTROLLER, rule.id, target, reason)
            if not changed:
                continue
            if target == RuleStatus.ACTIVE:
                summary.promoted += 1
            elif target == RuleStatus.REJECTED:
                summary.rejected += 1
            elif target == RuleStatus.RETIRED:
                summary.retired += 1

        logger.info(
            "Promotion pass: %d examined, %d promoted, %d rejected, %d retired, %d undecided",
            summary.examined, summary.promoted, summary.rejected, summary.retired, summary.undecided,
        )
        return summary

    async def undecided_rules(self) -> list[Rule]:
        """Pending rules this controller would leave pending."""
        pending = await self.registry.list_rules(status=RuleStatus.PENDING)
        return [r for r in pending if self.decide(r)[0] is None]
