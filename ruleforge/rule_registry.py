"""
Rule Registry
=============

Rules and their lifecycle.

    pending -> active -> retired
    pending -> rejected

Rejected and retired are terminal. Two invariants are enforced here, at the
API boundary:

- effectiveness score and sample count are written only by the evaluator;
- status is changed only by the promotion controller or the auto-reviewer,
  through a compare-and-set on the current status.

Evaluation records and the change log are append-only.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update, func, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ruleforge.db.models import RuleModel, EvaluationRecordModel, RuleChangeLogModel, utcnow
from ruleforge.errors import InvariantViolation, InvalidTransitionError, NotFoundError

logger = logging.getLogger(__name__)


class RuleStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REJECTED = "rejected"
    RETIRED = "retired"


LIVE_STATUSES = (RuleStatus.PENDING.value, RuleStatus.ACTIVE.value)

ALLOWED_TRANSITIONS = {
    RuleStatus.PENDING: {RuleStatus.ACTIVE, RuleStatus.REJECTED},
    RuleStatus.ACTIVE: {RuleStatus.RETIRED},
    RuleStatus.REJECTED: set(),
    RuleStatus.RETIRED: set(),
}


class RuleSource(Enum):
    MANUAL = "manual"
    DERIVED_FROM_CLUSTER = "derived_from_cluster"
    ANALYSIS_PROPOSAL = "analysis_proposal"


class Writer(Enum):
    """Engine component performing a registry write."""
    EVALUATOR = "evaluator"
    PROMOTION_CONTROLLER = "promotion_controller"
    AUTO_REVIEWER = "auto_reviewer"


class ReviewActor(Enum):
    HUMAN = "human"
    AUTOMATED = "automated"


STATUS_WRITERS = (Writer.PROMOTION_CONTROLLER, Writer.AUTO_REVIEWER)


@dataclass
class Rule:
    """Read-side view of a rule version."""
    id: int
    rule_key: str
    category: str
    status: RuleStatus
    version: int = 1
    name: str = ""
    content: dict[str, Any] = field(default_factory=dict)
    source: RuleSource = RuleSource.MANUAL
    effectiveness_score: Optional[float] = None
    sample_count: int = 0
    consecutive_low_scores: int = 0
    last_evaluated_at: Optional[datetime] = None
    last_reviewed_at: Optional[datetime] = None
    last_review_actor: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self.status]

    def definition(self) -> dict:
        """The parts of a rule a reviewer needs to judge it."""
        return {
            "rule_key": self.rule_key,
            "version": self.version,
            "name": self.name,
            "category": self.category,
            "content": self.content,
            "source": self.source.value,
            "effectiveness_score": self.effectiveness_score,
            "sample_count": self.sample_count,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rule_key": self.rule_key,
            "version": self.version,
            "name": self.name,
            "category": self.category,
            "content": self.content,
            "status": self.status.value,
            "source": self.source.value,
            "effectiveness_score": self.effectiveness_score,
            "sample_count": self.sample_count,
            "consecutive_low_scores": self.consecutive_low_scores,
            "last_evaluated_at": self.last_evaluated_at.isoformat() if self.last_evaluated_at else None,
            "last_reviewed_at": self.last_reviewed_at.isoformat() if self.last_reviewed_at else None,
            "last_review_actor": self.last_review_actor,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_model(cls, row: RuleModel) -> "Rule":
        return cls(
            id=row.id,
            rule_key=row.rule_key,
            version=row.version,
            name=row.name,
            category=row.category,
            content=dict(row.content or {}),
            status=RuleStatus(row.status),
            source=RuleSource(row.source),
            effectiveness_score=row.effectiveness_score,
            sample_count=row.sample_count or 0,
            consecutive_low_scores=row.consecutive_low_scores or 0,
            last_evaluated_at=row.last_evaluated_at,
            last_reviewed_at=row.last_reviewed_at,
            last_review_actor=row.last_review_actor,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


def count_trailing_low(scores: list[Optional[float]], threshold: float) -> int:
    """
    Count consecutive scores below threshold at the end of the history.

    ``scores`` is oldest first. Null scores are skipped; counting stops at the
    first score at or above the threshold.
    """
    count = 0
    for score in reversed(scores):
        if score is None:
            continue
        if score >= threshold:
            break
        count += 1
    return count


class RuleRegistry:
    """Persistence and invariants for rules."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    # -------------------------------------------------------------------------
    # Creation and reads
    # -------------------------------------------------------------------------

    async def create_rule(
        self,
        rule_key: str,
        category: str,
        name: str = "",
        content: Optional[dict] = None,
        source: RuleSource = RuleSource.MANUAL,
    ) -> tuple[Rule, bool]:
        """
        Create a pending rule.

        Idempotent on a live rule key: if a pending or active version exists it
        is returned unchanged. A key whose latest version is terminal gets a
        new version. Returns (rule, created).
        """
        source = RuleSource(source)
        for _ in range(3):
            latest = await self.get_by_key(rule_key)
            if latest is not None and not latest.is_terminal:
                return latest, False
            version = latest.version + 1 if latest else 1

            async with self.session_maker() as db:
                try:
                    async with db.begin():
                        row = RuleModel(
                            rule_key=rule_key,
                            version=version,
                            name=name or rule_key,
                            category=category,
                            content=content or {},
                            status=RuleStatus.PENDING.value,
                            source=source.value,
                            sample_count=0,
                            consecutive_low_scores=0,
                        )
                        db.add(row)
                        await db.flush()
                        db.add(RuleChangeLogModel(
                            rule_id=row.id,
                            action="created",
                            to_status=RuleStatus.PENDING.value,
                            actor=source.value,
                            reason=f"{source.value} v{version}",
                        ))
                except IntegrityError:
                    # Another writer created this version first
                    continue
            logger.info("Rule created: %s v%d (category=%s, source=%s)", rule_key, version, category, source.value)
            return Rule.from_model(row), True

        latest = await self.get_by_key(rule_key)
        return latest, False

    async def get_rule(self, rule_id: int) -> Rule:
        async with self.session_maker() as db:
            row = await db.get(RuleModel, rule_id)
            if row is None:
                raise NotFoundError("Rule", rule_id)
            return Rule.from_model(row)

    async def get_by_key(self, rule_key: str) -> Optional[Rule]:
        """Latest version of a rule key."""
        async with self.session_maker() as db:
            row = await db.scalar(
                select(RuleModel)
                .where(RuleModel.rule_key == rule_key)
                .order_by(RuleModel.version.desc())
                .limit(1)
            )
            return Rule.from_model(row) if row else None

    async def list_rules(
        self,
        status: Optional[RuleStatus] = None,
        category: Optional[str] = None,
    ) -> list[Rule]:
        query = select(RuleModel)
        if status is not None:
            query = query.where(RuleModel.status == RuleStatus(status).value)
        if category is not None:
            query = query.where(RuleModel.category == category)
        async with self.session_maker() as db:
            rows = (await db.execute(query.order_by(RuleModel.id))).scalars().all()
            return [Rule.from_model(r) for r in rows]

    async def list_active(self) -> list[Rule]:
        """Active rules, highest effectiveness first, unscored last."""
        async with self.session_maker() as db:
            rows = (await db.execute(
                select(RuleModel)
                .where(RuleModel.status == RuleStatus.ACTIVE.value)
                .order_by(RuleModel.effectiveness_score.desc().nulls_last(), RuleModel.id)
            )).scalars().all()
            return [Rule.from_model(r) for r in rows]

    # -------------------------------------------------------------------------
    # Guarded writes
    # -------------------------------------------------------------------------

    async def update_scores(
        self,
        writer: Writer,
        rule_id: int,
        score: Optional[float],
        sample_count: int,
        low_threshold: float,
    ) -> Rule:
        """
        Record an evaluation pass: append an evaluation record, then update
        score, sample count and the consecutive-low counter.
        """
        if writer != Writer.EVALUATOR:
            raise InvariantViolation(
                f"{writer.value} may not write rule scores",
                {"rule_id": rule_id, "writer": writer.value},
            )

        now = utcnow()
        async with self.session_maker() as db:
            async with db.begin():
                await db.execute(insert(EvaluationRecordModel).values(
                    rule_id=rule_id, score=score, sample_count=sample_count, evaluated_at=now,
                ))
                history = (await db.execute(
                    select(EvaluationRecordModel.score)
                    .where(EvaluationRecordModel.rule_id == rule_id)
                    .order_by(EvaluationRecordModel.id)
                )).scalars().all()
                consecutive_low = count_trailing_low(list(history), low_threshold)

                row = await db.get(RuleModel, rule_id)
                if row is None:
                    raise NotFoundError("Rule", rule_id)
                changed = row.effectiveness_score != score or row.sample_count != sample_count
                row.effectiveness_score = score
                row.sample_count = sample_count
                row.consecutive_low_scores = consecutive_low
                row.last_evaluated_at = now
                row.updated_at = now
                if changed:
                    db.add(RuleChangeLogModel(
                        rule_id=rule_id,
                        action="score_update",
                        actor=writer.value,
                        score=score,
                        sample_count=sample_count,
                    ))
            return Rule.from_model(row)

    async def transition(
        self,
        writer: Writer,
        rule_id: int,
        to_status: RuleStatus,
        reason: str = "",
        actor: ReviewActor = ReviewActor.AUTOMATED,
    ) -> bool:
        """
        Move a rule to a new status.

        Returns False when the rule is already in ``to_status`` or a concurrent
        writer changed the status first. Raises InvalidTransitionError for a
        move the lifecycle does not allow.
        """
        if writer not in STATUS_WRITERS:
            raise InvariantViolation(
                f"{writer.value} may not change rule status",
                {"rule_id": rule_id, "writer": writer.value},
            )
        to_status = RuleStatus(to_status)
        current = await self.get_rule(rule_id)
        if current.status == to_status:
            return False
        if to_status not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransitionError(rule_id, current.status.value, to_status.value)

        now = utcnow()
        values: dict[str, Any] = {"status": to_status.value, "updated_at": now}
        if writer == Writer.AUTO_REVIEWER:
            values["last_reviewed_at"] = now
            values["last_review_actor"] = ReviewActor(actor).value

        async with self.session_maker() as db:
            async with db.begin():
                result = await db.execute(
                    update(RuleModel).execution_options(synchronize_session=False)
                    .where(RuleModel.id == rule_id, RuleModel.status == current.status.value)
                    .values(**values)
                )
                if result.rowcount != 1:
                    logger.debug("Rule %d transition lost a race (%s -> %s)",
                                 rule_id, current.status.value, to_status.value)
                    return False
                db.add(RuleChangeLogModel(
                    rule_id=rule_id,
                    action="transition",
                    from_status=current.status.value,
                    to_status=to_status.value,
                    actor=ReviewActor(actor).value if writer == Writer.AUTO_REVIEWER else writer.value,
                    reason=reason,
                    score=current.effectiveness_score,
                    sample_count=current.sample_count,
                ))

        logger.info(
            "Rule %s v%d: %s -> %s (score=%s, samples=%d) %s",
            current.rule_key, current.version, current.status.value, to_status.value,
            current.effectiveness_score, current.sample_count, reason,
        )
        return True

    async def mark_reviewed(
        self,
        writer: Writer,
        rule_id: int,
        reason: str = "",
        actor: ReviewActor = ReviewActor.AUTOMATED,
    ) -> None:
        """Record a review that left the rule pending."""
        if writer != Writer.AUTO_REVIEWER:
            raise InvariantViolation(
                f"{writer.value} may not record reviews",
                {"rule_id": rule_id, "writer": writer.value},
            )
        now = utcnow()
        async with self.session_maker() as db:
            async with db.begin():
                result = await db.execute(
                    update(RuleModel).execution_options(synchronize_session=False)
                    .where(RuleModel.id == rule_id)
                    .values(last_reviewed_at=now, last_review_actor=ReviewActor(actor).value)
                )
                if result.rowcount != 1:
                    raise NotFoundError("Rule", rule_id)
                db.add(RuleChangeLogModel(
                    rule_id=rule_id,
                    action="review_deferred",
                    actor=ReviewActor(actor).value,
                    reason=reason,
                ))

    # -------------------------------------------------------------------------
    # History and stats
    # -------------------------------------------------------------------------

    async def evaluation_history(self, rule_id: int) -> list[dict]:
        """Evaluation records for a rule, oldest first."""
        async with self.session_maker() as db:
            rows = (await db.execute(
                select(EvaluationRecordModel)
                .where(EvaluationRecordModel.rule_id == rule_id)
                .order_by(EvaluationRecordModel.id)
            )).scalars().all()
            return [
                {"score": r.score, "sample_count": r.sample_count, "evaluated_at": r.evaluated_at.isoformat()}
                for r in rows
            ]

    async def change_log(self, rule_id: int) -> list[dict]:
        async with self.session_maker() as db:
            rows = (await db.execute(
                select(RuleChangeLogModel)
                .where(RuleChangeLogModel.rule_id == rule_id)
                .order_by(RuleChangeLogModel.id)
            )).scalars().all()
            return [
                {
                    "action": r.action,
                    "from_status": r.from_status,
                    "to_status": r.to_status,
                    "actor": r.actor,
                    "reason": r.reason,
                    "score": r.score,
                    "sample_count": r.sample_count,
                    "created_at": r.created_at.isoformat() if r.created_at else None,
                }
                for r in rows
            ]

    async def get_stats(self) -> dict:
        """Totals by status and the average score of scored rules."""
        async with self.session_maker() as db:
            by_status = dict((await db.execute(
                select(RuleModel.status, func.count()).group_by(RuleModel.status)
            )).all())
            avg_score = await db.scalar(
                select(func.avg(RuleModel.effectiveness_score))
                .where(RuleModel.effectiveness_score.is_not(None))
            )
        return {
            "total": sum(by_status.values()),
            "by_status": {s.value: by_status.get(s.value, 0) for s in RuleStatus},
            "average_score": round(avg_score, 4) if avg_score is not None else None,
        }
