"""
Conversation Analyzer
=====================

Turns raw sessions into Conversation Analyses.

Each session is analyzed at most once. Workers claim sessions with a
compare-and-set on the claim columns; only the worker holding the claim token
may write the analysis, and the analysis insert and the ``analyzed_at`` mark
happen in the same transaction. Capability calls are made outside any
database transaction and bounded by a timeout. A failed call releases the
claim so the session is picked up again on a later pass, until the attempt
limit marks it permanently unanalyzable.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, func, or_, and_, case, insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from ruleforge.capabilities import ScoreResult, ScoringCapability, derive_tags, field_value
from ruleforge.config import EngineConfig
from ruleforge.db.models import SessionModel, MessageModel, ConversationAnalysisModel, utcnow
from ruleforge.errors import (
    CapabilityError,
    CapabilityTimeout,
    InvalidCapabilityResponse,
    InvariantViolation,
    MalformedSessionError,
    NotFoundError,
)
from ruleforge.outcome_store import SessionRecord
from ruleforge.rule_registry import RuleRegistry, RuleSource

logger = logging.getLogger(__name__)


@dataclass
class ConversationAnalysis:
    """Read-side view of an analysis row."""
    id: int
    session_id: str
    completion: float
    professionalism: float
    appeal_success_estimate: float
    violation_tags: list[str] = field(default_factory=list)
    derived_tags: list[str] = field(default_factory=list)
    industry: str = ""
    problem_type: str = ""
    rationale: str = ""
    revision: int = 1
    supersedes_id: Optional[int] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "revision": self.revision,
            "completion": self.completion,
            "professionalism": self.professionalism,
            "appeal_success_estimate": self.appeal_success_estimate,
            "violation_tags": list(self.violation_tags),
            "derived_tags": list(self.derived_tags),
            "industry": self.industry,
            "problem_type": self.problem_type,
            "rationale": self.rationale,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    @classmethod
    def from_model(cls, row: ConversationAnalysisModel) -> "ConversationAnalysis":
        return cls(
            id=row.id,
            session_id=row.session_id,
            completion=row.completion,
            professionalism=row.professionalism,
            appeal_success_estimate=row.appeal_success_estimate,
            violation_tags=list(row.violation_tags or []),
            derived_tags=list(row.derived_tags or []),
            industry=row.industry or "",
            problem_type=row.problem_type or "",
            rationale=row.rationale or "",
            revision=row.revision,
            supersedes_id=row.supersedes_id,
            created_at=row.created_at,
        )


def latest_revision_ids():
    """Subquery selecting the id of the newest analysis revision per session."""
    newest = (
        select(
            ConversationAnalysisModel.session_id,
            func.max(ConversationAnalysisModel.revision).label("revision"),
        )
        .group_by(ConversationAnalysisModel.session_id)
        .subquery()
    )
    return (
        select(ConversationAnalysisModel.id)
        .join(newest, and_(
            ConversationAnalysisModel.session_id == newest.c.session_id,
            ConversationAnalysisModel.revision == newest.c.revision,
        ))
    )


@dataclass
class AnalysisOutcome:
    """Result of analyzing one claimed session."""
    session_id: str
    succeeded: bool
    terminal: bool = False
    analysis_id: Optional[int] = None
    error: Optional[str] = None
    proposals_registered: int = 0

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "succeeded": self.succeeded,
            "terminal": self.terminal,
            "analysis_id": self.analysis_id,
            "error": self.error,
            "proposals_registered": self.proposals_registered,
        }


@dataclass
class BatchResult:
    """Counts for one analyze_batch call. attempted == succeeded + failed."""
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    terminal: int = 0

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "terminal": self.terminal,
        }


class Analyzer:
    """Claims unanalyzed sessions and scores them through the scoring capability."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        scorer: ScoringCapability,
        config: Optional[EngineConfig] = None,
        registry: Optional[RuleRegistry] = None,
    ):
        self.session_maker = session_maker
        self.scorer = scorer
        self.config = config or EngineConfig()
        self.registry = registry

    # -------------------------------------------------------------------------
    # Claiming
    # -------------------------------------------------------------------------

    def _claimable(self, now: datetime):
        stale_before = now - timedelta(seconds=self.config.claim_ttl_seconds)
        return and_(
            SessionModel.analyzed_at.is_(None),
            SessionModel.unanalyzable_at.is_(None),
            or_(SessionModel.claim_token.is_(None), SessionModel.claimed_at < stale_before),
        )

    async def claim_unanalyzed(self, limit: int) -> list[SessionRecord]:
        """
        Claim up to ``limit`` sessions for analysis.

        Only sessions whose claim update affected exactly one row are returned;
        a session claimed concurrently by another worker is simply skipped.
        """
        if limit <= 0:
            return []
        now = utcnow()
        message_count = (
            select(func.count(MessageModel.id))
            .where(MessageModel.session_id == SessionModel.id)
            .scalar_subquery()
        )

        async with self.session_maker() as db:
            candidates = (await db.execute(
                select(SessionModel.id)
                .where(self._claimable(now), message_count >= self.config.min_messages)
                .order_by(SessionModel.created_at, SessionModel.id)
                .limit(limit)
            )).scalars().all()

        if not candidates:
            return []

        claimed: dict[str, str] = {}
        async with self.session_maker() as db:
            async with db.begin():
                for session_id in candidates:
                    token = str(uuid.uuid4())
                    result = await db.execute(
                        update(SessionModel).execution_options(synchronize_session=False)
                        .where(SessionModel.id == session_id, self._claimable(now))
                        .values(claim_token=token, claimed_at=now)
                    )
                    if result.rowcount == 1:
                        claimed[session_id] = token

        if not claimed:
            return []

        async with self.session_maker() as db:
            rows = (await db.execute(
                select(SessionModel)
                .options(selectinload(SessionModel.messages))
                .where(SessionModel.id.in_(list(claimed)))
                .order_by(SessionModel.created_at, SessionModel.id)
            )).scalars().all()
            records = [SessionRecord.from_model(r) for r in rows]

        # Keep only sessions still held by our token
        records = [r for r in records if r.claim_token == claimed[r.session_id]]
        logger.debug("Claimed %d of %d candidate sessions", len(records), len(candidates))
        return records

    async def release_claim(self, session_id: str, claim_token: str) -> bool:
        """Give a claim back without counting an attempt."""
        async with self.session_maker() as db:
            async with db.begin():
                result = await db.execute(
                    update(SessionModel).execution_options(synchronize_session=False)
                    .where(SessionModel.id == session_id, SessionModel.claim_token == claim_token)
                    .values(claim_token=None, claimed_at=None)
                )
                return result.rowcount == 1

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    async def _call_scorer(self, session: SessionRecord) -> ScoreResult:
        timeout = self.config.capability_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.scorer.score(session.transcript(), dict(session.collected_fields)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise CapabilityTimeout(timeout, {"session_id": session.session_id}) from e
        except (MalformedSessionError, CapabilityError):
            raise
        except Exception as e:
            # Anything else the scorer raises is an untrusted failure of this one item
            raise CapabilityError(f"Scoring failed: {e}", {"session_id": session.session_id}) from e

        if not isinstance(result, ScoreResult):
            raise InvalidCapabilityResponse(f"Scorer returned {type(result).__name__}, expected ScoreResult")
        return result.validate()

    async def analyze(self, session: SessionRecord) -> AnalysisOutcome:
        """
        Analyze a session claimed by this worker.

        The session must carry the claim token returned by claim_unanalyzed.
        """
        if not session.claim_token:
            raise NotFoundError("Claim", session.session_id)

        try:
            if not session.messages or not session.user_messages:
                raise MalformedSessionError(session.session_id, "transcript has no user message")
            result = await self._call_scorer(session)
        except MalformedSessionError as e:
            await self._mark_unanalyzable(session, str(e))
            return AnalysisOutcome(session.session_id, succeeded=False, terminal=True, error=str(e))
        except CapabilityError as e:
            terminal = await self._record_failure(session, e)
            return AnalysisOutcome(session.session_id, succeeded=False, terminal=terminal, error=str(e))

        analysis_id = await self._store_analysis(session, result)
        if analysis_id is None:
            # Claim expired and was taken by another worker
            return AnalysisOutcome(session.session_id, succeeded=False, error="claim lost")

        registered = await self._register_proposals(session.session_id, result)
        return AnalysisOutcome(
            session.session_id, succeeded=True, analysis_id=analysis_id, proposals_registered=registered,
        )

    async def _store_analysis(self, session: SessionRecord, result: ScoreResult) -> Optional[int]:
        now = utcnow()
        fields = session.collected_fields
        async with self.session_maker() as db:
            async with db.begin():
                marked = await db.execute(
                    update(SessionModel).execution_options(synchronize_session=False)
                    .where(
                        SessionModel.id == session.session_id,
                        SessionModel.claim_token == session.claim_token,
                        SessionModel.analyzed_at.is_(None),
                    )
                    .values(analyzed_at=now, claim_token=None, claimed_at=None, last_analysis_error=None)
                )
                if marked.rowcount != 1:
                    logger.warning("Session %s: claim lost before the analysis was stored", session.session_id)
                    return None

                revision = await db.scalar(
                    select(func.coalesce(func.max(ConversationAnalysisModel.revision), 0))
                    .where(ConversationAnalysisModel.session_id == session.session_id)
                )
                inserted = await db.execute(
                    insert(ConversationAnalysisModel).values(
                        **self._analysis_values(session.session_id, fields, result),
                        revision=revision + 1,
                        created_at=now,
                    )
                )
                analysis_id = inserted.inserted_primary_key[0]

        logger.debug("Session %s analyzed (analysis %d)", session.session_id, analysis_id)
        return analysis_id

    @staticmethod
    def _analysis_values(session_id: str, fields: dict, result: ScoreResult) -> dict:
        return {
            "session_id": session_id,
            "completion": result.completion,
            "professionalism": result.professionalism,
            "appeal_success_estimate": result.appeal_success_estimate,
            "violation_tags": list(result.violation_tags),
            "derived_tags": derive_tags(result.violation_tags, fields),
            "industry": field_value(fields, "industry"),
            "problem_type": field_value(fields, "problem_type"),
            "rationale": result.rationale,
        }

    async def _record_failure(self, session: SessionRecord, error: Exception) -> bool:
        """Release the claim and count the attempt. Returns True if now terminal."""
        now = utcnow()
        attempts = SessionModel.analysis_attempts + 1
        async with self.session_maker() as db:
            async with db.begin():
                await db.execute(
                    update(SessionModel).execution_options(synchronize_session=False)
                    .where(SessionModel.id == session.session_id, SessionModel.claim_token == session.claim_token)
                    .values(
                        claim_token=None,
                        claimed_at=None,
                        analysis_attempts=attempts,
                        last_analysis_error=str(error)[:2000],
                        unanalyzable_at=case(
                            (attempts >= self.config.max_analysis_attempts, now),
                            else_=None,
                        ),
                    )
                )
                row = await db.get(SessionModel, session.session_id)
                terminal = row is not None and row.unanalyzable_at is not None

        if terminal:
            logger.warning("Session %s marked unanalyzable after %d attempts: %s",
                           session.session_id, self.config.max_analysis_attempts, error)
        else:
            logger.info("Session %s analysis failed, will retry: %s", session.session_id, error)
        return terminal

    async def _mark_unanalyzable(self, session: SessionRecord, reason: str) -> None:
        async with self.session_maker() as db:
            async with db.begin():
                await db.execute(
                    update(SessionModel).execution_options(synchronize_session=False)
                    .where(SessionModel.id == session.session_id, SessionModel.claim_token == session.claim_token)
                    .values(
                        claim_token=None,
                        claimed_at=None,
                        analysis_attempts=SessionModel.analysis_attempts + 1,
                        last_analysis_error=reason,
                        unanalyzable_at=utcnow(),
                    )
                )
        logger.warning("Session %s is unanalyzable: %s", session.session_id, reason)

    async def _register_proposals(self, session_id: str, result: ScoreResult) -> int:
        if self.registry is None or not result.rule_proposals:
            return 0
        registered = 0
        for proposal in result.rule_proposals:
            content = dict(proposal.content)
            content.setdefault("source_session", session_id)
            _, created = await self.registry.create_rule(
                proposal.rule_key,
                proposal.category,
                name=proposal.name,
                content=content,
                source=RuleSource.ANALYSIS_PROPOSAL,
            )
            registered += int(created)
        return registered

    async def analyze_batch(
        self,
        limit: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchResult:
        """
        Claim up to ``limit`` sessions and analyze them with bounded parallelism.

        Partial failures never roll back successes. After ``cancel_event`` is
        set no new session is launched; claims that were never launched are
        released and counted as skipped.
        """
        if limit is None:
            limit = self.config.scheduler.analysis_batch_size
        claimed = await self.claim_unanalyzed(limit)
        result = BatchResult()
        semaphore = asyncio.Semaphore(self.config.analysis_concurrency)

        async def worker(session: SessionRecord) -> None:
            async with semaphore:
                if cancel_event is not None and cancel_event.is_set():
                    await self.release_claim(session.session_id, session.claim_token)
                    result.skipped += 1
                    return
                result.attempted += 1
                try:
                    outcome = await self.analyze(session)
                except InvariantViolation:
                    await self.release_claim(session.session_id, session.claim_token)
                    result.failed += 1
                    raise
                except Exception:
                    logger.exception("Session %s: analysis aborted", session.session_id)
                    await self.release_claim(session.session_id, session.claim_token)
                    result.failed += 1
                    return
                if outcome.succeeded:
                    result.succeeded += 1
                else:
                    result.failed += 1
                    if outcome.terminal:
                        result.terminal += 1

        await asyncio.gather(*(worker(s) for s in claimed))
        logger.info(
            "Analysis batch: %d attempted, %d succeeded, %d failed (%d terminal), %d skipped",
            result.attempted, result.succeeded, result.failed, result.terminal, result.skipped,
        )
        return result

    async def reanalyze(self, session_id: str) -> AnalysisOutcome:
        """
        Write a superseding analysis revision for an analyzed session.

        Earlier revisions stay in place. Capability errors are raised to the caller.
        """
        async with self.session_maker() as db:
            row = await db.scalar(
                select(SessionModel)
                .options(selectinload(SessionModel.messages))
                .where(SessionModel.id == session_id)
            )
            if row is None:
                raise NotFoundError("Session", session_id)
            session = SessionRecord.from_model(row)
        if session.analyzed_at is None:
            raise NotFoundError("Analysis", session_id)

        result = await self._call_scorer(session)

        async with self.session_maker() as db:
            try:
                async with db.begin():
                    previous = await db.scalar(
                        select(ConversationAnalysisModel)
                        .where(ConversationAnalysisModel.session_id == session_id)
                        .order_by(ConversationAnalysisModel.revision.desc())
                        .limit(1)
                    )
                    inserted = await db.execute(
                        insert(ConversationAnalysisModel).values(
                            **self._analysis_values(session_id, session.collected_fields, result),
                            revision=(previous.revision if previous else 0) + 1,
                            supersedes_id=previous.id if previous else None,
                            created_at=utcnow(),
                        )
                    )
            except IntegrityError as e:
                raise CapabilityError(f"Concurrent re-analysis of session {session_id}") from e

        analysis_id = inserted.inserted_primary_key[0]
        logger.info("Session %s re-analyzed (analysis %d)", session_id, analysis_id)
        registered = await self._register_proposals(session_id, result)
        return AnalysisOutcome(session_id, succeeded=True, analysis_id=analysis_id, proposals_registered=registered)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_analyses(self, session_id: str) -> list[ConversationAnalysis]:
        """All revisions for a session, oldest first."""
        async with self.session_maker() as db:
            rows = (await db.execute(
                select(ConversationAnalysisModel)
                .where(ConversationAnalysisModel.session_id == session_id)
                .order_by(ConversationAnalysisModel.revision)
            )).scalars().all()
            return [ConversationAnalysis.from_model(r) for r in rows]

    async def get_stats(self) -> dict:
        """Averages over the newest revision of every analysis, plus failure counts."""
        latest = latest_revision_ids()
        async with self.session_maker() as db:
            totals = (await db.execute(
                select(
                    func.count(ConversationAnalysisModel.id),
                    func.avg(ConversationAnalysisModel.completion),
                    func.avg(ConversationAnalysisModel.professionalism),
                    func.avg(ConversationAnalysisModel.appeal_success_estimate),
                ).where(ConversationAnalysisModel.id.in_(latest))
            )).one()
            retrying = await db.scalar(
                select(func.count()).select_from(SessionModel).where(
                    SessionModel.analyzed_at.is_(None),
                    SessionModel.unanalyzable_at.is_(None),
                    SessionModel.analysis_attempts > 0,
                )
            )
            unanalyzable = await db.scalar(
                select(func.count()).select_from(SessionModel).where(SessionModel.unanalyzable_at.is_not(None))
            )

        count, avg_completion, avg_prof, avg_appeal = totals
        return {
            "analyzed": count or 0,
            "avg_completion": round(avg_completion or 0.0, 2),
            "avg_professionalism": round(avg_prof or 0.0, 2),
            "avg_appeal_success": round(avg_appeal or 0.0, 4),
            "awaiting_retry": retrying or 0,
            "unanalyzable": unanalyzable or 0,
        }
