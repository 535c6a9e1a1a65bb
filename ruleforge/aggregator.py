"""
Knowledge Aggregator
====================

Daily metric roll-ups and incremental knowledge clustering.

Clustering works per cluster type. Every candidate analysis is mapped to a
tag signature and assigned to the most similar existing cluster (Jaccard
similarity at or above the threshold, ties to the lower cluster id);
otherwise it seeds a new cluster whose signature is fixed to its own tags.
A final reassignment pass over all clusters makes the assignment a fixed
point: refreshing again with no new analyses changes neither clusters nor
memberships. Clusters left without members are deactivated, never deleted.
"""

import hashlib
import logging
import re
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import select, delete, update, func, insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ruleforge.analyzer import latest_revision_ids
from ruleforge.config import EngineConfig
from ruleforge.db.models import (
    ConversationAnalysisModel,
    SessionModel,
    RuleModel,
    RuleChangeLogModel,
    KnowledgeClusterModel,
    ClusterMembershipModel,
    DailyMetricModel,
    utcnow,
)
from ruleforge.outcome_store import Outcome
from ruleforge.rule_registry import RuleRegistry, RuleSource, RuleStatus

logger = logging.getLogger(__name__)

HIGH_COMPLETION = 80.0
TOP_TAGS = 5


class ClusterType(Enum):
    INDUSTRY_PATTERN = "industry_pattern"
    VIOLATION_PATTERN = "violation_pattern"
    SUCCESS_FACTOR = "success_factor"


def jaccard(a: frozenset, b: frozenset) -> float:
    if not a and not b:
        return 1.0
    union = a | b
    return len(a & b) / len(union)


def cluster_key(signature: frozenset) -> str:
    """Canonical key of a signature."""
    return "|".join(sorted(signature))


@dataclass
class Candidate:
    analysis_id: int
    signature: frozenset
    violation_tags: list[str]
    industry: str
    outcome: str
    completion: float
    professionalism: float
    appeal_success_estimate: float


@dataclass
class _Cluster:
    key: str
    signature: frozenset
    id: Optional[int] = None
    members: list[tuple[int, float]] = field(default_factory=list)


@dataclass
class ClusterRefreshSummary:
    clusters_created: int = 0
    active_clusters: int = 0
    inactive_clusters: int = 0
    memberships: int = 0
    unclustered: int = 0

    def to_dict(self) -> dict:
        return {
            "clusters_created": self.clusters_created,
            "active_clusters": self.active_clusters,
            "inactive_clusters": self.inactive_clusters,
            "memberships": self.memberships,
            "unclustered": self.unclustered,
        }


def signature_for(cluster_type: ClusterType, candidate: Candidate, derived_tags: list[str]) -> frozenset:
    """Tag signature of an analysis for a cluster type. Empty means not a candidate."""
    if cluster_type == ClusterType.INDUSTRY_PATTERN:
        return frozenset({f"industry:{candidate.industry.lower()}"}) if candidate.industry else frozenset()
    if cluster_type == ClusterType.VIOLATION_PATTERN:
        return frozenset(candidate.violation_tags)
    if candidate.outcome != Outcome.SUCCESS.value:
        return frozenset()
    return frozenset(derived_tags)


def assign(candidates: list[Candidate], existing: list[_Cluster], threshold: float) -> tuple[list[_Cluster], int]:
    """
    Assign candidates to clusters, seeding new clusters as needed.

    ``existing`` must be ordered by id. Returns all clusters (existing first,
    then new ones in creation order) with members filled in, and the number
    of new clusters.
    """
    clusters = list(existing)

    def best_match(signature: frozenset) -> tuple[Optional[_Cluster], float]:
        best, best_sim = None, -1.0
        for cluster in clusters:
            sim = jaccard(signature, cluster.signature)
            # Strict comparison keeps the earlier (lower id) cluster on ties
            if sim >= threshold and sim > best_sim:
                best, best_sim = cluster, sim
        return best, best_sim

    created = 0
    for candidate in candidates:
        match, _ = best_match(candidate.signature)
        if match is None:
            clusters.append(_Cluster(key=cluster_key(candidate.signature), signature=candidate.signature))
            created += 1

    # Reassignment over the final cluster set
    for cluster in clusters:
        cluster.members = []
    for candidate in candidates:
        match, sim = best_match(candidate.signature)
        if match is not None:
            match.members.append((candidate.analysis_id, round(sim, 6)))
    return clusters, created


class KnowledgeAggregator:
    """Daily metrics, knowledge clusters and cluster-derived rule proposals."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        registry: Optional[RuleRegistry] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.session_maker = session_maker
        self.registry = registry
        self.config = config or EngineConfig()

    # -------------------------------------------------------------------------
    # Daily metrics
    # -------------------------------------------------------------------------

    async def aggregate_daily(self, day: Optional[date] = None) -> dict:
        """
        Recompute and upsert the daily metric row for ``day`` (UTC, default today).

        Running it twice for the same day yields identical values.
        """
        day = day or utcnow().date()
        start = datetime(day.year, day.month, day.day)
        end = start + timedelta(days=1)

        async with self.session_maker() as db:
            request_count = await db.scalar(
                select(func.count()).select_from(SessionModel)
                .where(SessionModel.created_at >= start, SessionModel.created_at < end)
            )
            analyses = (await db.execute(
                select(
                    ConversationAnalysisModel.completion,
                    ConversationAnalysisModel.professionalism,
                    ConversationAnalysisModel.appeal_success_estimate,
                    ConversationAnalysisModel.violation_tags,
                )
                .where(ConversationAnalysisModel.created_at >= start, ConversationAnalysisModel.created_at < end)
            )).all()
            rules_created = await db.scalar(
                select(func.count()).select_from(RuleModel)
                .where(RuleModel.created_at >= start, RuleModel.created_at < end)
            )
            rules_activated = await db.scalar(
                select(func.count()).select_from(RuleChangeLogModel)
                .where(
                    RuleChangeLogModel.action == "transition",
                    RuleChangeLogModel.to_status == RuleStatus.ACTIVE.value,
                    RuleChangeLogModel.created_at >= start,
                    RuleChangeLogModel.created_at < end,
                )
            )

        n = len(analyses)
        tag_counts = Counter(tag for *_, tags in analyses for tag in (tags or []))
        top_tags = sorted(tag_counts.items(), key=lambda item: (-item[1], item[0]))[:TOP_TAGS]
        values = {
            "request_count": request_count or 0,
            "analysis_count": n,
            "avg_completion": round(sum(a[0] for a in analyses) / n, 4) if n else 0.0,
            "avg_professionalism": round(sum(a[1] for a in analyses) / n, 4) if n else 0.0,
            "avg_appeal_success": round(sum(a[2] for a in analyses) / n, 6) if n else 0.0,
            "high_completion_count": sum(1 for a in analyses if a[0] >= HIGH_COMPLETION),
            "rules_created": rules_created or 0,
            "rules_activated": rules_activated or 0,
            "top_violation_tags": [{"tag": tag, "count": count} for tag, count in top_tags],
        }

        stmt = sqlite_insert(DailyMetricModel).values(metric_date=day, computed_at=utcnow(), **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[DailyMetricModel.metric_date],
            set_={**values, "computed_at": stmt.excluded.computed_at},
        )
        async with self.session_maker() as db:
            async with db.begin():
                await db.execute(stmt)

        logger.info("Daily metrics for %s: %d requests, %d analyses", day.isoformat(), values["request_count"], n)
        return {"metric_date": day.isoformat(), **values}

    async def get_daily_metrics(self, days: int = 30) -> list[dict]:
        """Most recent daily rows, newest first."""
        async with self.session_maker() as db:
            rows = (await db.execute(
                select(DailyMetricModel).order_by(DailyMetricModel.metric_date.desc()).limit(days)
            )).scalars().all()
            return [
                {
                    "metric_date": r.metric_date.isoformat(),
                    "request_count": r.request_count,
                    "analysis_count": r.analysis_count,
                    "avg_completion": r.avg_completion,
                    "avg_professionalism": r.avg_professionalism,
                    "avg_appeal_success": r.avg_appeal_success,
                    "high_completion_count": r.high_completion_count,
                    "rules_created": r.rules_created,
                    "rules_activated": r.rules_activated,
                    "top_violation_tags": list(r.top_violation_tags or []),
                }
                for r in rows
            ]

    # -------------------------------------------------------------------------
    # Clustering
    # -------------------------------------------------------------------------

    async def _load_candidates(self) -> list[tuple[Candidate, list[str]]]:
        async with self.session_maker() as db:
            rows = (await db.execute(
                select(ConversationAnalysisModel, SessionModel.outcome)
                .join(SessionModel, SessionModel.id == ConversationAnalysisModel.session_id)
                .where(ConversationAnalysisModel.id.in_(latest_revision_ids()))
                .order_by(ConversationAnalysisModel.id)
            )).all()
        return [
            (
                Candidate(
                    analysis_id=a.id,
                    signature=frozenset(),
                    violation_tags=list(a.violation_tags or []),
                    industry=a.industry or "",
                    outcome=outcome,
                    completion=a.completion,
                    professionalism=a.professionalism,
                    appeal_success_estimate=a.appeal_success_estimate,
                ),
                list(a.derived_tags or []),
            )
            for a, outcome in rows
        ]

    async def refresh_clusters(self) -> ClusterRefreshSummary:
        """Refresh clusters and memberships for every cluster type."""
        summary = ClusterRefreshSummary()
        loaded = await self._load_candidates()

        for cluster_type in ClusterType:
            candidates = []
            for base, derived in loaded:
                signature = signature_for(cluster_type, base, derived)
                if signature:
                    candidates.append(replace(base, signature=signature))
            summary.unclustered += len(loaded) - len(candidates)
            await self._refresh_type(cluster_type, candidates, summary)

        logger.info(
            "Cluster refresh: %d created, %d active, %d inactive, %d memberships",
            summary.clusters_created, summary.active_clusters, summary.inactive_clusters, summary.memberships,
        )
        return summary

    async def _refresh_type(
        self,
        cluster_type: ClusterType,
        candidates: list[Candidate],
        summary: ClusterRefreshSummary,
    ) -> None:
        async with self.session_maker() as db:
            rows = (await db.execute(
                select(KnowledgeClusterModel)
                .where(KnowledgeClusterModel.cluster_type == cluster_type.value)
                .order_by(KnowledgeClusterModel.id)
            )).scalars().all()
        existing = [_Cluster(key=r.cluster_key, signature=frozenset(r.signature or []), id=r.id) for r in rows]

        clusters, created = assign(candidates, existing, self.config.cluster_similarity_threshold)
        by_id = {c.analysis_id: c for c in candidates}
        now = utcnow()

        async with self.session_maker() as db:
            async with db.begin():
                # Membership rows are replaced wholesale for this type
                type_cluster_ids = select(KnowledgeClusterModel.id).where(
                    KnowledgeClusterModel.cluster_type == cluster_type.value
                )
                await db.execute(
                    delete(ClusterMembershipModel).where(ClusterMembershipModel.cluster_id.in_(type_cluster_ids))
                )
                for cluster in clusters:
                    if cluster.id is None:
                        await db.execute(
                            sqlite_insert(KnowledgeClusterModel)
                            .values(
                                cluster_type=cluster_type.value,
                                cluster_key=cluster.key,
                                signature=sorted(cluster.signature),
                                member_count=0,
                                is_active=True,
                                created_at=now,
                            )
                            .on_conflict_do_nothing(index_elements=["cluster_type", "cluster_key"])
                        )
                        cluster.id = await db.scalar(
                            select(KnowledgeClusterModel.id).where(
                                KnowledgeClusterModel.cluster_type == cluster_type.value,
                                KnowledgeClusterModel.cluster_key == cluster.key,
                            )
                        )

                    members = [by_id[analysis_id] for analysis_id, _ in cluster.members]
                    if cluster.members:
                        await db.execute(insert(ClusterMembershipModel), [
                            {"cluster_id": cluster.id, "analysis_id": analysis_id, "similarity": sim}
                            for analysis_id, sim in cluster.members
                        ])
                    await db.execute(
                        update(KnowledgeClusterModel)
                        .execution_options(synchronize_session=False)
                        .where(KnowledgeClusterModel.id == cluster.id)
                        .values(
                            member_count=len(members),
                            is_active=bool(members),
                            summary=self._summarize(cluster, members),
                            insight_data=self._insights(members),
                            last_refreshed_at=now,
                        )
                    )
                    summary.memberships += len(members)
                    if members:
                        summary.active_clusters += 1
                    else:
                        summary.inactive_clusters += 1

        summary.clusters_created += created

    @staticmethod
    def _summarize(cluster: _Cluster, members: list[Candidate]) -> str:
        if not members:
            return f"{cluster.key}: no current members"
        avg_completion = sum(m.completion for m in members) / len(members)
        return f"{cluster.key}: {len(members)} analyses, avg completion {avg_completion:.0f}"

    @staticmethod
    def _insights(members: list[Candidate]) -> dict:
        if not members:
            return {}
        n = len(members)
        decided = [m for m in members if m.outcome in (Outcome.SUCCESS.value, Outcome.FAIL.value)]
        successes = sum(1 for m in decided if m.outcome == Outcome.SUCCESS.value)
        tag_counts = Counter(tag for m in members for tag in m.violation_tags)
        industries = Counter(m.industry for m in members if m.industry)
        return {
            "avg_completion": round(sum(m.completion for m in members) / n, 2),
            "avg_professionalism": round(sum(m.professionalism for m in members) / n, 2),
            "avg_appeal_success": round(sum(m.appeal_success_estimate for m in members) / n, 4),
            "success_rate": round(successes / len(decided), 4) if decided else None,
            "top_violation_tags": [
                {"tag": t, "count": c} for t, c in sorted(tag_counts.items(), key=lambda i: (-i[1], i[0]))[:TOP_TAGS]
            ],
            "top_industries": [
                {"industry": i, "count": c} for i, c in sorted(industries.items(), key=lambda i: (-i[1], i[0]))[:TOP_TAGS]
            ],
        }

    async def get_clusters(self, cluster_type: Optional[ClusterType] = None, active_only: bool = False) -> list[dict]:
        query = select(KnowledgeClusterModel)
        if cluster_type is not None:
            query = query.where(KnowledgeClusterModel.cluster_type == ClusterType(cluster_type).value)
        if active_only:
            query = query.where(KnowledgeClusterModel.is_active.is_(True))
        async with self.session_maker() as db:
            rows = (await db.execute(query.order_by(KnowledgeClusterModel.id))).scalars().all()
            return [
                {
                    "id": r.id,
                    "cluster_type": r.cluster_type,
                    "cluster_key": r.cluster_key,
                    "signature": list(r.signature or []),
                    "summary": r.summary,
                    "insight_data": dict(r.insight_data or {}),
                    "member_count": r.member_count,
                    "is_active": r.is_active,
                }
                for r in rows
            ]

    async def get_memberships(self) -> list[tuple[int, int]]:
        """All (cluster_id, analysis_id) pairs, sorted."""
        async with self.session_maker() as db:
            rows = (await db.execute(
                select(ClusterMembershipModel.cluster_id, ClusterMembershipModel.analysis_id)
                .order_by(ClusterMembershipModel.cluster_id, ClusterMembershipModel.analysis_id)
            )).all()
            return [(c, a) for c, a in rows]

    async def get_cluster_stats(self) -> dict:
        async with self.session_maker() as db:
            rows = (await db.execute(
                select(
                    KnowledgeClusterModel.cluster_type,
                    KnowledgeClusterModel.is_active,
                    func.count(),
                    func.sum(KnowledgeClusterModel.member_count),
                ).group_by(KnowledgeClusterModel.cluster_type, KnowledgeClusterModel.is_active)
            )).all()
        stats = {t.value: {"active": 0, "inactive": 0, "members": 0} for t in ClusterType}
        for cluster_type, is_active, count, members in rows:
            entry = stats.setdefault(cluster_type, {"active": 0, "inactive": 0, "members": 0})
            entry["active" if is_active else "inactive"] += count
            entry["members"] += members or 0
        return stats

    # -------------------------------------------------------------------------
    # Rule proposals
    # -------------------------------------------------------------------------

    async def propose_rules_from_clusters(self) -> int:
        """
        Propose a pending rule for every active violation-pattern cluster with
        at least cluster_rule_min_members members. The rule category is the
        cluster's most frequent violation tag. Returns the number of new rules.
        """
        if self.registry is None:
            return 0
        clusters = await self.get_clusters(ClusterType.VIOLATION_PATTERN, active_only=True)
        created = 0
        for cluster in clusters:
            if cluster["member_count"] < self.config.cluster_rule_min_members:
                continue
            top = cluster["insight_data"].get("top_violation_tags") or []
            if not top:
                continue
            dominant = top[0]["tag"]
            rule_key = f"cluster_{_slug(dominant)}"
            _, was_created = await self.registry.create_rule(
                rule_key,
                dominant,
                name=f"Recurring pattern: {dominant}",
                content={
                    "description": f"Address the recurring '{dominant}' pattern seen in "
                                   f"{cluster['member_count']} conversations",
                    "cluster_id": cluster["id"],
                    "cluster_key": cluster["cluster_key"],
                    "insights": cluster["insight_data"],
                },
                source=RuleSource.DERIVED_FROM_CLUSTER,
            )
            created += int(was_created)
        if created:
            logger.info("Proposed %d rules from knowledge clusters", created)
        return created


def _slug(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")
    return slug or hashlib.sha1(text.encode("utf-8")).hexdigest()[:12]
