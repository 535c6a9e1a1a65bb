"""
Database Models for RuleForge
=============================

SQLAlchemy models for sessions, analyses, rules, clusters and daily metrics.
"""

from datetime import datetime, date, timezone
from typing import Optional, List, Dict, Any

from sqlalchemy import (
    String, Integer, Float, DateTime, Date, ForeignKey, JSON, Text, Boolean,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


# =============================================================================
# Outcome store
# =============================================================================

class SessionModel(Base):
    """A conversation between a user and the assistant."""
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)

    # Current value of each collected field (history lives in field_changes)
    collected_fields: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    # success, fail, unknown
    outcome: Mapped[str] = mapped_column(String(16), default="unknown", index=True)
    outcome_recorded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Analysis claim state
    analyzed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    claim_token: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    analysis_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_analysis_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    unanalyzable_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    messages: Mapped[List["MessageModel"]] = relationship(
        back_populates="session", cascade="all, delete-orphan", order_by="MessageModel.seq"
    )


class MessageModel(Base):
    """One message of a session transcript."""
    __tablename__ = "messages"
    __table_args__ = (UniqueConstraint("session_id", "seq", name="uq_message_seq"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("sessions.id"), index=True)
    seq: Mapped[int] = mapped_column(Integer)
    role: Mapped[str] = mapped_column(String(16))  # user, assistant, system
    content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    session: Mapped["SessionModel"] = relationship(back_populates="messages")


class FieldChangeModel(Base):
    """Change history of a collected field."""
    __tablename__ = "field_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("sessions.id"), index=True)
    field_name: Mapped[str] = mapped_column(String(64))
    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class ConversationAnalysisModel(Base):
    """Scored snapshot of a session. Rows are never updated."""
    __tablename__ = "conversation_analyses"
    __table_args__ = (UniqueConstraint("session_id", "revision", name="uq_analysis_revision"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(ForeignKey("sessions.id"), index=True)
    revision: Mapped[int] = mapped_column(Integer, default=1)
    supersedes_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    completion: Mapped[float] = mapped_column(Float)            # 0-100
    professionalism: Mapped[float] = mapped_column(Float)       # 0-100
    appeal_success_estimate: Mapped[float] = mapped_column(Float)  # 0-1
    violation_tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    derived_tags: Mapped[List[str]] = mapped_column(JSON, default=list)
    industry: Mapped[str] = mapped_column(String(64), default="", index=True)
    problem_type: Mapped[str] = mapped_column(String(128), default="")
    rationale: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)


# =============================================================================
# Rule registry
# =============================================================================

class RuleModel(Base):
    """A named heuristic with a lifecycle status and an effectiveness score."""
    __tablename__ = "rules"
    __table_args__ = (
        UniqueConstraint("rule_key", "version", name="uq_rule_key_version"),
        Index("ix_rules_category_status", "category", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_key: Mapped[str] = mapped_column(String(128), index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    name: Mapped[str] = mapped_column(String(256), default="")
    category: Mapped[str] = mapped_column(String(128))
    content: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    source: Mapped[str] = mapped_column(String(32), default="manual")

    # Written only by the evaluator
    effectiveness_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    sample_count: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_low_scores: Mapped[int] = mapped_column(Integer, default=0)
    last_evaluated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    last_reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_review_actor: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # human, automated

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class EvaluationRecordModel(Base):
    """Append-only record of one evaluator pass over a rule."""
    __tablename__ = "evaluation_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(ForeignKey("rules.id"), index=True)
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    sample_count: Mapped[int] = mapped_column(Integer, default=0)
    evaluated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class RuleChangeLogModel(Base):
    """Audit trail of rule lifecycle events."""
    __tablename__ = "rule_change_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[int] = mapped_column(ForeignKey("rules.id"), index=True)
    action: Mapped[str] = mapped_column(String(32))  # created, transition, review_deferred
    from_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    to_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    actor: Mapped[str] = mapped_column(String(32), default="system")
    reason: Mapped[str] = mapped_column(Text, default="")
    score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    sample_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


# =============================================================================
# Knowledge aggregation
# =============================================================================

class KnowledgeClusterModel(Base):
    """A grouping of analyses sharing a recurring pattern."""
    __tablename__ = "knowledge_clusters"
    __table_args__ = (UniqueConstraint("cluster_type", "cluster_key", name="uq_cluster_type_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cluster_type: Mapped[str] = mapped_column(String(32), index=True)
    cluster_key: Mapped[str] = mapped_column(String(256))
    signature: Mapped[List[str]] = mapped_column(JSON, default=list)
    summary: Mapped[str] = mapped_column(Text, default="")
    insight_data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    member_count: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class ClusterMembershipModel(Base):
    """Assignment of an analysis to a cluster."""
    __tablename__ = "cluster_memberships"
    __table_args__ = (UniqueConstraint("cluster_id", "analysis_id", name="uq_cluster_member"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cluster_id: Mapped[int] = mapped_column(ForeignKey("knowledge_clusters.id"), index=True)
    analysis_id: Mapped[int] = mapped_column(ForeignKey("conversation_analyses.id"), index=True)
    similarity: Mapped[float] = mapped_column(Float, default=1.0)


class DailyMetricModel(Base):
    """Per-day roll-up of analysis metrics."""
    __tablename__ = "daily_metrics"

    metric_date: Mapped[date] = mapped_column(Date, primary_key=True)
    request_count: Mapped[int] = mapped_column(Integer, default=0)
    analysis_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_completion: Mapped[float] = mapped_column(Float, default=0.0)
    avg_professionalism: Mapped[float] = mapped_column(Float, default=0.0)
    avg_appeal_success: Mapped[float] = mapped_column(Float, default=0.0)
    high_completion_count: Mapped[int] = mapped_column(Integer, default=0)
    rules_created: Mapped[int] = mapped_column(Integer, default=0)
    rules_activated: Mapped[int] = mapped_column(Integer, default=0)
    top_violation_tags: Mapped[List[Dict[str, Any]]] = mapped_column(JSON, default=list)
    computed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


# =============================================================================
# Engine health
# =============================================================================

class EngineHealthModel(Base):
    """Circuit breaker state for one engine component."""
    __tablename__ = "engine_health"

    component: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), default="healthy")  # healthy, degraded, circuit_open
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_successes: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_success_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    circuit_opened_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
