"""
Database Package
================

Exports key database components.
"""

from ruleforge.db.models import (
    # Base
    Base, utcnow,
    # Outcome store
    SessionModel, MessageModel, FieldChangeModel, ConversationAnalysisModel,
    # Rule registry
    RuleModel, EvaluationRecordModel, RuleChangeLogModel,
    # Knowledge aggregation
    KnowledgeClusterModel, ClusterMembershipModel, DailyMetricModel,
    # Engine health
    EngineHealthModel,
)
from ruleforge.db.connection import init_db, get_session_maker, dispose_db
