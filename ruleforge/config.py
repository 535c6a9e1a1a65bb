"""
Configuration Management
========================

Handles loading engine configuration from environment variables and config files.

Every threshold used by the evaluator, the promotion controller and the
auto-reviewer is an operational tuning value and lives here rather than in code.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Optional, Any

from ruleforge.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "ruleforge_config.json"
ENV_PREFIX = "RULEFORGE_"
DEFAULT_DB_DIRNAME = ".ruleforge"


@dataclass
class SchedulerConfig:
    """Intervals for the periodic jobs."""
    analysis_interval_seconds: int = 30 * 60
    promotion_interval_seconds: int = 2 * 60 * 60
    daily_aggregation_hour_utc: int = 0
    daily_aggregation_minute_utc: int = 5
    analysis_batch_size: int = 10


@dataclass
class EngineConfig:
    """Rule evolution engine configuration."""

    # Storage
    project_dir: str = "."

    # Analyzer
    min_messages: int = 3
    max_analysis_attempts: int = 3
    claim_ttl_seconds: int = 900
    analysis_concurrency: int = 4
    capability_timeout_seconds: float = 30.0

    # Evaluator
    min_samples: int = 5
    success_weight: float = 0.7
    completion_weight: float = 0.3
    evaluation_window_days: Optional[int] = None
    count_unknown_outcomes: bool = False

    # Promotion controller
    promote_threshold: float = 0.7
    reject_threshold: float = 0.3
    demote_threshold: float = 0.4
    demote_consecutive: int = 3
    pending_expiry_days: Optional[float] = None

    # Auto-reviewer
    review_concurrency: int = 2
    min_review_confidence: float = 0.6
    review_support_limit: int = 10

    # Knowledge aggregation
    cluster_similarity_threshold: float = 0.5
    cluster_rule_min_members: int = 3

    # Engine health (circuit breaker)
    circuit_error_threshold: int = 5
    circuit_recovery_successes: int = 3
    circuit_cooldown_seconds: int = 300

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @property
    def db_dir(self) -> Path:
        return Path(self.project_dir) / DEFAULT_DB_DIRNAME

    def validate(self) -> "EngineConfig":
        """Check value ranges. Raises ConfigError on the first bad value."""
        for name in ("promote_threshold", "reject_threshold", "demote_threshold",
                     "success_weight", "completion_weight", "min_review_confidence",
                     "cluster_similarity_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be within [0, 1], got {value}", {"field": name})

        if self.reject_threshold > self.promote_threshold:
            raise ConfigError(
                "reject_threshold must not exceed promote_threshold",
                {"reject_threshold": self.reject_threshold, "promote_threshold": self.promote_threshold},
            )
        if self.success_weight + self.completion_weight <= 0:
            raise ConfigError("success_weight + completion_weight must be positive")

        for name in ("min_samples", "max_analysis_attempts", "demote_consecutive",
                     "analysis_concurrency", "review_concurrency"):
            if getattr(self, name) < 1:
                raise ConfigError(f"{name} must be at least 1", {"field": name})

        if self.capability_timeout_seconds <= 0:
            raise ConfigError("capability_timeout_seconds must be positive")
        return self

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        """Create from dictionary, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known and k != "scheduler"}
        scheduler_data = data.get("scheduler") or {}
        scheduler_known = {f.name for f in fields(SchedulerConfig)}
        scheduler = SchedulerConfig(**{k: v for k, v in scheduler_data.items() if k in scheduler_known})
        return cls(scheduler=scheduler, **values)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "EngineConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables (RULEFORGE_<FIELD>)
        2. Config file (ruleforge_config.json or the given path)
        3. Default values
        """
        config: dict[str, Any] = {}

        path = Path(config_path) if config_path else Path(CONFIG_FILENAME)
        if path.exists():
            try:
                with open(path, "r") as f:
                    config.update(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"Failed to load config file {path}: {e}") from e
        elif config_path:
            raise ConfigError(f"Config file not found: {path}")

        for f in fields(cls):
            if f.name == "scheduler":
                continue
            raw = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is not None:
                config[f.name] = _coerce(f.name, raw, getattr(cls(), f.name))

        scheduler_data = dict(config.get("scheduler") or {})
        defaults = SchedulerConfig()
        for f in fields(SchedulerConfig):
            raw = os.environ.get(f"{ENV_PREFIX}SCHEDULER_{f.name.upper()}")
            if raw is not None:
                scheduler_data[f.name] = _coerce(f.name, raw, getattr(defaults, f.name))
        config["scheduler"] = scheduler_data

        loaded = cls.from_dict(config).validate()
        logger.debug("Loaded engine configuration from %s", path if path.exists() else "defaults/env")
        return loaded


def _coerce(name: str, raw: str, default: Any) -> Any:
    """Convert an environment string to the type of the field default."""
    if raw.strip().lower() in ("", "none", "null"):
        return None
    try:
        if isinstance(default, bool):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float) or default is None:
            # Optional numeric fields default to None
            return float(raw)
    except ValueError as e:
        raise ConfigError(f"Invalid value for {name}: {raw!r}", {"field": name}) from e
    return raw
