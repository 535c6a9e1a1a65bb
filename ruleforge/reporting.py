"""
Reporting Facade
================

Read-only accessors for dashboards and the CLI, plus the prompt block of
active rules that the conversational assistant injects into its system prompt.
"""

import time
from typing import Optional

from ruleforge.aggregator import KnowledgeAggregator
from ruleforge.analyzer import Analyzer
from ruleforge.engine_health import EngineHealth
from ruleforge.outcome_store import OutcomeStore
from ruleforge.rule_registry import Rule, RuleRegistry

PROMPT_CACHE_TTL_SECONDS = 300

# Section titles for known rule categories; anything else goes under "Other rules"
SECTION_TITLES = {
    "collection_strategy": "Collection strategy",
    "question_template": "Question templates",
    "industry_knowledge": "Industry knowledge",
    "violation_strategy": "Violation handling",
    "conversation_pattern": "Conversation patterns",
    "diagnosis_rule": "Diagnosis rules",
}


def rule_description(rule: Rule) -> str:
    content = rule.content or {}
    for key in ("description", "action", "template"):
        if content.get(key):
            return str(content[key])
    return rule.name


def render_prompt_block(rules: list[Rule]) -> str:
    """Markdown block of active rules grouped by category, best scored first."""
    if not rules:
        return ""
    sections: dict[str, list[Rule]] = {}
    for rule in rules:
        title = SECTION_TITLES.get(rule.category)
        if title is None:
            title = "Other rules"
        sections.setdefault(title, []).append(rule)

    lines = ["## Learned rules (from past conversations)"]
    ordered = [t for t in SECTION_TITLES.values() if t in sections]
    if "Other rules" in sections:
        ordered.append("Other rules")
    for title in ordered:
        lines.append("")
        lines.append(f"### {title}")
        for rule in sections[title]:
            lines.append(f"- **{rule.name}**: {rule_description(rule)}")
    return "\n".join(lines) + "\n"


class ReportingFacade:
    """Stats accessors across the engine."""

    def __init__(
        self,
        store: OutcomeStore,
        registry: RuleRegistry,
        analyzer: Analyzer,
        aggregator: KnowledgeAggregator,
        health: EngineHealth,
        cache_ttl_seconds: float = PROMPT_CACHE_TTL_SECONDS,
    ):
        self.store = store
        self.registry = registry
        self.analyzer = analyzer
        self.aggregator = aggregator
        self.health = health
        self.cache_ttl_seconds = cache_ttl_seconds
        self._prompt_cache: Optional[tuple[float, str, list[int]]] = None

    async def rule_stats(self) -> dict:
        return await self.registry.get_stats()

    async def analysis_stats(self) -> dict:
        return {**await self.analyzer.get_stats(), "sessions": await self.store.get_stats()}

    async def cluster_stats(self) -> dict:
        return await self.aggregator.get_cluster_stats()

    async def daily_metrics(self, days: int = 30) -> list[dict]:
        return await self.aggregator.get_daily_metrics(days)

    async def engine_health(self) -> dict:
        return await self.health.summary()

    async def overview(self) -> dict:
        return {
            "rules": await self.rule_stats(),
            "analyses": await self.analysis_stats(),
            "clusters": await self.cluster_stats(),
            "health": await self.engine_health(),
        }

    async def active_rules_prompt(self) -> str:
        """Prompt block of active rules, cached for cache_ttl_seconds."""
        now = time.monotonic()
        if self._prompt_cache is not None and now - self._prompt_cache[0] < self.cache_ttl_seconds:
            return self._prompt_cache[1]
        rules = await self.registry.list_active()
        prompt = render_prompt_block(rules)
        self._prompt_cache = (now, prompt, [r.id for r in rules])
        return prompt

    def active_rule_ids(self) -> list[int]:
        """Ids of the rules in the cached prompt block."""
        return list(self._prompt_cache[2]) if self._prompt_cache else []

    def invalidate_prompt_cache(self) -> None:
        self._prompt_cache = None
