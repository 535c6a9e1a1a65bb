"""
Capabilities
============

Contracts for the external scoring and review capabilities, validation of
what they return, and a deterministic offline scorer.

The engine treats both capabilities as unreliable: every call may fail, time
out, or return garbage. Responses are validated here and anything out of
range is reported as InvalidCapabilityResponse, which the callers handle like
any other transient failure.
"""

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from ruleforge.errors import InvalidCapabilityResponse


# =============================================================================
# Result types
# =============================================================================

@dataclass
class RuleProposal:
    """A rule suggested by the scoring capability."""
    rule_key: str
    category: str
    name: str = ""
    content: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "rule_key": self.rule_key,
            "category": self.category,
            "name": self.name,
            "content": self.content,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RuleProposal":
        return cls(
            rule_key=data["rule_key"],
            category=data["category"],
            name=data.get("name", ""),
            content=data.get("content", {}),
        )


@dataclass
class ScoreResult:
    """Scores for one transcript."""
    completion: float                  # 0-100
    professionalism: float             # 0-100
    violation_tags: list[str] = field(default_factory=list)
    appeal_success_estimate: float = 0.0  # 0-1
    rationale: str = ""
    rule_proposals: list[RuleProposal] = field(default_factory=list)

    def validate(self) -> "ScoreResult":
        """Raise InvalidCapabilityResponse if any value is out of range."""
        _check_range("completion", self.completion, 0.0, 100.0)
        _check_range("professionalism", self.professionalism, 0.0, 100.0)
        _check_range("appeal_success_estimate", self.appeal_success_estimate, 0.0, 1.0)
        if not all(isinstance(tag, str) and tag for tag in self.violation_tags):
            raise InvalidCapabilityResponse("violation_tags must be non-empty strings")
        for proposal in self.rule_proposals:
            if not proposal.rule_key or not proposal.category:
                raise InvalidCapabilityResponse("rule proposals need a rule_key and a category")
        # Tags form a set
        self.violation_tags = sorted(set(self.violation_tags))
        return self

    def to_dict(self) -> dict:
        return {
            "completion": self.completion,
            "professionalism": self.professionalism,
            "violation_tags": list(self.violation_tags),
            "appeal_success_estimate": self.appeal_success_estimate,
            "rationale": self.rationale,
            "rule_proposals": [p.to_dict() for p in self.rule_proposals],
        }


class Verdict(Enum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass
class ReviewVerdict:
    """Decision of the review capability on one pending rule."""
    verdict: Verdict
    confidence: float
    reason: str = ""

    def validate(self) -> "ReviewVerdict":
        try:
            self.verdict = Verdict(self.verdict)
        except ValueError as e:
            raise InvalidCapabilityResponse(f"Unknown verdict: {self.verdict!r}") from e
        _check_range("confidence", self.confidence, 0.0, 1.0)
        return self

    def to_dict(self) -> dict:
        return {"verdict": self.verdict.value, "confidence": self.confidence, "reason": self.reason}


def _check_range(name: str, value: Any, low: float, high: float) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidCapabilityResponse(f"{name} is not a number: {value!r}")
    if math.isnan(value) or not low <= value <= high:
        raise InvalidCapabilityResponse(f"{name}={value} outside [{low}, {high}]", {"field": name})


# =============================================================================
# Contracts
# =============================================================================

@runtime_checkable
class ScoringCapability(Protocol):
    async def score(self, transcript: list[dict], collected_fields: dict[str, Any]) -> ScoreResult:
        ...


@runtime_checkable
class ReviewCapability(Protocol):
    async def review(self, rule_definition: dict, supporting_analyses: list[dict]) -> ReviewVerdict:
        ...


# =============================================================================
# Heuristic scorer
# =============================================================================

ALL_FIELDS = (
    "industry", "problem_type", "violation_reason", "merchant_id", "merchant_name",
    "company_name", "license_no", "legal_name", "legal_id_last4", "business_model",
    "complaint_status", "refund_policy", "bank_name", "bank_account_last4",
    "contact_phone", "appeal_history",
)
CRITICAL_FIELDS = ("problem_type", "violation_reason", "merchant_id", "industry")
IMPORTANT_FIELDS = ("company_name", "license_no", "legal_name", "business_model")

# Placeholder values the assistant writes for fields the user skipped
PLACEHOLDER_VALUES = ("用户暂未提供", "⏳待补充", "not provided", "pending")

_STRUCTURED = re.compile(r"###|步骤|方案|建议|材料|证据|策略|\bsteps?\b|\bplan\b|\bevidence\b|\bdocuments?\b", re.I)
_ACTIONABLE = re.compile(r"具体|操作|提交|准备|需要您|请您|第[一二三四五]|\bplease\b|\bsubmit\b|\bprepare\b|^\s*\d+\.", re.I | re.M)
_EMPATHY = re.compile(r"理解|放心|别担心|没关系|很正常|遇到过|\bunderstand\b|don't worry|\bsorry\b", re.I)
_INDUSTRY_TERMS = re.compile(r"风控|申诉|结算|交易|冻结|限额|处罚|合规|资质|备案|\brisk control\b|\bappeal\b|\bsettlement\b|\bfrozen\b|\bcompliance\b", re.I)
_NEGATIVE = re.compile(r"不想|烦|算了|太慢|没用|垃圾|废话|\buseless\b|\btoo slow\b|\bforget it\b", re.I)


def filled_fields(collected_fields: dict[str, Any]) -> list[str]:
    """Fields from ALL_FIELDS holding a real value."""
    filled = []
    for name in ALL_FIELDS:
        value = collected_fields.get(name)
        if value is None:
            continue
        text = str(value).strip()
        if text and text not in PLACEHOLDER_VALUES:
            filled.append(name)
    return filled


class HeuristicScorer:
    """
    Deterministic scorer computed from field collection and reply style.

    Professionalism starts at 50 and earns up to 15 for structured replies,
    15 for actionable advice, 10 for empathy and 10 for industry vocabulary.
    The appeal estimate is driven by critical and important fields plus
    overall completion, clamped to [0.05, 0.95].
    """

    async def score(self, transcript: list[dict], collected_fields: dict[str, Any]) -> ScoreResult:
        return self.compute(transcript, collected_fields)

    def compute(self, transcript: list[dict], collected_fields: dict[str, Any]) -> ScoreResult:
        filled = filled_fields(collected_fields)
        completion = round(len(filled) / len(ALL_FIELDS) * 100)

        replies = [m.get("content") or "" for m in transcript if m.get("role") == "assistant"]
        user_texts = [m.get("content") or "" for m in transcript if m.get("role") == "user"]

        professionalism = 50
        structured_ratio = 0.0
        if replies:
            n = len(replies)
            structured_ratio = sum(1 for c in replies if _STRUCTURED.search(c)) / n
            actionable_ratio = sum(1 for c in replies if _ACTIONABLE.search(c)) / n
            empathy_ratio = sum(1 for c in replies if _EMPATHY.search(c)) / n
            terms_ratio = sum(1 for c in replies if _INDUSTRY_TERMS.search(c)) / n
            professionalism += (
                min(15, round(structured_ratio * 15))
                + min(15, round(actionable_ratio * 15))
                + min(10, round(empathy_ratio * 10))
                + min(10, round(terms_ratio * 10))
            )

        critical = sum(1 for f in CRITICAL_FIELDS if f in filled)
        important = sum(1 for f in IMPORTANT_FIELDS if f in filled)
        collection_done = str(collected_fields.get("_collection_complete", "")).lower() == "true"

        if critical >= 3:
            estimate = 35
        elif critical >= 2:
            estimate = 20
        else:
            estimate = critical * 8
        estimate += important * 8
        estimate += min(25, round(completion * 0.25))
        if collection_done:
            estimate += 10
        estimate = min(95, max(5, estimate))

        tags = [f"missing:{f}" for f in CRITICAL_FIELDS if f not in filled]
        if completion < 30:
            tags.append("low_completion")
        if replies and structured_ratio < 0.3:
            tags.append("unstructured_replies")
        if sum(1 for c in user_texts if _NEGATIVE.search(c)) >= 3:
            tags.append("negative_sentiment")

        rationale = (
            f"{len(filled)}/{len(ALL_FIELDS)} fields collected, "
            f"{critical}/{len(CRITICAL_FIELDS)} critical, {important}/{len(IMPORTANT_FIELDS)} important"
        )
        return ScoreResult(
            completion=float(completion),
            professionalism=float(professionalism),
            violation_tags=tags,
            appeal_success_estimate=estimate / 100.0,
            rationale=rationale,
        ).validate()


def derive_tags(violation_tags: list[str], collected_fields: dict[str, Any]) -> list[str]:
    """Violation tags plus industry:<x> and problem_type:<y> from the collected fields."""
    tags = set(violation_tags)
    for name in ("industry", "problem_type"):
        value = collected_fields.get(name)
        if value is not None and str(value).strip() and str(value).strip() not in PLACEHOLDER_VALUES:
            tags.add(f"{name}:{str(value).strip().lower()}")
    return sorted(tags)


def field_value(collected_fields: dict[str, Any], name: str) -> str:
    value = collected_fields.get(name)
    if value is None or str(value).strip() in PLACEHOLDER_VALUES:
        return ""
    return str(value).strip()
