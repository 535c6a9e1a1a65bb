"""
LLM Capabilities
================

Scoring and review capabilities backed by an OpenAI-compatible chat API.

Responses are requested as structured output through instructor, retried
with exponential backoff, and rate limited. Whatever still fails after the
retries surfaces as CapabilityError so the engine can treat it as transient.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import instructor
from instructor.exceptions import InstructorRetryException
from aiolimiter import AsyncLimiter
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError
from tenacity import AsyncRetrying, RetryError, retry_if_exception, stop_after_attempt, wait_exponential

from ruleforge.capabilities import RuleProposal, ScoreResult, ReviewVerdict, Verdict
from ruleforge.errors import CapabilityError, ConfigError, InvalidCapabilityResponse

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_MAX_RETRIES = 3


@dataclass
class LLMSettings:
    """Connection settings, read from RULEFORGE_LLM_* environment variables."""
    api_key: str
    model: str = DEFAULT_MODEL
    base_url: Optional[str] = None
    max_concurrency: int = 4
    requests_per_minute: int = 60
    # Attempts per request, including the first
    max_retries: int = DEFAULT_MAX_RETRIES

    @classmethod
    def from_env(cls) -> Optional["LLMSettings"]:
        """Return settings, or None when no API key is configured."""
        api_key = os.environ.get("RULEFORGE_LLM_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not api_key:
            return None
        try:
            return cls(
                api_key=api_key,
                model=os.environ.get("RULEFORGE_LLM_MODEL", DEFAULT_MODEL),
                base_url=os.environ.get("RULEFORGE_LLM_BASE_URL") or None,
                max_concurrency=int(os.environ.get("RULEFORGE_LLM_MAX_CONCURRENCY", "4")),
                requests_per_minute=int(os.environ.get("RULEFORGE_LLM_REQUESTS_PER_MINUTE", "60")),
                max_retries=int(os.environ.get("RULEFORGE_LLM_MAX_RETRIES", str(DEFAULT_MAX_RETRIES))),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid LLM setting: {e}") from e


# =============================================================================
# Structured response models
# =============================================================================

class RuleProposalModel(BaseModel):
    rule_key: str = Field(description="Stable snake_case identifier of the rule")
    category: str = Field(description="Tag the rule applies to, e.g. a violation tag or industry:<name>")
    name: str = Field(description="Short human readable rule name")
    description: str = Field(description="What the assistant should do differently")


class TranscriptScore(BaseModel):
    completion: float = Field(ge=0, le=100, description="How completely the required fields were collected")
    professionalism: float = Field(ge=0, le=100, description="Quality of the assistant replies")
    violation_tags: list[str] = Field(default_factory=list, description="snake_case problems observed")
    appeal_success_estimate: float = Field(ge=0, le=1, description="Probability the appeal succeeds")
    rationale: str = Field(description="1-3 sentences explaining the scores")
    rule_proposals: list[RuleProposalModel] = Field(default_factory=list)


class RuleReview(BaseModel):
    verdict: Verdict = Field(description="approve or reject")
    confidence: float = Field(ge=0, le=1)
    legal_score: int = Field(ge=0, le=100, description="Compliance: no fraud, fake evidence or evasion")
    helpfulness_score: int = Field(ge=0, le=100)
    reason: str


SCORING_PROMPT = """You evaluate conversations of an assistant that helps merchants appeal payment-platform penalties.

Collected fields:
{fields}

Transcript:
{transcript}

Score the conversation. Use violation tags for concrete problems (missing critical
information, unstructured replies, negative user sentiment and so on). Propose a rule
only when a clear, reusable improvement is visible."""

REVIEW_PROMPT = """You review automatically proposed rules for an assistant that helps merchants appeal payment-platform penalties.

Rule:
{rule}

Analyses of conversations the rule applies to:
{analyses}

Approve a rule only if it is lawful, helps merchants and is general enough to reuse.
Any rule involving fake materials, forged evidence or regulatory evasion must be rejected."""


def _root_cause(exc: BaseException) -> BaseException:
    """The error behind instructor's retry wrapper, or ``exc`` itself."""
    if isinstance(exc, InstructorRetryException):
        cause = exc.__cause__
        if isinstance(cause, RetryError):
            cause = cause.last_attempt.exception()
        if cause is not None:
            return cause
    return exc


def _is_transient(exc: BaseException) -> bool:
    return isinstance(_root_cause(exc), (OpenAIError, httpx.HTTPError))


class _LLMClient:
    """Shared instructor client with concurrency and rate limits."""

    def __init__(self, settings: LLMSettings, http_client: Optional[httpx.AsyncClient] = None):
        if http_client is None:
            http_client = httpx.AsyncClient(
                limits=httpx.Limits(
                    max_connections=settings.max_concurrency,
                    max_keepalive_connections=settings.max_concurrency,
                ),
                timeout=httpx.Timeout(60.0, connect=10.0),
            )
        # Transport retries are handled with tenacity
        self.client = instructor.from_openai(
            AsyncOpenAI(
                api_key=settings.api_key,
                base_url=settings.base_url,
                http_client=http_client,
                max_retries=0,
            )
        )
        self.settings = settings
        self.semaphore = asyncio.Semaphore(settings.max_concurrency)
        self.rate_limiter = AsyncLimiter(max_rate=settings.requests_per_minute, time_period=60)
        self.retry_wait = wait_exponential(multiplier=1, min=2, max=10)

    async def complete(self, response_model: type[BaseModel], prompt: str) -> Any:
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(max(self.settings.max_retries, 1)),
            wait=self.retry_wait,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._request(response_model, prompt)
        except ValidationError as e:
            raise InvalidCapabilityResponse(f"LLM response failed validation: {e}") from e
        except InstructorRetryException as e:
            if _is_transient(e):
                raise CapabilityError(f"LLM call failed: {_root_cause(e)}") from e
            raise InvalidCapabilityResponse(f"LLM response failed validation: {_root_cause(e)}") from e
        except (OpenAIError, httpx.HTTPError) as e:
            raise CapabilityError(f"LLM call failed: {e}") from e

    async def _request(self, response_model: type[BaseModel], prompt: str) -> Any:
        async with self.semaphore:
            async with self.rate_limiter:
                return await self.client.chat.completions.create(
                    model=self.settings.model,
                    response_model=response_model,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=0.2,
                    max_retries=1,
                )


class LLMScoringCapability:
    """Scores transcripts with an LLM."""

    def __init__(self, settings: LLMSettings):
        self._llm = _LLMClient(settings)

    async def score(self, transcript: list[dict], collected_fields: dict[str, Any]) -> ScoreResult:
        lines = [f"[{i}] {m.get('role')}: {m.get('content')}" for i, m in enumerate(transcript)]
        prompt = SCORING_PROMPT.format(
            fields=json.dumps(collected_fields, ensure_ascii=False, indent=2),
            transcript="\n".join(lines),
        )
        result: TranscriptScore = await self._llm.complete(TranscriptScore, prompt)
        logger.debug("LLM scored transcript: completion=%.1f", result.completion)
        return ScoreResult(
            completion=result.completion,
            professionalism=result.professionalism,
            violation_tags=list(result.violation_tags),
            appeal_success_estimate=result.appeal_success_estimate,
            rationale=result.rationale,
            rule_proposals=[
                RuleProposal(
                    rule_key=p.rule_key,
                    category=p.category,
                    name=p.name,
                    content={"description": p.description},
                )
                for p in result.rule_proposals
            ],
        ).validate()


class LLMReviewCapability:
    """Adjudicates pending rules with an LLM."""

    def __init__(self, settings: LLMSettings, min_legal_score: int = 60):
        self._llm = _LLMClient(settings)
        self.min_legal_score = min_legal_score

    async def review(self, rule_definition: dict, supporting_analyses: list[dict]) -> ReviewVerdict:
        prompt = REVIEW_PROMPT.format(
            rule=json.dumps(rule_definition, ensure_ascii=False, indent=2, default=str),
            analyses=json.dumps(supporting_analyses, ensure_ascii=False, indent=2, default=str),
        )
        result: RuleReview = await self._llm.complete(RuleReview, prompt)

        # A non-compliant rule is never approved, whatever the model concluded
        if result.verdict == Verdict.APPROVE and result.legal_score < self.min_legal_score:
            return ReviewVerdict(
                verdict=Verdict.REJECT,
                confidence=result.confidence,
                reason=f"legal score {result.legal_score} below {self.min_legal_score}: {result.reason}",
            ).validate()
        return ReviewVerdict(verdict=result.verdict, confidence=result.confidence, reason=result.reason).validate()
