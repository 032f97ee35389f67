# research_engine/schemas/pipeline.py
"""
In-flight data model for the research pipeline.

These models travel between stages and through step checkpoints, so every
one of them must survive `model_dump(mode="json")` -> `model_validate(...)`.
LLM payloads arrive in camelCase; the models accept both camelCase and
snake_case and always dump snake_case.
"""
from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class SourceType(str, enum.Enum):
    DISCUSSION_FORUM = "discussion_forum"
    LINK_AGGREGATOR = "link_aggregator"
    GENERIC_WEB = "generic_web"


DISCUSSION_TYPES = {SourceType.DISCUSSION_FORUM, SourceType.LINK_AGGREGATOR}


class _LLMModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def _to_str_list(v: Any) -> list[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [v] if v.strip() else []
    if isinstance(v, (list, tuple)):
        return [str(x) for x in v if x is not None and str(x).strip()]
    return [str(v)]


def _to_optional_str(v: Any) -> str | None:
    if v is None:
        return None
    if isinstance(v, str):
        return v
    return str(v)


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

class DiscussionExcerpt(BaseModel):
    author: str = "[deleted]"
    text: str
    score: int = 0
    depth: int = 0


class SourceMetadata(BaseModel):
    author: str | None = None
    published_at: datetime | None = None
    engagement_score: int | None = None
    discussion_count: int | None = None
    provider_specific: dict[str, Any] = Field(default_factory=dict)


class SourceCandidate(BaseModel):
    url: str
    title: str = ""
    raw_content: str = ""
    source_type: SourceType
    provider: str | None = None
    metadata: SourceMetadata = Field(default_factory=SourceMetadata)
    top_discussion_excerpts: list[DiscussionExcerpt] = Field(default_factory=list)
    rank_score: float = 0.0


class ExtractionResult(BaseModel):
    url: str
    title: str = ""
    content: str = ""
    excerpt: str = ""
    published_at: str | None = None
    success: bool
    error: str | None = None


class CachedExtractionEntry(BaseModel):
    url: str
    title: str | None = None
    content: str
    excerpt: str | None = None
    extracted_at: datetime


# ---------------------------------------------------------------------------
# LLM outputs
# ---------------------------------------------------------------------------

class GapAnalysis(_LLMModel):
    has_gaps: bool = False
    gaps: list[str] = Field(default_factory=list)
    suggested_queries: list[str] = Field(default_factory=list)

    coerce_lists = field_validator("gaps", "suggested_queries", mode="before")(_to_str_list)


class Insight(_LLMModel):
    title: str
    content: str
    category: str = "general"
    confidence: float = 0.5

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.5
        # Some models answer on a 0-100 scale
        if value > 1.0:
            value = value / 100.0 if value <= 100.0 else 1.0
        return max(0.0, min(1.0, value))


class AnalysisResult(_LLMModel):
    insights: list[Insight] = Field(default_factory=list)
    summary: str = ""
    trends: list[str] = Field(default_factory=list)

    coerce_trends = field_validator("trends", mode="before")(_to_str_list)


class PainPoint(_LLMModel):
    pain: str
    severity: Literal["critical", "high", "medium", "low"] = "medium"
    frequency: int = 1
    willingness_to_pay: str | None = None
    current_solutions: list[str] = Field(default_factory=list)
    quotes: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    # Set by the validator only
    validated: bool = False
    actionability_score: int | None = None

    coerce_lists = field_validator("current_solutions", "quotes", "sources", mode="before")(_to_str_list)
    coerce_wtp = field_validator("willingness_to_pay", mode="before")(_to_optional_str)

    @field_validator("severity", mode="before")
    @classmethod
    def _normalise_severity(cls, v: Any) -> str:
        value = str(v or "medium").strip().lower()
        return value if value in ("critical", "high", "medium", "low") else "medium"

    @field_validator("frequency", mode="before")
    @classmethod
    def _coerce_frequency(cls, v: Any) -> int:
        try:
            return max(1, int(v))
        except (TypeError, ValueError):
            return 1


class TargetMarket(_LLMModel):
    demographics: str = ""
    psychographics: str = ""
    size: str = ""


class Competition(_LLMModel):
    existing: list[str] = Field(default_factory=list)
    gaps: list[str] = Field(default_factory=list)

    coerce_lists = field_validator("existing", "gaps", mode="before")(_to_str_list)


class Opportunity(_LLMModel):
    title: str
    description: str = ""
    target_market: TargetMarket = Field(default_factory=TargetMarket)
    validation_evidence: list[str] = Field(default_factory=list)
    entry_strategy: list[str] = Field(default_factory=list)
    revenue_estimate: str = ""
    competition: Competition = Field(default_factory=Competition)
    risks: list[str] = Field(default_factory=list)
    validation_score: float = 0.0
    # Set by the validator only
    red_flags: list[str] = Field(default_factory=list)
    validated: bool = False

    coerce_lists = field_validator("validation_evidence", "entry_strategy", "risks", mode="before")(_to_str_list)

    @field_validator("target_market", mode="before")
    @classmethod
    def _coerce_target_market(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"demographics": v}
        return v or {}

    @field_validator("competition", mode="before")
    @classmethod
    def _coerce_competition(cls, v: Any) -> Any:
        if isinstance(v, (list, str)):
            return {"existing": v}
        return v or {}

    @field_validator("revenue_estimate", mode="before")
    @classmethod
    def _coerce_revenue(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("validation_score", mode="before")
    @classmethod
    def _coerce_score(cls, v: Any) -> float:
        try:
            return float(v)
        except (TypeError, ValueError):
            return 0.0


class MarketInsight(_LLMModel):
    type: Literal["trend", "pattern", "shift", "gap"] = "pattern"
    insight: str
    evidence: list[str] = Field(default_factory=list)
    impact: Literal["high", "medium", "low"] = "medium"
    timeframe: str = ""
    validated: bool = False

    coerce_lists = field_validator("evidence", mode="before")(_to_str_list)

    @field_validator("type", mode="before")
    @classmethod
    def _normalise_type(cls, v: Any) -> str:
        value = str(v or "pattern").strip().lower()
        return value if value in ("trend", "pattern", "shift", "gap") else "pattern"

    @field_validator("impact", mode="before")
    @classmethod
    def _normalise_impact(cls, v: Any) -> str:
        value = str(v or "medium").strip().lower()
        return value if value in ("high", "medium", "low") else "medium"


class CompetitorProfile(_LLMModel):
    name: str
    mentions: int = 0
    sentiment: str | None = None
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    pricing: str | None = None
    market_position: str | None = None
    user_quotes: list[str] = Field(default_factory=list)
    validated: bool = False

    coerce_lists = field_validator("strengths", "weaknesses", "user_quotes", mode="before")(_to_str_list)
    coerce_text = field_validator("pricing", "market_position", "sentiment", mode="before")(_to_optional_str)

    @field_validator("mentions", mode="before")
    @classmethod
    def _coerce_mentions(cls, v: Any) -> int:
        try:
            return max(0, int(v))
        except (TypeError, ValueError):
            return 0


class DeepAnalysis(BaseModel):
    """Combined output of the four analyzer passes plus synthesis."""

    pain_points: list[PainPoint] = Field(default_factory=list)
    opportunities: list[Opportunity] = Field(default_factory=list)
    market_insights: list[MarketInsight] = Field(default_factory=list)
    competitors: list[CompetitorProfile] = Field(default_factory=list)
    summary: str = ""


class ActionItemDraft(_LLMModel):
    description: str
    priority: Literal["HIGH", "MEDIUM", "LOW"] = "MEDIUM"
    effort: int = 3

    @field_validator("priority", mode="before")
    @classmethod
    def _normalise_priority(cls, v: Any) -> str:
        value = str(v or "MEDIUM").strip().upper()
        return value if value in ("HIGH", "MEDIUM", "LOW") else "MEDIUM"

    @field_validator("effort", mode="before")
    @classmethod
    def _clamp_effort(cls, v: Any) -> int:
        try:
            return max(1, min(5, int(v)))
        except (TypeError, ValueError):
            return 3


class LeadDraft(_LLMModel):
    name: str = "Unknown Contact"
    company: str = "Unknown Company"
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    industry: str | None = None
    location: str | None = None
    pain_points: list[str] = Field(default_factory=list)
    suggested_dm: str = Field(default="Relevant Decision Maker", alias="suggestedDM")
    suggested_email: str = "Not available"

    coerce_lists = field_validator("pain_points", mode="before")(_to_str_list)
    coerce_optional = field_validator(
        "email", "phone", "website", "industry", "location", mode="before"
    )(_to_optional_str)

    @field_validator("name", "company", "suggested_dm", "suggested_email", mode="before")
    @classmethod
    def _blank_to_default(cls, v: Any, info) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return cls.model_fields[info.field_name].default
        return str(v)
