# research_engine/schemas/research.py
from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator

from ..models.research_run import RunStatus, SearchMethod, ResearchScope

MAX_PROMPT_LEN = 4000
MAX_USER_ID_LEN = 200


class ResearchRequest(BaseModel):
    user_id: str
    prompt: str
    refined_prompt: str | None = None
    search_method: SearchMethod = SearchMethod.STANDARD
    scope: ResearchScope = ResearchScope.GENERAL

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("user_id must not be empty")
        if len(v) > MAX_USER_ID_LEN:
            raise ValueError(f"user_id must be at most {MAX_USER_ID_LEN} characters")
        return v

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("prompt must not be empty")
        if len(v) > MAX_PROMPT_LEN:
            raise ValueError(
                f"prompt is too long; maximum length is {MAX_PROMPT_LEN} characters"
            )
        return v

    @field_validator("refined_prompt", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str):
            return v.strip() or None
        return v


class RetryRequest(BaseModel):
    skip_search: bool = False
    provider: Literal["GEMINI", "GROQ"] | None = None
    model: str | None = None


class ResearchRunOut(BaseModel):
    id: UUID
    user_id: str
    original_prompt: str
    refined_prompt: str
    status: RunStatus
    progress: int
    search_method: SearchMethod
    scope: ResearchScope
    analysis_result: dict | None = None
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class ResearchInsightOut(BaseModel):
    id: int
    title: str
    content: str
    category: str
    confidence: float
    position: int

    model_config = ConfigDict(from_attributes=True)


class ActionItemOut(BaseModel):
    id: int
    description: str
    priority: str
    effort: int
    position: int
    completed: bool

    model_config = ConfigDict(from_attributes=True)


class LeadOut(BaseModel):
    id: int
    name: str
    company: str
    email: str | None = None
    phone: str | None = None
    website: str | None = None
    industry: str | None = None
    location: str | None = None
    pain_points: list[str] | None = None
    suggested_dm: str | None = None
    suggested_email: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ResearchTraceEventOut(BaseModel):
    id: int
    created_at: datetime
    phase: str
    step: str | None = None
    label: str
    detail: str | None = None
    meta: dict | None = None

    model_config = ConfigDict(from_attributes=True)


class SourceOut(BaseModel):
    id: int
    url: str
    title: str | None = None
    source_type: str
    provider: str | None = None
    excerpt: str | None = None
    rank_score: float | None = None
    scraped_at: datetime

    model_config = ConfigDict(from_attributes=True)
