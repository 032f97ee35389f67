from sqlalchemy import Column, String, Text, Integer, JSON, Enum, DateTime, Uuid
from datetime import datetime
import uuid
import enum
from ..core.db import Base

class RunStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

TERMINAL_STATUSES = {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}

class SearchMethod(str, enum.Enum):
    STANDARD = "STANDARD"          # reddit + hn + web discovery, extraction, gap loop
    PAID_SEARCH = "PAID_SEARCH"    # serper only
    DEEP_RESEARCH = "DEEP_RESEARCH"  # external long-running delegate

class ResearchScope(str, enum.Enum):
    GENERAL = "GENERAL"
    MARKET_ANALYSIS = "MARKET_ANALYSIS"
    COMPETITOR_ANALYSIS = "COMPETITOR_ANALYSIS"
    LEAD_GENERATION = "LEAD_GENERATION"

class ResearchRun(Base):
    __tablename__ = "research_runs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False, index=True)
    original_prompt = Column(Text, nullable=False)
    refined_prompt = Column(Text, nullable=False)
    prompt_hash = Column(String(64), nullable=False, index=True)
    search_method = Column(Enum(SearchMethod), nullable=False, default=SearchMethod.STANDARD)
    scope = Column(Enum(ResearchScope), nullable=False, default=ResearchScope.GENERAL)
    status = Column(Enum(RunStatus), nullable=False, default=RunStatus.PENDING)
    progress = Column(Integer, nullable=False, default=0)
    analysis_result = Column(JSON, nullable=True)  # {insights, summary, trends}, set once
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
