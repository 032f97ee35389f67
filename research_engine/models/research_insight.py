from sqlalchemy import Column, Integer, String, Text, Float, DateTime, ForeignKey, UniqueConstraint, Uuid
from datetime import datetime
from ..core.db import Base

class ResearchInsight(Base):
    __tablename__ = "research_insights"
    __table_args__ = (UniqueConstraint("run_id", "title", name="uq_research_insights_run_title"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True), ForeignKey("research_runs.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    category = Column(String, nullable=False)   # pain_point | opportunity | market_insight | ...
    confidence = Column(Float, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
