from sqlalchemy import Column, Integer, String, Text, JSON, ForeignKey, UniqueConstraint, Uuid
from ..core.db import Base

class CompetitorIntel(Base):
    __tablename__ = "competitor_intel"
    __table_args__ = (UniqueConstraint("run_id", "name", name="uq_competitor_intel_run_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True), ForeignKey("research_runs.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    mentions = Column(Integer, nullable=False, default=0)
    sentiment = Column(String, nullable=True)
    strengths = Column(JSON, nullable=True)
    weaknesses = Column(JSON, nullable=True)
    pricing = Column(Text, nullable=True)
    market_position = Column(Text, nullable=True)
