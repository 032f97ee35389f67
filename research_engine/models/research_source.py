from sqlalchemy import Column, Integer, String, Text, Float, JSON, DateTime, ForeignKey, UniqueConstraint, Uuid
from datetime import datetime
from ..core.db import Base

class ResearchSource(Base):
    __tablename__ = "research_sources"
    __table_args__ = (UniqueConstraint("run_id", "url", name="uq_research_sources_run_url"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True), ForeignKey("research_runs.id"), nullable=False, index=True)
    url = Column(String, nullable=False)
    title = Column(String, nullable=True)
    content = Column(Text, nullable=False, default="")   # capped at MAX_SOURCE_CONTENT_CHARS
    excerpt = Column(Text, nullable=True)
    source_type = Column(String, nullable=False)         # discussion_forum | link_aggregator | generic_web
    provider = Column(String, nullable=True)             # 'reddit', 'hackernews', 'serper', ...
    rank_score = Column(Float, nullable=True)
    meta = Column(JSON, nullable=True)                   # SourceMetadata
    discussion_excerpts = Column(JSON, nullable=True)    # [{author, text, score, depth}]
    scraped_at = Column(DateTime, default=datetime.utcnow, nullable=False)
