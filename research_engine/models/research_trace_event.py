from sqlalchemy import Column, Integer, String, DateTime, JSON, ForeignKey, Uuid
from datetime import datetime

from ..core.db import Base

class ResearchTraceEvent(Base):
    __tablename__ = "research_trace_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True),
                    ForeignKey("research_runs.id"),
                    index=True,
                    nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    phase = Column(String, nullable=False)   # "INIT", "DISCOVERY", "ANALYSIS", …
    step = Column(String, nullable=True)     # "discover-sources", "analyze-findings", …
    label = Column(String, nullable=False)   # short human-readable summary
    detail = Column(String, nullable=True)   # one-paragraph explanation
    meta = Column(JSON, nullable=True)       # small, structured extras for UI
