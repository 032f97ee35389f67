from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint, Uuid
from datetime import datetime

from ..core.db import Base

class ResearchStepCheckpoint(Base):
    __tablename__ = "research_step_checkpoints"
    __table_args__ = (UniqueConstraint("run_id", "name", name="uq_step_checkpoints_run_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True), index=True, nullable=False)
    name = Column(String, nullable=False)    # "save-sources", "poll-wait-3", ...
    output = Column(JSON, nullable=True)     # JSON-safe step result replayed on re-entry
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
