from sqlalchemy import Column, Integer, Text, Boolean, Enum, ForeignKey, Uuid
import enum
from ..core.db import Base

class ActionPriority(str, enum.Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

class ActionItem(Base):
    __tablename__ = "action_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True), ForeignKey("research_runs.id"), nullable=False, index=True)
    description = Column(Text, nullable=False)
    priority = Column(Enum(ActionPriority), nullable=False, default=ActionPriority.MEDIUM)
    effort = Column(Integer, nullable=False, default=3)  # 1 (trivial) .. 5 (major)
    position = Column(Integer, nullable=False, default=0)
    completed = Column(Boolean, nullable=False, default=False)
