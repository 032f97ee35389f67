from sqlalchemy import Column, Integer, String, JSON, ForeignKey, Uuid
from ..core.db import Base

class LeadData(Base):
    __tablename__ = "lead_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True), ForeignKey("research_runs.id"), nullable=False, unique=True)
    total_found = Column(Integer, nullable=False, default=0)

class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_data_id = Column(Integer, ForeignKey("lead_data.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    company = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    website = Column(String, nullable=True)
    industry = Column(String, nullable=True)
    location = Column(String, nullable=True)
    pain_points = Column(JSON, nullable=True)
    suggested_dm = Column(String, nullable=True)
    suggested_email = Column(String, nullable=True)
