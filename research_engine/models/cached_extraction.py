from sqlalchemy import Column, String, Text, DateTime
from datetime import datetime

from ..core.db import Base

class CachedExtraction(Base):
    __tablename__ = "cached_extractions"

    url = Column(String, primary_key=True)  # one row per URL, newest extraction wins
    title = Column(String, nullable=True)
    content = Column(Text, nullable=False)
    excerpt = Column(Text, nullable=True)
    published_at = Column(String, nullable=True)
    extracted_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
