from sqlalchemy import Column, String

from ..core.db import Base

class UserSettings(Base):
    """Per-user backend credentials, written already decrypted by the credential store."""

    __tablename__ = "user_settings"

    user_id = Column(String, primary_key=True)
    llm_provider = Column(String, nullable=False, default="GEMINI")  # GEMINI | GROQ
    gemini_api_key = Column(String, nullable=True)
    gemini_model = Column(String, nullable=True)
    groq_api_key = Column(String, nullable=True)
    serper_api_key = Column(String, nullable=True)
    jina_api_key = Column(String, nullable=True)
