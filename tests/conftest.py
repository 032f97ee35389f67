import pytest

from research_engine.core.config import get_settings


@pytest.fixture(autouse=True)
def no_pipeline_delays(monkeypatch):
    """Fixed inter-call pauses are production rate limiting; tests never wait."""
    settings = get_settings()
    monkeypatch.setattr(settings, "EXTRACTION_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "ANALYZER_PASS_DELAYS_SECONDS", [0.0, 0.0, 0.0, 0.0])
    monkeypatch.setattr(settings, "VALIDATOR_CALL_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(settings, "REDDIT_MIN_REQUEST_INTERVAL_SECONDS", 0.0)
    monkeypatch.setattr(settings, "DEEP_RESEARCH_POLL_INTERVAL_SECONDS", 0)
    yield


@pytest.fixture
def db_session():
    """A fresh in-memory SQLite database per test; StaticPool keeps the one connection alive."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool

    from research_engine import models  # noqa: F401  registers every table on Base
    from research_engine.core.db import Base

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()
