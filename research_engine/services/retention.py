from __future__ import annotations

from datetime import datetime, timedelta
import logging

from sqlalchemy.orm import Session

from ..core.celery_app import celery_app
from ..core.config import get_settings
from ..core.db import SessionLocal
from ..models.cached_extraction import CachedExtraction
from ..models.research_run import ResearchRun, TERMINAL_STATUSES
from ..models.step_checkpoint import ResearchStepCheckpoint

logger = logging.getLogger(__name__)
settings = get_settings()


def purge_expired(db: Session, now: datetime | None = None) -> dict[str, int]:
    """
    Delete cache rows nobody can read any more.

    - CachedExtraction older than EXTRACTION_CACHE_TTL_DAYS: the L2 lookup
      already ignores them.
    - Step checkpoints of finished runs older than CHECKPOINT_RETENTION_DAYS:
      a finished run is never replayed (a retry clears them itself).

    Runs, sources and insights are user data and are never touched here.
    """
    now = now or datetime.utcnow()

    extraction_cutoff = now - timedelta(days=settings.EXTRACTION_CACHE_TTL_DAYS)
    deleted_extractions = (
        db.query(CachedExtraction)
        .filter(CachedExtraction.extracted_at < extraction_cutoff)
        .delete(synchronize_session=False)
    )

    checkpoint_cutoff = now - timedelta(days=settings.CHECKPOINT_RETENTION_DAYS)
    finished_run_ids = [
        run_id
        for (run_id,) in db.query(ResearchRun.id).filter(
            ResearchRun.status.in_(list(TERMINAL_STATUSES)),
            ResearchRun.created_at < checkpoint_cutoff,
        )
    ]
    deleted_checkpoints = 0
    if finished_run_ids:
        deleted_checkpoints = (
            db.query(ResearchStepCheckpoint)
            .filter(ResearchStepCheckpoint.run_id.in_(finished_run_ids))
            .delete(synchronize_session=False)
        )
    db.commit()
    return {"extractions": deleted_extractions, "checkpoints": deleted_checkpoints}


@celery_app.task(name="research_engine.services.retention.purge_expired_cache")
def purge_expired_cache() -> dict[str, int]:
    db: Session = SessionLocal()
    try:
        deleted = purge_expired(db)
        logger.info(
            "Purged expired cache rows: %d extraction(s), %d checkpoint(s)",
            deleted["extractions"],
            deleted["checkpoints"],
            extra={"step": "retention"},
        )
        return deleted
    except Exception:
        db.rollback()
        logger.exception(
            "Error during purge_expired_cache",
            extra={"step": "retention"},
        )
        raise
    finally:
        db.close()
