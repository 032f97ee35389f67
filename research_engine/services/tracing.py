# research_engine/services/tracing.py
from __future__ import annotations

from typing import Any, Protocol
from uuid import UUID
import logging
from datetime import datetime

from ..core.db import SessionLocal
from ..models.research_trace_event import ResearchTraceEvent

logger = logging.getLogger(__name__)


class Tracer(Protocol):
    def __call__(
        self,
        run_id: UUID,
        *,
        phase: str,
        step: str | None = None,
        label: str,
        detail: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None: ...


def trace_run_step(
    run_id: UUID,
    *,
    phase: str,
    step: str | None = None,
    label: str,
    detail: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """
    Best-effort, fire-and-forget trace writer.
    Failure must NEVER break the research run.
    """
    db = SessionLocal()
    try:
        evt = ResearchTraceEvent(
            run_id=run_id,
            phase=phase,
            step=step,
            label=label,
            detail=detail,
            meta=meta or {},
            created_at=datetime.utcnow(),
        )
        db.add(evt)
        db.commit()
    except Exception:
        db.rollback()
        logger.warning(
            "Failed to write research trace event",
            exc_info=True,
            extra={"run_id": str(run_id), "step": step},
        )
    finally:
        db.close()


def null_tracer(run_id: UUID, **kwargs: Any) -> None:
    return None
