from uuid import UUID
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..core.celery_app import celery_app
from ..core.db import get_db
from ..models.action_item import ActionItem
from ..models.lead import Lead, LeadData
from ..models.research_insight import ResearchInsight
from ..models.research_run import ResearchRun, RunStatus, TERMINAL_STATUSES
from ..models.research_source import ResearchSource
from ..models.research_trace_event import ResearchTraceEvent
from ..schemas.research import (
    ActionItemOut,
    LeadOut,
    ResearchInsightOut,
    ResearchRequest,
    ResearchRunOut,
    ResearchTraceEventOut,
    RetryRequest,
    SourceOut,
)
from ..services.llm import LLMError
from ..services.orchestrator import select_llm
from ..services.repository import SqlResearchRepository
from ..services.retrieval_cache import generate_prompt_hash

router = APIRouter(tags=["research"])

logger = logging.getLogger(__name__)

RUN_TASK = "research_engine.services.orchestrator.run_research_job"
LEADS_TASK = "research_engine.services.orchestrator.generate_leads_job"

RETRY_PROGRESS_SKIP_SEARCH = 30
RETRY_PROGRESS_FULL = 5


def _get_run_or_404(db: Session, run_id: UUID) -> ResearchRun:
    run = db.query(ResearchRun).filter(ResearchRun.id == run_id).first()
    if not run:
        raise HTTPException(status_code=404, detail="Research run not found")
    return run


@router.post("/research", response_model=ResearchRunOut, status_code=202)
def create_research_run(
    payload: ResearchRequest,
    db: Session = Depends(get_db),
):
    run = ResearchRun(
        user_id=payload.user_id,
        original_prompt=payload.prompt,
        refined_prompt=payload.refined_prompt or payload.prompt,
        prompt_hash=generate_prompt_hash(payload.user_id, payload.prompt),
        search_method=payload.search_method,
        scope=payload.scope,
        status=RunStatus.PENDING,
        progress=0,
    )
    db.add(run)
    db.commit()
    db.refresh(run)

    logger.info(
        "Research run created",
        extra={"run_id": str(run.id), "user_id": run.user_id, "step": "run_created"},
    )

    celery_app.send_task(RUN_TASK, args=[str(run.id), run.user_id], queue="research")
    return run


@router.get("/research/{run_id}")
def get_research_run(run_id: UUID, db: Session = Depends(get_db)):
    run = _get_run_or_404(db, run_id)

    insights = (
        db.query(ResearchInsight)
        .filter(ResearchInsight.run_id == run_id)
        .order_by(ResearchInsight.position.asc(), ResearchInsight.id.asc())
        .all()
    )
    actions = (
        db.query(ActionItem)
        .filter(ActionItem.run_id == run_id)
        .order_by(ActionItem.position.asc(), ActionItem.id.asc())
        .all()
    )
    lead_data = db.query(LeadData).filter(LeadData.run_id == run_id).first()
    leads = (
        db.query(Lead).filter(Lead.lead_data_id == lead_data.id).order_by(Lead.id.asc()).all()
        if lead_data
        else []
    )
    trace_events = (
        db.query(ResearchTraceEvent)
        .filter(ResearchTraceEvent.run_id == run_id)
        .order_by(ResearchTraceEvent.created_at.asc(), ResearchTraceEvent.id.asc())
        .all()
    )

    return {
        "run": ResearchRunOut.model_validate(run).model_dump(mode="json"),
        "insights": [ResearchInsightOut.model_validate(i).model_dump() for i in insights],
        "action_items": [ActionItemOut.model_validate(a).model_dump(mode="json") for a in actions],
        "leads": {
            "total_found": lead_data.total_found if lead_data else 0,
            "items": [LeadOut.model_validate(lead).model_dump() for lead in leads],
        },
        "trace": [ResearchTraceEventOut.model_validate(e).model_dump(mode="json") for e in trace_events],
    }


@router.get("/research/{run_id}/sources", response_model=list[SourceOut])
def list_run_sources(run_id: UUID, db: Session = Depends(get_db)):
    _get_run_or_404(db, run_id)
    sources = (
        db.query(ResearchSource)
        .filter(ResearchSource.run_id == run_id)
        .order_by(ResearchSource.rank_score.desc(), ResearchSource.id.asc())
        .all()
    )
    return [SourceOut.model_validate(src) for src in sources]


@router.post("/research/{run_id}/retry", response_model=ResearchRunOut, status_code=202)
def retry_research_run(
    run_id: UUID,
    payload: RetryRequest,
    db: Session = Depends(get_db),
):
    """
    Re-run a finished run. With skip_search the stored sources are analyzed
    again; otherwise the whole pipeline runs from the top.
    """
    run = _get_run_or_404(db, run_id)
    if run.status not in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail="Research run is still in progress.")
    if payload.skip_search:
        has_sources = db.query(ResearchSource.id).filter(ResearchSource.run_id == run_id).first()
        if not has_sources:
            raise HTTPException(
                status_code=400,
                detail="No existing sources found to retry analysis with.",
            )

    progress = RETRY_PROGRESS_SKIP_SEARCH if payload.skip_search else RETRY_PROGRESS_FULL
    SqlResearchRepository(db).reset_for_retry(run_id, progress)
    db.refresh(run)

    logger.info(
        "Research run queued for retry",
        extra={"run_id": str(run_id), "user_id": run.user_id, "step": "retry"},
    )
    celery_app.send_task(
        RUN_TASK,
        args=[str(run.id), run.user_id, payload.model_dump()],
        queue="research",
    )
    return run


@router.post("/research/{run_id}/refine", response_model=ResearchRunOut)
def refine_research_prompt(run_id: UUID, db: Session = Depends(get_db)):
    """
    Sharpen the run's original prompt with the user's model and store it as the
    refined prompt. The prompt hash stays keyed on the original prompt.
    """
    run = _get_run_or_404(db, run_id)
    if run.status == RunStatus.IN_PROGRESS:
        raise HTTPException(status_code=409, detail="Research run is still in progress.")

    repo = SqlResearchRepository(db)
    creds = repo.get_credentials(run.user_id)
    if not creds or not creds.has_llm_key:
        raise HTTPException(status_code=400, detail="No LLM API key configured for this user.")

    try:
        llm = select_llm(creds)
        refined = llm.refine_prompt(run.original_prompt, run.scope.value)
    except LLMError as e:
        logger.warning(
            "Prompt refinement failed: %s",
            e,
            extra={"run_id": str(run_id), "user_id": run.user_id, "step": "refine"},
        )
        raise HTTPException(status_code=502, detail=f"Prompt refinement failed: {e}")

    repo.set_refined_prompt(run_id, refined)
    db.refresh(run)
    logger.info(
        "Research prompt refined",
        extra={"run_id": str(run_id), "user_id": run.user_id, "step": "refine"},
    )
    return run


@router.post("/research/{run_id}/cancel", response_model=ResearchRunOut)
def cancel_research_run(run_id: UUID, db: Session = Depends(get_db)):
    run = _get_run_or_404(db, run_id)
    if not SqlResearchRepository(db).mark_cancelled(run_id):
        raise HTTPException(
            status_code=409,
            detail=f"Research run is already {run.status.value} and cannot be cancelled.",
        )
    db.refresh(run)
    logger.info(
        "Research run cancelled",
        extra={"run_id": str(run_id), "user_id": run.user_id, "step": "cancel"},
    )
    return run


@router.post("/research/{run_id}/leads", status_code=202)
def generate_run_leads(run_id: UUID, db: Session = Depends(get_db)):
    run = _get_run_or_404(db, run_id)
    if run.status != RunStatus.COMPLETED or not run.analysis_result:
        raise HTTPException(
            status_code=400,
            detail="Research analysis not found. Please run analysis first.",
        )
    celery_app.send_task(LEADS_TASK, args=[str(run.id), run.user_id], queue="research")
    return {"run_id": str(run.id), "queued": True}
