# research_engine/services/repository.py
"""
Persistence calls used by the research pipeline.

The orchestrator only talks to `ResearchRepository`; `SqlResearchRepository`
is the SQLAlchemy implementation used by the Celery worker. Writes are
idempotent so a replayed stage never duplicates rows:

- sources / insights / competitors insert only keys not already stored for the run
- run progress only moves forward
- the analysis result is written once
- lead data is upserted
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from ..models.action_item import ActionItem, ActionPriority
from ..models.cached_extraction import CachedExtraction
from ..models.competitor_intel import CompetitorIntel
from ..models.lead import Lead, LeadData
from ..models.research_insight import ResearchInsight
from ..models.research_run import ResearchRun, RunStatus, SearchMethod, ResearchScope
from ..models.research_source import ResearchSource
from ..models.step_checkpoint import ResearchStepCheckpoint
from ..models.user_settings import UserSettings
from ..schemas.pipeline import (
    ActionItemDraft,
    AnalysisResult,
    CachedExtractionEntry,
    CompetitorProfile,
    DiscussionExcerpt,
    ExtractionResult,
    Insight,
    LeadDraft,
    SourceCandidate,
    SourceMetadata,
    SourceType,
)

logger = logging.getLogger(__name__)

MAX_SOURCE_CONTENT_CHARS = 50_000
MAX_EXCERPT_CHARS = 500


class RunSnapshot(BaseModel):
    id: UUID
    user_id: str
    original_prompt: str
    refined_prompt: str
    prompt_hash: str
    search_method: SearchMethod
    scope: ResearchScope
    status: RunStatus
    progress: int
    analysis_result: dict | None = None

    model_config = ConfigDict(from_attributes=True)


class Credentials(BaseModel):
    llm_provider: str = "GEMINI"
    gemini_api_key: str | None = None
    gemini_model: str | None = None
    groq_api_key: str | None = None
    serper_api_key: str | None = None
    jina_api_key: str | None = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def has_llm_key(self) -> bool:
        return bool(self.gemini_api_key or self.groq_api_key)


class ResearchRepository(ABC):
    # runs --------------------------------------------------------------
    @abstractmethod
    def get_run(self, run_id: UUID) -> RunSnapshot | None: ...

    @abstractmethod
    def get_status(self, run_id: UUID) -> RunStatus | None: ...

    @abstractmethod
    def mark_in_progress(self, run_id: UUID) -> None: ...

    @abstractmethod
    def update_progress(self, run_id: UUID, progress: int) -> None: ...

    @abstractmethod
    def mark_completed(self, run_id: UUID) -> None: ...

    @abstractmethod
    def mark_failed(self, run_id: UUID, message: str) -> None: ...

    @abstractmethod
    def mark_cancelled(self, run_id: UUID, message: str = "Cancelled by user") -> bool: ...

    @abstractmethod
    def reset_for_retry(self, run_id: UUID, progress: int) -> None: ...

    @abstractmethod
    def set_refined_prompt(self, run_id: UUID, refined_prompt: str) -> None: ...

    # credentials -------------------------------------------------------
    @abstractmethod
    def get_credentials(self, user_id: str) -> Credentials | None: ...

    # results -----------------------------------------------------------
    @abstractmethod
    def add_sources(self, run_id: UUID, sources: Iterable[SourceCandidate]) -> int: ...

    @abstractmethod
    def list_sources(self, run_id: UUID) -> list[SourceCandidate]: ...

    @abstractmethod
    def add_insights(self, run_id: UUID, insights: Iterable[Insight]) -> int: ...

    @abstractmethod
    def set_analysis_result(self, run_id: UUID, result: AnalysisResult) -> bool: ...

    @abstractmethod
    def add_competitors(self, run_id: UUID, competitors: Iterable[CompetitorProfile]) -> int: ...

    @abstractmethod
    def replace_action_items(self, run_id: UUID, items: list[ActionItemDraft]) -> int: ...

    @abstractmethod
    def save_leads(self, run_id: UUID, leads: list[LeadDraft]) -> int: ...

    @abstractmethod
    def copy_run_results(self, source_run_id: UUID, target_run_id: UUID) -> None: ...

    # caches ------------------------------------------------------------
    @abstractmethod
    def find_completed_run(
        self, prompt_hash: str, since: datetime, exclude_run_id: UUID | None = None
    ) -> UUID | None: ...

    @abstractmethod
    def get_cached_extractions(
        self, urls: list[str], since: datetime
    ) -> dict[str, CachedExtractionEntry]: ...

    @abstractmethod
    def save_extraction(self, result: ExtractionResult, extracted_at: datetime) -> None: ...

    # step checkpoints --------------------------------------------------
    @abstractmethod
    def get_checkpoint(self, run_id: UUID, name: str) -> tuple[bool, Any]: ...

    @abstractmethod
    def save_checkpoint(self, run_id: UUID, name: str, output: Any) -> None: ...

    @abstractmethod
    def clear_checkpoints(self, run_id: UUID) -> None: ...


# ---------------------------------------------------------------------------
# Row <-> model mapping
# ---------------------------------------------------------------------------

def source_to_row(run_id: UUID, source: SourceCandidate) -> ResearchSource:
    content = source.raw_content or ""
    return ResearchSource(
        run_id=run_id,
        url=source.url,
        title=source.title,
        content=content[:MAX_SOURCE_CONTENT_CHARS],
        excerpt=content[:MAX_EXCERPT_CHARS],
        source_type=source.source_type.value,
        provider=source.provider,
        rank_score=source.rank_score,
        meta=source.metadata.model_dump(mode="json"),
        discussion_excerpts=[e.model_dump() for e in source.top_discussion_excerpts],
    )


def row_to_source(row: ResearchSource) -> SourceCandidate:
    return SourceCandidate(
        url=row.url,
        title=row.title or "",
        raw_content=row.content or "",
        source_type=SourceType(row.source_type),
        provider=row.provider,
        metadata=SourceMetadata.model_validate(row.meta or {}),
        top_discussion_excerpts=[
            DiscussionExcerpt.model_validate(e) for e in (row.discussion_excerpts or [])
        ],
        rank_score=row.rank_score or 0.0,
    )


class SqlResearchRepository(ResearchRepository):
    def __init__(self, db: Session) -> None:
        self.db = db

    def _run(self, run_id: UUID) -> ResearchRun | None:
        return self.db.query(ResearchRun).filter(ResearchRun.id == run_id).first()

    # runs --------------------------------------------------------------
    def get_run(self, run_id: UUID) -> RunSnapshot | None:
        run = self._run(run_id)
        return RunSnapshot.model_validate(run) if run else None

    def get_status(self, run_id: UUID) -> RunStatus | None:
        # Expire first: cancellation is written by another process
        self.db.expire_all()
        run = self._run(run_id)
        return run.status if run else None

    def mark_in_progress(self, run_id: UUID) -> None:
        run = self._run(run_id)
        if run and run.status == RunStatus.PENDING:
            run.status = RunStatus.IN_PROGRESS
            self.db.commit()

    def update_progress(self, run_id: UUID, progress: int) -> None:
        run = self._run(run_id)
        if not run:
            return
        progress = max(0, min(100, int(progress)))
        if progress > (run.progress or 0):
            run.progress = progress
            self.db.commit()

    def mark_completed(self, run_id: UUID) -> None:
        run = self._run(run_id)
        if not run or run.status == RunStatus.CANCELLED:
            return
        run.status = RunStatus.COMPLETED
        run.progress = 100
        run.error_message = None
        run.completed_at = datetime.utcnow()
        self.db.commit()

    def mark_failed(self, run_id: UUID, message: str) -> None:
        self.db.rollback()
        run = self._run(run_id)
        if not run:
            return
        run.status = RunStatus.FAILED
        run.error_message = message[:500]
        run.completed_at = datetime.utcnow()
        self.db.commit()

    def mark_cancelled(self, run_id: UUID, message: str = "Cancelled by user") -> bool:
        run = self._run(run_id)
        if not run or run.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED):
            return False
        run.status = RunStatus.CANCELLED
        run.error_message = message
        self.db.commit()
        return True

    def reset_for_retry(self, run_id: UUID, progress: int) -> None:
        run = self._run(run_id)
        if not run:
            return
        self.db.query(ResearchStepCheckpoint).filter(
            ResearchStepCheckpoint.run_id == run_id
        ).delete(synchronize_session=False)
        self.db.query(ResearchInsight).filter(ResearchInsight.run_id == run_id).delete(
            synchronize_session=False
        )
        self.db.query(CompetitorIntel).filter(CompetitorIntel.run_id == run_id).delete(
            synchronize_session=False
        )
        self.db.query(ActionItem).filter(ActionItem.run_id == run_id).delete(
            synchronize_session=False
        )
        run.status = RunStatus.PENDING
        run.progress = progress
        run.analysis_result = None
        run.error_message = None
        run.completed_at = None
        self.db.commit()

    def set_refined_prompt(self, run_id: UUID, refined_prompt: str) -> None:
        run = self._run(run_id)
        if not run:
            return
        run.refined_prompt = refined_prompt
        self.db.commit()

    # credentials -------------------------------------------------------
    def get_credentials(self, user_id: str) -> Credentials | None:
        # Always read through to the database so a rotated key is picked up
        self.db.expire_all()
        row = self.db.query(UserSettings).filter(UserSettings.user_id == user_id).first()
        return Credentials.model_validate(row) if row else None

    # results -----------------------------------------------------------
    def add_sources(self, run_id: UUID, sources: Iterable[SourceCandidate]) -> int:
        existing = {
            url
            for (url,) in self.db.query(ResearchSource.url).filter(ResearchSource.run_id == run_id)
        }
        added = 0
        for source in sources:
            if source.url in existing:
                continue
            self.db.add(source_to_row(run_id, source))
            existing.add(source.url)
            added += 1
        self.db.commit()
        return added

    def list_sources(self, run_id: UUID) -> list[SourceCandidate]:
        rows = (
            self.db.query(ResearchSource)
            .filter(ResearchSource.run_id == run_id)
            .order_by(ResearchSource.id.asc())
            .all()
        )
        return [row_to_source(r) for r in rows]

    def add_insights(self, run_id: UUID, insights: Iterable[Insight]) -> int:
        existing = {
            title
            for (title,) in self.db.query(ResearchInsight.title).filter(ResearchInsight.run_id == run_id)
        }
        position = len(existing)
        added = 0
        for insight in insights:
            if insight.title in existing:
                continue
            self.db.add(
                ResearchInsight(
                    run_id=run_id,
                    title=insight.title,
                    content=insight.content,
                    category=insight.category,
                    confidence=insight.confidence,
                    position=position,
                )
            )
            existing.add(insight.title)
            position += 1
            added += 1
        self.db.commit()
        return added

    def set_analysis_result(self, run_id: UUID, result: AnalysisResult) -> bool:
        run = self._run(run_id)
        if not run or run.analysis_result is not None:
            return False
        run.analysis_result = result.model_dump(mode="json")
        self.db.commit()
        return True

    def add_competitors(self, run_id: UUID, competitors: Iterable[CompetitorProfile]) -> int:
        existing = {
            name
            for (name,) in self.db.query(CompetitorIntel.name).filter(CompetitorIntel.run_id == run_id)
        }
        added = 0
        for c in competitors:
            if c.name in existing:
                continue
            self.db.add(
                CompetitorIntel(
                    run_id=run_id,
                    name=c.name,
                    mentions=c.mentions,
                    sentiment=c.sentiment,
                    strengths=c.strengths,
                    weaknesses=c.weaknesses,
                    pricing=c.pricing,
                    market_position=c.market_position,
                )
            )
            existing.add(c.name)
            added += 1
        self.db.commit()
        return added

    def replace_action_items(self, run_id: UUID, items: list[ActionItemDraft]) -> int:
        self.db.query(ActionItem).filter(ActionItem.run_id == run_id).delete(
            synchronize_session=False
        )
        for position, item in enumerate(items):
            self.db.add(
                ActionItem(
                    run_id=run_id,
                    description=item.description,
                    priority=ActionPriority(item.priority),
                    effort=item.effort,
                    position=position,
                )
            )
        self.db.commit()
        return len(items)

    def save_leads(self, run_id: UUID, leads: list[LeadDraft]) -> int:
        lead_data = self.db.query(LeadData).filter(LeadData.run_id == run_id).first()
        if lead_data is None:
            lead_data = LeadData(run_id=run_id, total_found=0)
            self.db.add(lead_data)
            self.db.flush()
        lead_data.total_found = (lead_data.total_found or 0) + len(leads)
        for lead in leads:
            self.db.add(
                Lead(
                    lead_data_id=lead_data.id,
                    name=lead.name,
                    company=lead.company,
                    email=lead.email,
                    phone=lead.phone,
                    website=lead.website,
                    industry=lead.industry,
                    location=lead.location,
                    pain_points=lead.pain_points,
                    suggested_dm=lead.suggested_dm,
                    suggested_email=lead.suggested_email,
                )
            )
        self.db.commit()
        return lead_data.total_found

    def copy_run_results(self, source_run_id: UUID, target_run_id: UUID) -> None:
        source_run = self._run(source_run_id)
        target_run = self._run(target_run_id)
        if not source_run or not target_run:
            return

        self.add_sources(target_run_id, self.list_sources(source_run_id))

        insights = (
            self.db.query(ResearchInsight)
            .filter(ResearchInsight.run_id == source_run_id)
            .order_by(ResearchInsight.position.asc())
            .all()
        )
        self.add_insights(
            target_run_id,
            [
                Insight(title=i.title, content=i.content, category=i.category, confidence=i.confidence)
                for i in insights
            ],
        )

        actions = (
            self.db.query(ActionItem)
            .filter(ActionItem.run_id == source_run_id)
            .order_by(ActionItem.position.asc())
            .all()
        )
        self.replace_action_items(
            target_run_id,
            [
                ActionItemDraft(description=a.description, priority=a.priority.value, effort=a.effort)
                for a in actions
            ],
        )

        if source_run.analysis_result is not None:
            self.set_analysis_result(
                target_run_id, AnalysisResult.model_validate(source_run.analysis_result)
            )

    # caches ------------------------------------------------------------
    def find_completed_run(
        self, prompt_hash: str, since: datetime, exclude_run_id: UUID | None = None
    ) -> UUID | None:
        q = self.db.query(ResearchRun.id).filter(
            ResearchRun.prompt_hash == prompt_hash,
            ResearchRun.status == RunStatus.COMPLETED,
            ResearchRun.completed_at >= since,
        )
        if exclude_run_id is not None:
            q = q.filter(ResearchRun.id != exclude_run_id)
        row = q.order_by(ResearchRun.completed_at.desc()).first()
        return row[0] if row else None

    def get_cached_extractions(
        self, urls: list[str], since: datetime
    ) -> dict[str, CachedExtractionEntry]:
        if not urls:
            return {}
        rows = (
            self.db.query(CachedExtraction)
            .filter(
                CachedExtraction.url.in_(urls),
                CachedExtraction.extracted_at >= since,
                CachedExtraction.content != "",
            )
            .all()
        )
        return {
            r.url: CachedExtractionEntry(
                url=r.url,
                title=r.title,
                content=r.content,
                excerpt=r.excerpt,
                extracted_at=r.extracted_at,
            )
            for r in rows
        }

    def save_extraction(self, result: ExtractionResult, extracted_at: datetime) -> None:
        # merge on the url primary key: last write wins
        try:
            self.db.merge(
                CachedExtraction(
                    url=result.url,
                    title=result.title,
                    content=result.content,
                    excerpt=result.excerpt,
                    published_at=result.published_at,
                    extracted_at=extracted_at,
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # step checkpoints --------------------------------------------------
    def get_checkpoint(self, run_id: UUID, name: str) -> tuple[bool, Any]:
        row = (
            self.db.query(ResearchStepCheckpoint)
            .filter(ResearchStepCheckpoint.run_id == run_id, ResearchStepCheckpoint.name == name)
            .first()
        )
        return (True, row.output) if row else (False, None)

    def save_checkpoint(self, run_id: UUID, name: str, output: Any) -> None:
        row = (
            self.db.query(ResearchStepCheckpoint)
            .filter(ResearchStepCheckpoint.run_id == run_id, ResearchStepCheckpoint.name == name)
            .first()
        )
        if row is None:
            self.db.add(ResearchStepCheckpoint(run_id=run_id, name=name, output=output))
        else:
            row.output = output
        self.db.commit()

    def clear_checkpoints(self, run_id: UUID) -> None:
        self.db.query(ResearchStepCheckpoint).filter(
            ResearchStepCheckpoint.run_id == run_id
        ).delete(synchronize_session=False)
        self.db.commit()
