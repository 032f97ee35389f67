# research_engine/services/orchestrator.py
"""
Research pipeline orchestrator.

    fetch-research -> fetch-user -> check-query-cache
      -> fetch-existing-sources | discover-sources | paid-search | deep-research-*
      -> save-sources -> analyze-findings -> generate-actions
      -> [generate-leads] -> finalize

Every stage runs through the durable StepExecutor, so a redelivered task
replays finished stages from their checkpoints and resumes at the first
unfinished one. Credentials are re-read inside each stage and never
checkpointed. Cancellation is checked before each stage.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from ..core.celery_app import celery_app
from ..core.config import get_settings
from ..core.db import SessionLocal
from ..models.research_run import (
    TERMINAL_STATUSES,
    ResearchScope,
    RunStatus,
    SearchMethod,
)
from ..schemas.pipeline import (
    AnalysisResult,
    DeepAnalysis,
    Insight,
    Opportunity,
    SourceCandidate,
)
from .actions import generate_action_items, generate_leads
from .analyzer import DeepAnalyzer, consolidate_sources
from .deep_research import (
    STATUS_COMPLETED,
    DeepResearchClient,
    DeepResearchError,
    Interaction,
    interaction_to_sources,
)
from .discovery import discover_sources
from .extraction import ContentExtractor, Extractor, JinaReaderExtractor, extract_with_cache, filter_urls
from .gap_loop import run_gap_loop
from .llm import (
    PROVIDER_GEMINI,
    PROVIDER_GROQ,
    LLMClient,
    LLMError,
    get_llm_client_with_fallback,
    other_provider,
)
from .providers import HackerNewsProvider, ProviderRunner, RedditProvider, SerperWebProvider, SourceProvider
from .repository import Credentials, ResearchRepository, RunSnapshot, SqlResearchRepository
from .retrieval_cache import RetrievalCache
from .steps import NonRetriableError, StepExecutor
from .tracing import Tracer, trace_run_step
from .validator import InsightValidator

logger = logging.getLogger(__name__)

settings = get_settings()

PAID_SEARCH_RESULTS = 10

PAIN_POINT_CONFIDENCE_VALIDATED = 0.9
PAIN_POINT_CONFIDENCE_UNVALIDATED = 0.6
MARKET_INSIGHT_CONFIDENCE = 0.8
MAX_INSIGHT_TITLE_CHARS = 200


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class MissingCredentialsError(NonRetriableError):
    """The user has not configured a key this run needs."""


class NoSourcesError(NonRetriableError):
    """Nothing to analyze."""


class RunNotFoundError(NonRetriableError):
    """Unknown run id, or the run belongs to another user."""


class RunCancelled(Exception):
    """Raised between stages once the run has been cancelled from outside."""


class RetryOptions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    skip_search: bool = False
    provider: Optional[str] = None
    model: Optional[str] = None


# ---------------------------------------------------------------------------
# Collaborator factories
# ---------------------------------------------------------------------------

def select_llm(credentials: Credentials, retry: Optional[RetryOptions] = None) -> LLMClient:
    """
    Primary backend comes from the retry override, else the user's preference.
    The other backend is the fallback.
    """
    override = (retry.provider or "").upper() if retry else ""
    primary = override or (credentials.llm_provider or PROVIDER_GEMINI).upper()
    if primary not in (PROVIDER_GEMINI, PROVIDER_GROQ):
        primary = PROVIDER_GEMINI
    fallback = other_provider(primary)

    keys = {PROVIDER_GEMINI: credentials.gemini_api_key, PROVIDER_GROQ: credentials.groq_api_key}
    if primary == PROVIDER_GEMINI:
        model = (retry.model if override == PROVIDER_GEMINI else None) or credentials.gemini_model
    else:
        model = retry.model if override == PROVIDER_GROQ else None

    client, _ = get_llm_client_with_fallback(primary, keys[primary], fallback, keys[fallback], model)
    return client


def default_providers(credentials: Credentials) -> List[SourceProvider]:
    providers: List[SourceProvider] = [RedditProvider(), HackerNewsProvider()]
    if credentials.serper_api_key:
        providers.append(SerperWebProvider(credentials.serper_api_key))
    return providers


# ---------------------------------------------------------------------------
# Analysis -> persisted result
# ---------------------------------------------------------------------------

def build_analysis_result(analysis: DeepAnalysis) -> AnalysisResult:
    insights: List[Insight] = []
    for p in analysis.pain_points:
        body = [p.pain]
        if p.willingness_to_pay:
            body.append(f"Willingness to pay: {p.willingness_to_pay}")
        if p.current_solutions:
            body.append("Current solutions: " + "; ".join(p.current_solutions))
        if p.quotes:
            body.append("Quotes:\n" + "\n".join(f'- "{q}"' for q in p.quotes))
        insights.append(
            Insight(
                title=p.pain[:MAX_INSIGHT_TITLE_CHARS],
                content="\n\n".join(body),
                category="pain_point",
                confidence=(
                    PAIN_POINT_CONFIDENCE_VALIDATED if p.validated else PAIN_POINT_CONFIDENCE_UNVALIDATED
                ),
            )
        )

    for o in analysis.opportunities:
        if not o.validated:
            continue
        body = [o.description]
        if o.entry_strategy:
            body.append("Entry strategy:\n" + "\n".join(f"- {s}" for s in o.entry_strategy))
        if o.revenue_estimate:
            body.append(f"Revenue estimate: {o.revenue_estimate}")
        insights.append(
            Insight(
                title=o.title[:MAX_INSIGHT_TITLE_CHARS],
                content="\n\n".join(b for b in body if b),
                category="opportunity",
                confidence=o.validation_score / 10.0,
            )
        )

    for m in analysis.market_insights:
        content = m.insight
        if m.evidence:
            content += "\n\nEvidence:\n" + "\n".join(f"- {e}" for e in m.evidence)
        insights.append(
            Insight(
                title=m.insight[:MAX_INSIGHT_TITLE_CHARS],
                content=content,
                category=m.type,
                confidence=MARKET_INSIGHT_CONFIDENCE,
            )
        )

    trends = [m.insight for m in analysis.market_insights if m.type in ("trend", "shift")]
    return AnalysisResult(insights=insights, summary=analysis.summary, trends=trends)


def minimal_result(sources: List[SourceCandidate]) -> AnalysisResult:
    top = sorted(sources, key=lambda s: s.rank_score, reverse=True)[:5]
    return AnalysisResult(
        insights=[
            Insight(
                title=(s.title or s.url)[:MAX_INSIGHT_TITLE_CHARS],
                content=s.raw_content[:500] or s.url,
                category="source",
                confidence=0.3,
            )
            for s in top
        ],
        summary=f"Automated analysis was unavailable; {len(sources)} source(s) were collected for manual review.",
        trends=[],
    )


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class ResearchPipeline:
    def __init__(
        self,
        repository: ResearchRepository,
        run_id: UUID,
        user_id: str,
        retry_options: Optional[Dict[str, Any]] = None,
        *,
        executor: Optional[StepExecutor] = None,
        tracer: Tracer = trace_run_step,
        llm_selector: Callable[[Credentials, Optional[RetryOptions]], LLMClient] = select_llm,
        provider_factory: Callable[[Credentials], List[SourceProvider]] = default_providers,
        web_provider_factory: Callable[[str], SourceProvider] = SerperWebProvider,
        content_extractor: Optional[Extractor] = None,
        reader_factory: Callable[[Optional[str]], Extractor] = JinaReaderExtractor,
        deep_research_factory: Callable[[str], DeepResearchClient] = DeepResearchClient,
        runner: Optional[ProviderRunner] = None,
        cache: Optional[RetrievalCache] = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.run_id = run_id
        self.user_id = user_id
        self.retry = RetryOptions.model_validate(retry_options) if retry_options else None
        self.executor = executor or StepExecutor(repository, run_id, sleeper=sleeper)
        self.tracer = tracer
        self.llm_selector = llm_selector
        self.provider_factory = provider_factory
        self.web_provider_factory = web_provider_factory
        self.content_extractor = content_extractor or ContentExtractor()
        self.reader_factory = reader_factory
        self.deep_research_factory = deep_research_factory
        self.runner = runner or ProviderRunner(tracer=tracer)
        self.cache = cache or RetrievalCache(repository)
        self.sleeper = sleeper

    # helpers -----------------------------------------------------------

    def _log_extra(self, step: str) -> Dict[str, Any]:
        return {"run_id": str(self.run_id), "user_id": self.user_id, "step": step}

    def _trace(self, phase: str, step: str, label: str, detail: str | None = None, meta: dict | None = None) -> None:
        self.tracer(self.run_id, phase=phase, step=step, label=label, detail=detail, meta=meta)

    def _ensure_active(self) -> None:
        if self.repository.get_status(self.run_id) == RunStatus.CANCELLED:
            raise RunCancelled()

    def _credentials(self, *, need_llm: bool = True) -> Credentials:
        creds = self.repository.get_credentials(self.user_id)
        if creds is None:
            raise MissingCredentialsError("User settings not found. Please configure your API keys.")
        if need_llm and not creds.has_llm_key:
            raise MissingCredentialsError("No LLM API keys found. Please check your settings.")
        return creds

    def _llm(self) -> LLMClient:
        return self.llm_selector(self._credentials(), self.retry)

    # stages ------------------------------------------------------------

    def _fetch_research(self) -> RunSnapshot:
        def fetch() -> dict:
            run = self.repository.get_run(self.run_id)
            if run is None or run.user_id != self.user_id:
                raise RunNotFoundError(f"Research run {self.run_id} not found")
            return run.model_dump(mode="json")

        return RunSnapshot.model_validate(self.executor.run("fetch-research", fetch))

    def _fetch_user(self, run: RunSnapshot) -> None:
        def fetch() -> dict:
            creds = self._credentials()
            if run.search_method == SearchMethod.PAID_SEARCH and not creds.serper_api_key:
                raise MissingCredentialsError("Serper API key not configured. Please add it in Settings.")
            if run.search_method == SearchMethod.DEEP_RESEARCH and not creds.gemini_api_key:
                raise MissingCredentialsError("Gemini API key required for Deep Research.")
            # Presence flags only; keys are never checkpointed
            return {
                "llm_provider": creds.llm_provider,
                "has_serper": bool(creds.serper_api_key),
            }

        self.executor.run("fetch-user", fetch)

    def _check_query_cache(self, run: RunSnapshot) -> Optional[UUID]:
        def check() -> Optional[str]:
            hit = self.cache.find_cached_run(self.user_id, run.original_prompt, exclude_run_id=self.run_id)
            return str(hit) if hit else None

        cached = self.executor.run("check-query-cache", check)
        return UUID(cached) if cached else None

    def _reuse_cached_run(self, cached_run_id: UUID) -> None:
        def copy() -> str:
            self.repository.copy_run_results(cached_run_id, self.run_id)
            return str(cached_run_id)

        self.executor.run("reuse-cached-run", copy)
        self._trace(
            "CACHE",
            "query-cache:hit",
            "Reused a recent identical research run",
            detail=f"Results copied from run {cached_run_id}.",
        )

    def _existing_sources(self) -> List[SourceCandidate]:
        def fetch() -> list:
            sources = self.repository.list_sources(self.run_id)
            if not sources:
                raise NoSourcesError("No existing sources found to retry analysis with.")
            return sources

        return [SourceCandidate.model_validate(s) for s in self.executor.run("fetch-existing-sources", fetch)]

    def _discover_sources(self, run: RunSnapshot) -> List[SourceCandidate]:
        goal = run.refined_prompt or run.original_prompt

        def discover() -> list:
            creds = self._credentials()
            llm = self.llm_selector(creds, self.retry)
            discovery = discover_sources(
                llm,
                goal,
                providers=self.provider_factory(creds),
                cache=self.cache,
                extractor=self.content_extractor,
                runner=self.runner,
                run_id=self.run_id,
            )
            gap_provider = (
                self.web_provider_factory(creds.serper_api_key)
                if creds.serper_api_key
                else HackerNewsProvider()
            )
            loop = run_gap_loop(
                llm,
                goal,
                provider=gap_provider,
                cache=self.cache,
                extractor=self.content_extractor,
                runner=self.runner,
                run_id=self.run_id,
            )
            self._trace(
                "DISCOVERY",
                "discover-sources:done",
                "Sources discovered",
                detail=f"{len(discovery.sources)} ranked source(s), {loop.iterations} retrieval iteration(s).",
                meta={"queries": discovery.queries + loop.queries},
            )
            return discovery.sources + loop.sources

        return [SourceCandidate.model_validate(s) for s in self.executor.run("discover-sources", discover)]

    def _paid_search(self, run: RunSnapshot) -> List[SourceCandidate]:
        goal = run.refined_prompt or run.original_prompt

        def search() -> list:
            creds = self._credentials(need_llm=False)
            if not creds.serper_api_key:
                raise MissingCredentialsError("Serper API key not configured. Please add it in Settings.")
            provider = self.web_provider_factory(creds.serper_api_key)
            results = self.runner.search_all(
                goal,
                [provider],
                options={provider.name: {"num_results": PAID_SEARCH_RESULTS}},
                run_id=self.run_id,
            ).get(provider.name, [])
            urls = filter_urls([r.url for r in results])
            extracted = extract_with_cache(urls, self.cache, self.reader_factory(creds.jina_api_key))
            if extracted:
                by_url = {r.url: r for r in results}
                return [
                    SourceCandidate(
                        url=e.url,
                        title=e.title or (by_url[e.url].title if e.url in by_url else ""),
                        raw_content=e.content,
                        source_type=provider.source_type,
                        provider=provider.name,
                    )
                    for e in extracted
                ]
            logger.warning("Nothing extracted; using search snippets", extra=self._log_extra("paid-search"))
            return results

        return [SourceCandidate.model_validate(s) for s in self.executor.run("paid-search", search)]

    def _deep_research(self, run: RunSnapshot) -> List[SourceCandidate]:
        goal = run.refined_prompt or run.original_prompt

        def client() -> DeepResearchClient:
            creds = self._credentials(need_llm=False)
            if not creds.gemini_api_key:
                raise MissingCredentialsError("Gemini API key required for Deep Research.")
            return self.deep_research_factory(creds.gemini_api_key)

        status = Interaction.model_validate(
            self.executor.run("deep-research-create", lambda: client().create_task(goal))
        )
        interaction_id = status.id
        attempts = 0
        while not status.finished and attempts < settings.DEEP_RESEARCH_MAX_POLLS:
            self._ensure_active()
            self.executor.sleep(f"poll-wait-{attempts}", settings.DEEP_RESEARCH_POLL_INTERVAL_SECONDS)
            status = Interaction.model_validate(
                self.executor.run(
                    f"check-deep-status-{attempts}",
                    lambda: client().get_status(interaction_id),
                )
            )
            attempts += 1
            self.repository.update_progress(self.run_id, min(10 + attempts, 60))

        if status.status != STATUS_COMPLETED:
            if status.finished:
                raise DeepResearchError(f"Deep Research Failed: {status.error_message}")
            raise DeepResearchError(
                f"Deep Research did not finish after {settings.DEEP_RESEARCH_MAX_POLLS} status checks"
            )

        return [
            SourceCandidate.model_validate(s)
            for s in self.executor.run("deep-research-results", lambda: interaction_to_sources(status))
        ]

    def _save_sources(self, sources: List[SourceCandidate]) -> None:
        def save() -> dict:
            added = self.repository.add_sources(self.run_id, sources)
            self.repository.update_progress(self.run_id, 30)
            return {"added": added, "total": len(sources)}

        saved = self.executor.run("save-sources", save)
        self._trace(
            "SOURCES",
            "save-sources:done",
            "Sources saved",
            detail=f"{saved['added']} new source(s) stored.",
            meta=saved,
        )

    def _analyze(self, run: RunSnapshot, sources: List[SourceCandidate]) -> tuple[AnalysisResult, List[Opportunity]]:
        goal = run.refined_prompt or run.original_prompt

        def analyze() -> dict:
            self.repository.update_progress(self.run_id, 60)
            llm = self._llm()
            analysis = DeepAnalyzer(llm, sleeper=self.sleeper).analyze(sources, goal)
            analysis = InsightValidator(llm, sleeper=self.sleeper).validate(analysis)
            result = build_analysis_result(analysis)

            # The pain-point pass always yields at least a placeholder, so this
            # runs only when the analyzer hands back an empty analysis
            if not result.insights:
                try:
                    result = llm.analyze_content(goal, consolidate_sources(sources))
                except LLMError as e:
                    logger.warning("Content analysis failed: %s", e, extra=self._log_extra("analyze-findings"))
                    result = AnalysisResult()
                if not result.insights:
                    result = minimal_result(sources)

            self.repository.add_insights(self.run_id, result.insights)
            self.repository.add_competitors(self.run_id, analysis.competitors)
            self.repository.set_analysis_result(self.run_id, result)
            self.repository.update_progress(self.run_id, 70)
            return {
                "result": result.model_dump(mode="json"),
                "opportunities": [o.model_dump(mode="json") for o in analysis.opportunities],
            }

        data = self.executor.run("analyze-findings", analyze)
        result = AnalysisResult.model_validate(data["result"])
        self._trace(
            "ANALYSIS",
            "analyze-findings:done",
            "Analysis complete",
            detail=f"{len(result.insights)} insight(s) recorded.",
        )
        return result, [Opportunity.model_validate(o) for o in data["opportunities"]]

    def _generate_actions(self, run: RunSnapshot, result: AnalysisResult, opportunities: List[Opportunity]) -> None:
        goal = run.refined_prompt or run.original_prompt

        def generate() -> int:
            items = generate_action_items(self._llm(), goal, result, opportunities)
            count = self.repository.replace_action_items(self.run_id, items)
            self.repository.update_progress(self.run_id, 90)
            return count

        self.executor.run("generate-actions", generate)

    def _generate_leads(self, run: RunSnapshot, result: AnalysisResult) -> None:
        goal = run.refined_prompt or run.original_prompt

        def generate() -> dict:
            leads = generate_leads(self._llm(), goal, result)
            total = self.repository.save_leads(self.run_id, leads)
            return {"count": len(leads), "total_found": total}

        self.executor.run("generate-leads", generate)

    def _finalize(self) -> None:
        self.executor.run("finalize", lambda: self.repository.mark_completed(self.run_id))
        self._trace("DONE", "run:completed", "Research run completed")

    # entry -------------------------------------------------------------

    def run(self) -> None:
        run = self._fetch_research()
        status = self.repository.get_status(self.run_id)
        if status in TERMINAL_STATUSES:
            logger.info("Run already %s; nothing to do", status.value, extra=self._log_extra("fetch-research"))
            return

        self.repository.mark_in_progress(self.run_id)
        self.repository.update_progress(self.run_id, 5)
        self._trace("INIT", "run:started", "Research run picked up by a worker")

        self._ensure_active()
        self._fetch_user(run)

        skip_search = bool(self.retry and self.retry.skip_search)
        if self.retry is None:
            self._ensure_active()
            cached_run_id = self._check_query_cache(run)
            if cached_run_id:
                self._reuse_cached_run(cached_run_id)
                self._ensure_active()
                self._finalize()
                return

        self._ensure_active()
        if skip_search:
            sources = self._existing_sources()
        elif run.search_method == SearchMethod.DEEP_RESEARCH:
            sources = self._deep_research(run)
        elif run.search_method == SearchMethod.PAID_SEARCH:
            sources = self._paid_search(run)
        else:
            sources = self._discover_sources(run)

        if not sources:
            raise NoSourcesError("No sources found to analyze")

        self._ensure_active()
        self._save_sources(sources)

        self._ensure_active()
        result, opportunities = self._analyze(run, sources)

        self._ensure_active()
        self._generate_actions(run, result, opportunities)

        if run.scope == ResearchScope.LEAD_GENERATION:
            self._ensure_active()
            self._generate_leads(run, result)

        self._ensure_active()
        self._finalize()


def run_research(
    repository: ResearchRepository,
    run_id: UUID,
    user_id: str,
    retry_options: Optional[Dict[str, Any]] = None,
    **pipeline_kwargs: Any,
) -> None:
    """
    Execute (or resume) one research run.

    The only observable result is the state of the run record: COMPLETED,
    FAILED with the error message, or left CANCELLED.
    """
    pipeline = ResearchPipeline(repository, run_id, user_id, retry_options, **pipeline_kwargs)
    try:
        pipeline.run()
    except RunCancelled:
        logger.info("Research run cancelled; stopping", extra=pipeline._log_extra("cancelled"))
    except Exception as e:
        if repository.get_status(run_id) == RunStatus.CANCELLED:
            logger.info("Research run cancelled during a stage", extra=pipeline._log_extra("cancelled"))
            return
        repository.mark_failed(run_id, str(e))
        pipeline._trace("FAILED", "run:failed", "Research run failed", detail=str(e)[:500])
        logger.exception("Research run failed", extra=pipeline._log_extra("failed"))
        raise


def generate_leads_for_run(
    repository: ResearchRepository,
    run_id: UUID,
    user_id: str,
    *,
    llm_selector: Callable[[Credentials, Optional[RetryOptions]], LLMClient] = select_llm,
) -> int:
    """
    Standalone lead generation for a finished run. Not checkpointed: every
    request appends a fresh batch and bumps total_found.
    """
    run = repository.get_run(run_id)
    if run is None or run.user_id != user_id:
        raise RunNotFoundError(f"Research run {run_id} not found")
    if not run.analysis_result:
        raise ValueError("Research analysis not found. Please run analysis first.")
    result = AnalysisResult.model_validate(run.analysis_result)

    creds = repository.get_credentials(user_id)
    if creds is None or not creds.has_llm_key:
        raise MissingCredentialsError("No LLM API keys found. Please check your settings.")

    leads = generate_leads(llm_selector(creds, None), run.refined_prompt or run.original_prompt, result)
    total = repository.save_leads(run_id, leads)
    logger.info(
        "Generated %d lead(s); %d total",
        len(leads),
        total,
        extra={"run_id": str(run_id), "user_id": user_id, "step": "generate-leads"},
    )
    return len(leads)


# ---------------------------------------------------------------------------
# Celery entry points
# ---------------------------------------------------------------------------

@celery_app.task(name="research_engine.services.orchestrator.run_research_job", bind=True, queue="research")
def run_research_job(self, run_id: str, user_id: str, retry_options: Optional[dict] = None):
    db = SessionLocal()
    try:
        logger.info(
            "Starting research run",
            extra={"run_id": run_id, "user_id": user_id, "step": "start"},
        )
        run_research(SqlResearchRepository(db), UUID(run_id), user_id, retry_options)
    finally:
        db.close()


@celery_app.task(name="research_engine.services.orchestrator.generate_leads_job", bind=True, queue="research")
def generate_leads_job(self, run_id: str, user_id: str):
    db = SessionLocal()
    try:
        return generate_leads_for_run(SqlResearchRepository(db), UUID(run_id), user_id)
    except Exception:
        db.rollback()
        logger.exception(
            "Lead generation failed",
            extra={"run_id": run_id, "user_id": user_id, "step": "generate-leads"},
        )
        raise
    finally:
        db.close()
