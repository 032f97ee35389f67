# research_engine/services/gap_loop.py
"""
Gap-driven retrieval loop.

    query = goal
    repeat at most GAP_LOOP_MAX_ITERATIONS times:
        search -> filter low-value domains -> extract (L2 cache aware)
        accumulate content
        if iterations remain: ask the LLM what is still missing for the goal;
            stop on "no gaps", no follow-up query, or a failed gap call
        query = first suggested follow-up
    synthesize one report from everything accumulated

The loop is bounded by the iteration count alone, never by LLM output.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..core.config import get_settings
from ..schemas.pipeline import ExtractionResult, SourceCandidate, SourceType
from .extraction import Extractor, extract_with_cache, filter_urls
from .llm import LLMClient
from .providers import ProviderRunner, SourceProvider
from .retrieval_cache import RetrievalCache

logger = logging.getLogger(__name__)

settings = get_settings()

SYNTHESIS_URL = "final-synthesis"
SYNTHESIS_TITLE = "Synthesized Research Report"
RESULTS_PER_ITERATION = 5
CONTENT_SEPARATOR = "\n\n---\n\n"


class GapLoopResult(BaseModel):
    sources: List[SourceCandidate] = Field(default_factory=list)
    queries: List[str] = Field(default_factory=list)
    iterations: int = 0
    report: Optional[str] = None


def _to_source(result: ExtractionResult, provider: str) -> SourceCandidate:
    return SourceCandidate(
        url=result.url,
        title=result.title,
        raw_content=result.content,
        source_type=SourceType.GENERIC_WEB,
        provider=provider,
    )


def run_gap_loop(
    llm: LLMClient,
    goal: str,
    *,
    provider: SourceProvider,
    cache: RetrievalCache,
    extractor: Extractor,
    runner: Optional[ProviderRunner] = None,
    max_iterations: Optional[int] = None,
    run_id: Optional[UUID] = None,
    on_progress: Optional[Callable[[str], None]] = None,
) -> GapLoopResult:
    runner = runner or ProviderRunner()
    if max_iterations is None:
        max_iterations = settings.GAP_LOOP_MAX_ITERATIONS
    log_extra = {"run_id": str(run_id) if run_id else None, "step": "gap-loop"}

    current_query = goal
    sources: List[SourceCandidate] = []
    seen_urls: set[str] = set()
    queries: List[str] = []
    accumulated: List[str] = []
    iteration = 0

    while iteration < max_iterations:
        iteration += 1
        queries.append(current_query)
        if on_progress:
            on_progress(f"Iteration {iteration}/{max_iterations}: searching '{current_query[:80]}'")

        found = runner.search_all(
            current_query,
            [provider],
            options={provider.name: {"num_results": RESULTS_PER_ITERATION}},
            run_id=run_id,
        ).get(provider.name, [])
        urls = [u for u in filter_urls([c.url for c in found]) if u not in seen_urls]

        extracted = extract_with_cache(urls, cache, extractor) if urls else []
        for result in extracted:
            seen_urls.add(result.url)
            sources.append(_to_source(result, provider.name))
            accumulated.append(result.content)
        logger.info(
            "Gap loop iteration %d: %d new source(s)",
            iteration,
            len(extracted),
            extra=log_extra,
        )

        if iteration >= max_iterations:
            break

        try:
            gaps = llm.identify_gaps(goal, CONTENT_SEPARATOR.join(accumulated))
        except Exception as e:
            logger.warning("Gap analysis failed; ending retrieval early: %s", e, extra=log_extra)
            break
        if not gaps.has_gaps or not gaps.suggested_queries:
            logger.info("No critical gaps remain after iteration %d", iteration, extra=log_extra)
            break
        current_query = gaps.suggested_queries[0]

    if not accumulated:
        logger.warning("Gap loop extracted no content", extra=log_extra)
        return GapLoopResult(sources=sources, queries=queries, iterations=iteration)

    report = llm.synthesize_final_report(goal, CONTENT_SEPARATOR.join(accumulated), iteration)
    sources.append(
        SourceCandidate(
            url=SYNTHESIS_URL,
            title=SYNTHESIS_TITLE,
            raw_content=report,
            source_type=SourceType.GENERIC_WEB,
            provider="synthesis",
        )
    )
    return GapLoopResult(sources=sources, queries=queries, iterations=iteration, report=report)
