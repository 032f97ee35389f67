# research_engine/services/discovery.py
"""
Multi-provider source discovery for the standard search path.

1. The LLM proposes short search queries and relevant subreddits.
2. Reddit, Hacker News and (with a Serper key) web search run concurrently
   for the first query.
3. Everything is ranked against the research goal and diversified so no
   single provider crowds out the others.
4. Thin web candidates get their full page text through the L2-aware
   extractor.
"""
from __future__ import annotations

import logging
from typing import Callable, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..schemas.pipeline import SourceCandidate, SourceType
from .extraction import Extractor, extract_with_cache
from .llm import LLMClient, LLMError
from .providers import ProviderRunner, SourceProvider
from .ranking import rank_sources
from .retrieval_cache import RetrievalCache

logger = logging.getLogger(__name__)

MAX_QUERIES = 3
MAX_SUBREDDITS = 5
FALLBACK_SUBREDDITS = ["technology", "business", "entrepreneur"]

# Per-type quotas after ranking, and the overall cap
DIVERSITY_QUOTAS = {
    SourceType.DISCUSSION_FORUM: 8,
    SourceType.LINK_AGGREGATOR: 5,
    SourceType.GENERIC_WEB: 5,
}
MAX_DISCOVERED_SOURCES = 20

THIN_WEB_CONTENT_CHARS = 500


class DiscoveryResult(BaseModel):
    queries: List[str] = Field(default_factory=list)
    subreddits: List[str] = Field(default_factory=list)
    sources: List[SourceCandidate] = Field(default_factory=list)


def _string_list(data) -> List[str]:
    if not isinstance(data, list):
        return []
    return [str(x).strip() for x in data if x is not None and str(x).strip()]


def generate_search_queries(llm: LLMClient, topic: str) -> List[str]:
    prompt = (
        f'Given this research topic: "{topic[:1000]}"\n\n'
        f"Generate {MAX_QUERIES} short, specific search queries (max 5-6 words each) to find "
        "high-quality information.\n"
        'Return ONLY a JSON array of strings, e.g. ["latest trends in X", "X market size", "challenges in X"]'
    )
    try:
        queries = _string_list(llm.generate_json(prompt))[:MAX_QUERIES]
    except LLMError as e:
        logger.warning("Search query generation failed: %s", e)
        queries = []
    return queries or [topic[:50]]


def find_relevant_subreddits(llm: LLMClient, topic: str) -> List[str]:
    prompt = (
        f'Given this research topic: "{topic[:1000]}"\n\n'
        "Suggest 3-5 highly relevant, active subreddits where people discuss this topic: "
        "a mix of general and niche communities where pain points and real experiences "
        "are discussed.\n\n"
        'Return ONLY a JSON array of subreddit names (without r/), e.g. ["technology", "startups"]'
    )
    try:
        subreddits = [
            s.removeprefix("r/") for s in _string_list(llm.generate_json(prompt))
        ][:MAX_SUBREDDITS]
    except LLMError as e:
        logger.warning("Subreddit discovery failed: %s", e)
        subreddits = []
    return subreddits or list(FALLBACK_SUBREDDITS)


def diversify(ranked: List[SourceCandidate], query: str) -> List[SourceCandidate]:
    """Top N per source type, re-ranked together and capped."""
    picked: List[SourceCandidate] = []
    for source_type, quota in DIVERSITY_QUOTAS.items():
        picked.extend([s for s in ranked if s.source_type == source_type][:quota])
    return rank_sources(picked, query)[:MAX_DISCOVERED_SOURCES]


def enrich_thin_web_sources(
    sources: List[SourceCandidate],
    cache: RetrievalCache,
    extractor: Extractor,
) -> List[SourceCandidate]:
    thin = [
        s.url
        for s in sources
        if s.source_type == SourceType.GENERIC_WEB and len(s.raw_content) < THIN_WEB_CONTENT_CHARS
    ]
    if not thin:
        return sources

    extracted = {r.url: r for r in extract_with_cache(thin, cache, extractor)}
    enriched: List[SourceCandidate] = []
    for s in sources:
        result = extracted.get(s.url)
        if result and len(result.content) > len(s.raw_content):
            s = s.model_copy(
                update={"raw_content": result.content, "title": s.title or result.title}
            )
        enriched.append(s)
    return enriched


def discover_sources(
    llm: LLMClient,
    goal: str,
    *,
    providers: List[SourceProvider],
    cache: RetrievalCache,
    extractor: Extractor,
    runner: Optional[ProviderRunner] = None,
    run_id: Optional[UUID] = None,
    on_progress: Optional[Callable[[str], None]] = None,
) -> DiscoveryResult:
    runner = runner or ProviderRunner()

    subreddits = find_relevant_subreddits(llm, goal)
    queries = generate_search_queries(llm, goal)
    primary_query = queries[0] if queries else goal[:100]
    logger.info(
        "Discovering sources for '%s' (subreddits: %s)",
        primary_query,
        ", ".join(subreddits),
        extra={"run_id": str(run_id) if run_id else None, "step": "discover-sources"},
    )
    if on_progress:
        on_progress(f"Searching {len(providers)} provider(s) for '{primary_query}'")

    by_provider = runner.search_all(
        primary_query,
        providers,
        options={
            "reddit": {"subreddits": subreddits, "sort_by": "top", "max_results": 30},
        },
        run_id=run_id,
    )
    everything = [s for results in by_provider.values() for s in results]
    ranked = rank_sources(everything, goal)
    sources = diversify(ranked, goal)
    sources = enrich_thin_web_sources(sources, cache, extractor)

    logger.info(
        "Discovered %d source(s) from %d candidate(s)",
        len(sources),
        len(everything),
        extra={"run_id": str(run_id) if run_id else None, "step": "discover-sources"},
    )
    return DiscoveryResult(queries=queries, subreddits=subreddits, sources=sources)
