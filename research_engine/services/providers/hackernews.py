# research_engine/services/providers/hackernews.py
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from bs4 import BeautifulSoup

from .base import SourceProvider
from ..caching import cached_get, make_cache_key
from ...core.config import get_settings
from ...schemas.pipeline import DiscussionExcerpt, SourceCandidate, SourceMetadata, SourceType

logger = logging.getLogger(__name__)

settings = get_settings()

HN_ITEM_PAGE = "https://news.ycombinator.com/item?id={id}"
MAX_ENRICHED_STORIES = 10
MAX_COMMENTS_PER_STORY = 5
MIN_COMMENT_CHARS = 20


def _strip_html(text: str | None) -> str:
    if not text:
        return ""
    return BeautifulSoup(text, "html.parser").get_text(" ", strip=True)


class HackerNewsProvider(SourceProvider):
    """
    Hacker News stories via the Algolia search API.

    Raw search responses are cached in Redis for SEARCH_CACHE_TTL_SECONDS.
    The top stories by points are enriched concurrently with their first
    substantial top-level comments from /items/{id}.
    """

    name = "hackernews"
    source_type = SourceType.LINK_AGGREGATOR

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.search_url = settings.HN_SEARCH_URL
        self.item_url = settings.HN_ITEM_URL.rstrip("/")
        self.timeout = settings.HN_TIMEOUT_SECONDS
        self._transport = transport

    async def _search_hits(
        self, client: httpx.AsyncClient, query: str, min_points: int, hits_per_page: int
    ) -> List[Dict[str, Any]]:
        cache_key = make_cache_key("hn", query, min_points, hits_per_page)
        cached = await cached_get(cache_key)
        if cached is not None:
            return cached

        resp = await client.get(
            self.search_url,
            params={
                "query": query,
                "tags": "story",
                "numericFilters": f"points>{min_points}",
                "hitsPerPage": hits_per_page,
            },
            timeout=self.timeout,
        )
        resp.raise_for_status()
        hits = resp.json().get("hits") or []

        await cached_get(cache_key, set_value=hits, ttl=settings.SEARCH_CACHE_TTL_SECONDS)
        return hits

    def _to_candidate(self, hit: Dict[str, Any]) -> SourceCandidate | None:
        story_id = hit.get("objectID")
        if not story_id:
            return None
        created = hit.get("created_at_i")
        return SourceCandidate(
            url=hit.get("url") or HN_ITEM_PAGE.format(id=story_id),
            title=(hit.get("title") or "").strip(),
            raw_content=_strip_html(hit.get("story_text")),
            source_type=self.source_type,
            provider=self.name,
            metadata=SourceMetadata(
                author=hit.get("author"),
                published_at=datetime.utcfromtimestamp(int(created)) if created else None,
                engagement_score=int(hit.get("points") or 0),
                discussion_count=int(hit.get("num_comments") or 0),
                provider_specific={
                    "story_id": story_id,
                    "hn_url": HN_ITEM_PAGE.format(id=story_id),
                },
            ),
        )

    async def _fetch_comments(
        self, client: httpx.AsyncClient, candidate: SourceCandidate
    ) -> List[DiscussionExcerpt]:
        story_id = candidate.metadata.provider_specific.get("story_id")
        try:
            resp = await client.get(f"{self.item_url}/{story_id}", timeout=self.timeout)
            resp.raise_for_status()
            item = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Failed to fetch HN comments for story %s: %s",
                story_id,
                e,
                extra={"provider": self.name},
            )
            return []

        excerpts: List[DiscussionExcerpt] = []
        for child in item.get("children") or []:
            text = _strip_html(child.get("text"))
            if len(text) <= MIN_COMMENT_CHARS:
                continue
            excerpts.append(
                DiscussionExcerpt(
                    author=child.get("author") or "[deleted]",
                    text=text,
                    score=int(child.get("points") or 0),
                    depth=0,
                )
            )
            if len(excerpts) >= MAX_COMMENTS_PER_STORY:
                break
        return excerpts

    async def search(
        self,
        query: str,
        min_points: Optional[int] = None,
        hits_per_page: int = 20,
        scrape_comments: bool = True,
        **_: Any,
    ) -> List[SourceCandidate]:
        min_points = settings.HN_MIN_POINTS if min_points is None else min_points
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                try:
                    hits = await self._search_hits(client, query, min_points, hits_per_page)
                except (httpx.HTTPError, ValueError) as e:
                    logger.warning("Hacker News search failed: %s", e, extra={"provider": self.name})
                    return []

                candidates: List[SourceCandidate] = []
                for hit in hits:
                    try:
                        candidate = self._to_candidate(hit)
                    except (TypeError, ValueError) as e:
                        logger.debug("Skipping malformed HN hit: %s", e, extra={"provider": self.name})
                        continue
                    if candidate:
                        candidates.append(candidate)

                if scrape_comments and candidates:
                    top = sorted(
                        candidates,
                        key=lambda c: c.metadata.engagement_score or 0,
                        reverse=True,
                    )[:MAX_ENRICHED_STORIES]
                    comment_lists = await asyncio.gather(
                        *(self._fetch_comments(client, c) for c in top)
                    )
                    for candidate, comments in zip(top, comment_lists):
                        candidate.top_discussion_excerpts = comments
        except Exception:
            logger.exception("Hacker News provider failed", extra={"provider": self.name})
            return []

        logger.info(
            "Hacker News returned %d stor(ies) for '%s'",
            len(candidates),
            query,
            extra={"provider": self.name},
        )
        return candidates
