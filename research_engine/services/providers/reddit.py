# research_engine/services/providers/reddit.py
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from .base import SourceProvider
from ...core.config import get_settings
from ...schemas.pipeline import DiscussionExcerpt, SourceCandidate, SourceMetadata, SourceType

logger = logging.getLogger(__name__)

settings = get_settings()

# Posts enriched with comments, highest score first
MAX_ENRICHED_POSTS = 10


class RedditProvider(SourceProvider):
    """
    Reddit discussion search over the public JSON listing API.

    - Searches site-wide or restricted to a subreddit set.
    - Drops posts below `min_score` (the ranker never filters).
    - Enriches the top posts by score with their best comments, flattened
      with reply depth.
    - Spaces every request at least REDDIT_MIN_REQUEST_INTERVAL_SECONDS apart.
    """

    name = "reddit"
    source_type = SourceType.DISCUSSION_FORUM

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        min_interval: float | None = None,
    ) -> None:
        self.base_url = settings.REDDIT_BASE_URL.rstrip("/")
        self.timeout = settings.REDDIT_TIMEOUT_SECONDS
        self.min_interval = (
            settings.REDDIT_MIN_REQUEST_INTERVAL_SECONDS if min_interval is None else min_interval
        )
        self._transport = transport
        self._last_request_at = 0.0
        self._lock = asyncio.Lock()

    def _headers(self) -> Dict[str, str]:
        return {"User-Agent": settings.REDDIT_USER_AGENT, "accept": "application/json"}

    async def _throttle(self) -> None:
        async with self._lock:
            wait = self._last_request_at + self.min_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request_at = time.monotonic()

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: Dict[str, Any]) -> Any:
        await self._throttle()
        resp = await client.get(url, params=params, headers=self._headers(), timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def _search_url(self, subreddits: List[str]) -> str:
        if subreddits:
            return f"{self.base_url}/r/{'+'.join(subreddits)}/search.json"
        return f"{self.base_url}/search.json"

    def _to_candidate(self, post: Dict[str, Any]) -> SourceCandidate | None:
        permalink = post.get("permalink")
        if not permalink:
            return None
        url = f"{self.base_url}{permalink}"
        created = post.get("created_utc")
        published_at = datetime.utcfromtimestamp(float(created)) if created else None
        body = (post.get("selftext") or "").strip()
        return SourceCandidate(
            url=url,
            title=(post.get("title") or "").strip(),
            raw_content=body,
            source_type=self.source_type,
            provider=self.name,
            metadata=SourceMetadata(
                author=post.get("author"),
                published_at=published_at,
                engagement_score=int(post.get("score") or 0),
                discussion_count=int(post.get("num_comments") or 0),
                provider_specific={
                    "post_id": post.get("id"),
                    "subreddit": post.get("subreddit"),
                    "upvote_ratio": post.get("upvote_ratio"),
                    "flair": post.get("link_flair_text"),
                    "external_url": post.get("url") if not post.get("is_self") else None,
                },
            ),
        )

    def _flatten_comments(self, children: List[Dict[str, Any]], depth: int = 0) -> List[DiscussionExcerpt]:
        out: List[DiscussionExcerpt] = []
        for child in children or []:
            if child.get("kind") != "t1":
                continue
            data = child.get("data") or {}
            text = (data.get("body") or "").strip()
            if text and text not in ("[deleted]", "[removed]"):
                out.append(
                    DiscussionExcerpt(
                        author=data.get("author") or "[deleted]",
                        text=text,
                        score=int(data.get("score") or 0),
                        depth=depth,
                    )
                )
            replies = data.get("replies")
            if isinstance(replies, dict):
                out.extend(
                    self._flatten_comments((replies.get("data") or {}).get("children") or [], depth + 1)
                )
        return out

    async def _fetch_comments(
        self, client: httpx.AsyncClient, candidate: SourceCandidate, max_comments: int
    ) -> List[DiscussionExcerpt]:
        try:
            data = await self._get_json(
                client,
                f"{candidate.url.rstrip('/')}.json",
                {"sort": "top", "limit": max_comments * 3},
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Failed to fetch comments for %s: %s",
                candidate.url,
                e,
                extra={"provider": self.name},
            )
            return []

        if not isinstance(data, list) or len(data) < 2:
            return []
        children = ((data[1] or {}).get("data") or {}).get("children") or []
        comments = self._flatten_comments(children)
        comments.sort(key=lambda c: c.score, reverse=True)
        return comments[:max_comments]

    async def search(
        self,
        query: str,
        subreddits: Optional[List[str]] = None,
        time_range: str = "month",
        sort_by: str = "relevance",
        min_score: Optional[int] = None,
        max_results: int = 20,
        scrape_comments: bool = True,
        max_comments_per_post: int = 10,
        **_: Any,
    ) -> List[SourceCandidate]:
        min_score = settings.REDDIT_MIN_SCORE if min_score is None else min_score
        subreddits = [s.strip().removeprefix("r/") for s in (subreddits or []) if s and s.strip()]
        params: Dict[str, Any] = {
            "q": query,
            "sort": sort_by,
            "t": time_range,
            "limit": max(max_results * 2, 25),
            "raw_json": 1,
        }
        if subreddits:
            params["restrict_sr"] = 1

        try:
            async with httpx.AsyncClient(transport=self._transport, follow_redirects=True) as client:
                try:
                    listing = await self._get_json(client, self._search_url(subreddits), params)
                except (httpx.HTTPError, ValueError) as e:
                    logger.warning("Reddit search failed: %s", e, extra={"provider": self.name})
                    return []

                candidates: List[SourceCandidate] = []
                for child in ((listing or {}).get("data") or {}).get("children") or []:
                    post = child.get("data") or {}
                    if int(post.get("score") or 0) < min_score:
                        continue
                    try:
                        candidate = self._to_candidate(post)
                    except (TypeError, ValueError) as e:
                        logger.debug("Skipping malformed Reddit post: %s", e, extra={"provider": self.name})
                        continue
                    if candidate:
                        candidates.append(candidate)
                    if len(candidates) >= max_results:
                        break

                if scrape_comments and candidates:
                    top = sorted(
                        candidates,
                        key=lambda c: c.metadata.engagement_score or 0,
                        reverse=True,
                    )[:MAX_ENRICHED_POSTS]
                    # sequential: the request interval applies to comment pages too
                    for candidate in top:
                        candidate.top_discussion_excerpts = await self._fetch_comments(
                            client, candidate, max_comments_per_post
                        )
        except Exception:
            logger.exception("Reddit provider failed", extra={"provider": self.name})
            return []

        logger.info(
            "Reddit returned %d post(s) for '%s'",
            len(candidates),
            query,
            extra={"provider": self.name},
        )
        return candidates
