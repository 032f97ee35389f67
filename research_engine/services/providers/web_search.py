# research_engine/services/providers/web_search.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List
from urllib.parse import urlparse

import httpx

from .base import SourceProvider
from ..caching import cached_get, make_cache_key
from ...core.config import get_settings
from ...schemas.pipeline import SourceCandidate, SourceMetadata, SourceType

logger = logging.getLogger(__name__)

settings = get_settings()


class SerperWebProvider(SourceProvider):
    """
    Paid Google search through Serper.

    The API key belongs to the user running the research, so one provider
    instance is built per stage from freshly read credentials.

    Organic results become generic-web candidates with the snippet as raw
    content; the extractor fills in full page text later.
    """

    name = "serper"
    source_type = SourceType.GENERIC_WEB

    def __init__(
        self,
        api_key: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep=asyncio.sleep,
    ) -> None:
        self.api_key = api_key
        self.search_url = settings.SERPER_SEARCH_URL
        self.timeout = settings.SERPER_TIMEOUT_SECONDS
        self._transport = transport
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        return {"X-API-KEY": self.api_key, "Content-Type": "application/json"}

    def _parse_results(self, data: Dict[str, Any]) -> List[SourceCandidate]:
        candidates: List[SourceCandidate] = []
        for position, r in enumerate(data.get("organic") or [], start=1):
            url = r.get("link")
            if not url:
                continue
            candidates.append(
                SourceCandidate(
                    url=url,
                    title=(r.get("title") or "").strip(),
                    raw_content=(r.get("snippet") or "").strip(),
                    source_type=self.source_type,
                    provider=self.name,
                    metadata=SourceMetadata(
                        provider_specific={
                            "position": r.get("position") or position,
                            "domain": urlparse(url).netloc or None,
                            "date": r.get("date"),
                        },
                    ),
                )
            )
        return candidates

    async def _post(self, client: httpx.AsyncClient, payload: Dict[str, Any]) -> httpx.Response:
        return await client.post(
            self.search_url,
            headers=self._headers(),
            json=payload,
            timeout=self.timeout,
        )

    async def search(self, query: str, num_results: int = 10, **_: Any) -> List[SourceCandidate]:
        if not self.api_key:
            logger.warning("Serper search skipped: no API key", extra={"provider": self.name})
            return []

        payload = {
            "q": query,
            "num": num_results,
            "gl": settings.SERPER_COUNTRY,
            "hl": settings.SERPER_LANGUAGE,
        }
        cache_key = make_cache_key("serper", query, num_results, settings.SERPER_COUNTRY)
        cached = await cached_get(cache_key)
        if cached is not None:
            return [SourceCandidate.model_validate(c) for c in cached]

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                try:
                    resp = await self._post(client, payload)
                    # Single local retry on rate limiting
                    if resp.status_code == 429:
                        retry_after = resp.headers.get("Retry-After")
                        delay = int(retry_after) if retry_after and retry_after.isdigit() else 5
                        await self._sleep(delay)
                        resp = await self._post(client, payload)
                except httpx.HTTPError as e:
                    logger.warning("Serper request failed: %s", e, extra={"provider": self.name})
                    return []

                if 400 <= resp.status_code < 500:
                    logger.warning(
                        "Serper returned %d for '%s'",
                        resp.status_code,
                        query,
                        extra={"provider": self.name},
                    )
                    return []
                resp.raise_for_status()
                results = self._parse_results(resp.json())
        except Exception:
            logger.exception("Serper provider failed", extra={"provider": self.name})
            return []

        await cached_get(
            cache_key,
            set_value=[r.model_dump(mode="json") for r in results],
            ttl=settings.SEARCH_CACHE_TTL_SECONDS,
        )
        logger.info(
            "Serper returned %d result(s) for '%s'",
            len(results),
            query,
            extra={"provider": self.name},
        )
        return results
