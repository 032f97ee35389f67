from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from .base import SourceProvider
from .hackernews import HackerNewsProvider
from .reddit import RedditProvider
from .web_search import SerperWebProvider
from ..tracing import Tracer, null_tracer
from ...schemas.pipeline import SourceCandidate

logger = logging.getLogger(__name__)


class ProviderRunner:
    """
    Executes several source providers concurrently for one query.

    - Each provider gets its own options dict, keyed by provider name.
    - A provider that raises anyway is logged and contributes [].
    - Returns {provider_name: [SourceCandidate, ...]} in provider order.
    """

    def __init__(self, tracer: Tracer = null_tracer) -> None:
        self.tracer = tracer

    async def _run_one(
        self,
        provider: SourceProvider,
        query: str,
        options: Dict[str, Any],
        run_id: Optional[UUID],
    ) -> List[SourceCandidate]:
        try:
            results = await provider.search(query, **options)
        except Exception as e:
            logger.exception(
                "Provider '%s' failed: %s",
                provider.name,
                e,
                extra={"provider": provider.name, "run_id": str(run_id) if run_id else None},
            )
            if run_id:
                self.tracer(
                    run_id,
                    phase="DISCOVERY",
                    step=f"provider:{provider.name}:error",
                    label=f"Failed: {provider.name}",
                    detail=f"{provider.name} encountered an error.",
                )
            return []

        if run_id:
            self.tracer(
                run_id,
                phase="DISCOVERY",
                step=f"provider:{provider.name}:done",
                label=f"Searched: {provider.name}",
                detail=f"{provider.name} returned {len(results)} result(s).",
                meta={"results": len(results)},
            )
        return results

    async def gather(
        self,
        query: str,
        providers: Sequence[SourceProvider],
        options: Optional[Dict[str, Dict[str, Any]]] = None,
        run_id: Optional[UUID] = None,
    ) -> Dict[str, List[SourceCandidate]]:
        options = options or {}
        results = await asyncio.gather(
            *(self._run_one(p, query, options.get(p.name, {}), run_id) for p in providers)
        )
        return {p.name: r for p, r in zip(providers, results)}

    def search_all(
        self,
        query: str,
        providers: Sequence[SourceProvider],
        options: Optional[Dict[str, Dict[str, Any]]] = None,
        run_id: Optional[UUID] = None,
    ) -> Dict[str, List[SourceCandidate]]:
        # Dedicated event loop; Celery workers are synchronous
        return asyncio.run(self.gather(query, providers, options, run_id))


__all__ = [
    "HackerNewsProvider",
    "ProviderRunner",
    "RedditProvider",
    "SerperWebProvider",
    "SourceProvider",
]
