# research_engine/services/retrieval_cache.py
"""
Two-tier retrieval cache.

L1 (query level): sha256 of user id + normalised prompt -> most recent
COMPLETED run inside QUERY_CACHE_TTL_HOURS.

L2 (URL level): url -> newest successful extraction inside
EXTRACTION_CACHE_TTL_DAYS.

Both tiers are advisory: a lookup error is logged and treated as a miss.
"""
from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from ..core.config import get_settings
from ..schemas.pipeline import CachedExtractionEntry, ExtractionResult
from .repository import ResearchRepository

logger = logging.getLogger(__name__)

settings = get_settings()

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_prompt(prompt: str) -> str:
    text = _PUNCTUATION_RE.sub("", (prompt or "").lower())
    return _WHITESPACE_RE.sub(" ", text).strip()


def generate_prompt_hash(user_id: str, prompt: str) -> str:
    return hashlib.sha256(f"{user_id}:{normalize_prompt(prompt)}".encode("utf-8")).hexdigest()


def is_fresh(timestamp: datetime | None, ttl: timedelta, now: datetime) -> bool:
    """An entry stamped exactly at now - ttl is still fresh."""
    if timestamp is None:
        return False
    return timestamp >= now - ttl


class RetrievalCache:
    def __init__(
        self,
        repository: ResearchRepository,
        *,
        query_ttl: timedelta | None = None,
        extraction_ttl: timedelta | None = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.repository = repository
        self.query_ttl = query_ttl or timedelta(hours=settings.QUERY_CACHE_TTL_HOURS)
        self.extraction_ttl = extraction_ttl or timedelta(days=settings.EXTRACTION_CACHE_TTL_DAYS)
        self.clock = clock

    # ------------------------------------------------------------------
    # L1
    # ------------------------------------------------------------------

    def find_cached_run(
        self, user_id: str, prompt: str, exclude_run_id: UUID | None = None
    ) -> UUID | None:
        prompt_hash = generate_prompt_hash(user_id, prompt)
        since = self.clock() - self.query_ttl
        try:
            return self.repository.find_completed_run(prompt_hash, since, exclude_run_id)
        except Exception:
            logger.warning("Query cache lookup failed; treating as miss", exc_info=True)
            return None

    # ------------------------------------------------------------------
    # L2
    # ------------------------------------------------------------------

    def partition_urls(
        self, urls: list[str]
    ) -> tuple[dict[str, CachedExtractionEntry], list[str]]:
        """Split urls into (fresh cached entries, urls that still need extraction)."""
        unique_urls = list(dict.fromkeys(urls))
        since = self.clock() - self.extraction_ttl
        try:
            cached = self.repository.get_cached_extractions(unique_urls, since)
        except Exception:
            logger.warning("Extraction cache lookup failed; treating as miss", exc_info=True)
            cached = {}

        cached = {
            url: entry
            for url, entry in cached.items()
            if entry.content and is_fresh(entry.extracted_at, self.extraction_ttl, self.clock())
        }
        to_fetch = [u for u in unique_urls if u not in cached]
        logger.info(
            "Extraction cache: %d hit(s), %d to fetch",
            len(cached),
            len(to_fetch),
            extra={"step": "extraction-cache"},
        )
        return cached, to_fetch

    def store(self, result: ExtractionResult) -> None:
        if not result.success or not result.content:
            return
        try:
            self.repository.save_extraction(result, self.clock())
        except Exception:
            logger.warning(
                "Failed to populate extraction cache for %s", result.url, exc_info=True
            )
