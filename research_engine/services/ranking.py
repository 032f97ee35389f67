# research_engine/services/ranking.py
"""
Source ranking.

score = recency (<=25) + engagement (<=25) + discussion depth (<=15)
      + enrichment bonus (15) + content length (<=10) + title relevance (<=10)

Each component is bounded independently; the total is a relative ordering
signal, not a calibrated probability. Python's sort is stable, so ties keep
their input order.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, List, Optional

from ..schemas.pipeline import SourceCandidate, SourceType

# (max age in days, points); anything older gets RECENCY_FLOOR
RECENCY_TIERS = ((7, 25), (30, 20), (90, 15), (180, 10))
RECENCY_FLOOR = 5

# (strictly above, points) per source type; any positive score gets the floor
ENGAGEMENT_TIERS = {
    SourceType.DISCUSSION_FORUM: (((500, 25), (200, 20), (100, 15), (50, 10)), 5),
    SourceType.LINK_AGGREGATOR: (((200, 25), (100, 20), (50, 15)), 10),
}

DISCUSSION_TIERS = ((100, 15), (50, 12), (20, 9), (5, 6))
DISCUSSION_FLOOR = 3

ENRICHMENT_BONUS = 15

WORD_COUNT_TIERS = ((500, 10), (200, 7), (100, 5))
WORD_COUNT_FLOOR = 2

RELEVANCE_WEIGHT = 10


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _above(value: int, tiers, floor: int) -> int:
    for threshold, points in tiers:
        if value > threshold:
            return points
    return floor


def recency_score(published_at: Optional[datetime], now: datetime) -> int:
    if published_at is None:
        return 0
    age_days = (_to_naive_utc(now) - _to_naive_utc(published_at)).total_seconds() / 86400
    for max_days, points in RECENCY_TIERS:
        if age_days <= max_days:
            return points
    return RECENCY_FLOOR


def engagement_score(source: SourceCandidate) -> int:
    score = source.metadata.engagement_score or 0
    tiers = ENGAGEMENT_TIERS.get(source.source_type)
    if not score or tiers is None:
        return 0
    return _above(score, *tiers)


def discussion_score(count: Optional[int]) -> int:
    if not count:
        return 0
    return _above(count, DISCUSSION_TIERS, DISCUSSION_FLOOR)


def content_length_score(content: str) -> int:
    if not content or not content.strip():
        return 0
    return _above(len(content.split()), WORD_COUNT_TIERS, WORD_COUNT_FLOOR)


def relevance(title: str, query: str) -> float:
    """Fraction of query terms found as substrings of the title."""
    terms = (query or "").lower().split()
    if not terms:
        return 0.0
    text = (title or "").lower()
    return sum(1 for t in terms if t in text) / len(terms)


def score_source(source: SourceCandidate, query: str, now: datetime) -> float:
    score = float(recency_score(source.metadata.published_at, now))
    score += engagement_score(source)
    score += discussion_score(source.metadata.discussion_count)
    if source.top_discussion_excerpts:
        score += ENRICHMENT_BONUS
    score += content_length_score(source.raw_content)
    score += relevance(source.title, query) * RELEVANCE_WEIGHT
    return score


def rank_sources(
    sources: List[SourceCandidate],
    query: str,
    clock: Callable[[], datetime] = datetime.utcnow,
) -> List[SourceCandidate]:
    """Return copies of `sources` with rank_score set, highest first."""
    now = clock()
    scored = [
        s.model_copy(update={"rank_score": score_source(s, query, now)}) for s in sources
    ]
    return sorted(scored, key=lambda s: s.rank_score, reverse=True)
