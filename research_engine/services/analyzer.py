# research_engine/services/analyzer.py
"""
Deep analyzer: four extraction passes plus an executive summary.

Passes run one after another with a fixed pause between them
(ANALYZER_PASS_DELAYS_SECONDS). Every pass degrades instead of raising:

- pain points / opportunities / market insights fall back to deterministic
  placeholder items built from the sources,
- competitors fall back to an empty list,
- the summary falls back to a static string.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..core.config import get_settings
from ..schemas.pipeline import (
    DISCUSSION_TYPES,
    CompetitorProfile,
    DeepAnalysis,
    MarketInsight,
    Opportunity,
    PainPoint,
    SourceCandidate,
)
from .llm import LLMClient

logger = logging.getLogger(__name__)

settings = get_settings()

T = TypeVar("T", bound=BaseModel)

# Consolidation limits for passes 2-4
MAX_CONSOLIDATED_SOURCES = 15
MAX_SOURCE_CHARS = 1_000
MAX_EXCERPTS_PER_SOURCE = 5
MAX_EXCERPT_CHARS = 200
MAX_CONSOLIDATED_CHARS = 30_000

# Pain-point pass inputs
MAX_POSTS_CHARS = 15_000
MAX_COMMENTS_CHARS = 15_000

MAX_SYNTHESIS_INPUT_CHARS = 10_000
MIN_OPPORTUNITY_SCORE = 6
FALLBACK_ENGAGEMENT_FLOOR = 10
HIGH_SEVERITY_ENGAGEMENT = 100

SUMMARY_FAILED = "Summary generation failed."
NO_PAIN_POINTS = "Unable to extract specific pain points. Review sources manually."

SEPARATOR = "\n\n---\n\n"


def consolidate_sources(sources: List[SourceCandidate]) -> str:
    """Size-capped text rendition of the sources; truncates, never raises."""
    blocks: List[str] = []
    for s in sources[:MAX_CONSOLIDATED_SOURCES]:
        text = f"SOURCE: {s.title}\nURL: {s.url}\nTYPE: {s.source_type.value}\n"
        if s.raw_content:
            text += f"CONTENT: {s.raw_content[:MAX_SOURCE_CHARS]}\n"
        if s.top_discussion_excerpts:
            text += "TOP COMMENTS:\n"
            for c in s.top_discussion_excerpts[:MAX_EXCERPTS_PER_SOURCE]:
                text += f"- [{c.score} pts] {c.text[:MAX_EXCERPT_CHARS]}\n"
        blocks.append(text)
    return SEPARATOR.join(blocks)[:MAX_CONSOLIDATED_CHARS]


def _items(data: Any) -> List[Any]:
    """Accept a bare array or an object wrapping one."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for value in data.values():
            if isinstance(value, list):
                return value
    return []


def parse_items(data: Any, model: Type[T]) -> List[T]:
    out: List[T] = []
    for raw in _items(data):
        if not isinstance(raw, dict):
            continue
        try:
            out.append(model.model_validate(raw))
        except ValidationError as e:
            logger.debug("Dropping malformed %s: %s", model.__name__, e)
    return out


def _first_brace_to_last(text: str) -> Any:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("no JSON object in response")
    return json.loads(text[start : end + 1])


class DeepAnalyzer:
    def __init__(
        self,
        llm: LLMClient,
        *,
        delays: Optional[List[float]] = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.llm = llm
        self.delays = list(settings.ANALYZER_PASS_DELAYS_SECONDS if delays is None else delays)
        self.sleeper = sleeper

    def _pause(self, index: int) -> None:
        if index < len(self.delays) and self.delays[index] > 0:
            self.sleeper(self.delays[index])

    def analyze(self, sources: List[SourceCandidate], goal: str) -> DeepAnalysis:
        pain_points = self.extract_pain_points(sources)
        self._pause(0)
        opportunities = self.identify_opportunities(sources, goal)
        self._pause(1)
        market_insights = self.extract_market_insights(sources)
        self._pause(2)
        competitors = self.analyze_competitors(sources)
        self._pause(3)

        analysis = DeepAnalysis(
            pain_points=pain_points,
            opportunities=opportunities,
            market_insights=market_insights,
            competitors=competitors,
        )
        analysis.summary = self.synthesize(analysis)
        return analysis

    # ------------------------------------------------------------------
    # Pass 1: pain points
    # ------------------------------------------------------------------

    def extract_pain_points(self, sources: List[SourceCandidate]) -> List[PainPoint]:
        discussions = [s for s in sources if s.source_type in DISCUSSION_TYPES]
        if not discussions:
            logger.info("No discussion sources; using fallback pain points")
            return self.fallback_pain_points(sources)

        posts = SEPARATOR.join(f"Title: {s.title}\nContent: {s.raw_content}" for s in discussions)
        comments = SEPARATOR.join(
            f"[{c.score} upvotes] {c.text}" for s in discussions for c in s.top_discussion_excerpts
        )
        prompt = f"""You are analyzing customer discussions to extract pain points.

DISCUSSION POSTS:
{posts[:MAX_POSTS_CHARS]}

TOP COMMENTS:
{comments[:MAX_COMMENTS_CHARS]}

Extract SPECIFIC, ACTIONABLE pain points. Focus on:
1. Problems people are actively trying to solve RIGHT NOW
2. Frustrations with existing solutions
3. Unmet needs they've explicitly stated
4. Evidence of willingness to pay
5. Workarounds they've built (indicates strong need)

Return a JSON array of pain points:
[
  {{
    "pain": "specific problem statement in user's words",
    "severity": "critical|high|medium|low",
    "frequency": <number of times mentioned>,
    "willingnessToPay": "evidence they'd pay for solution (quote or inference)",
    "currentSolutions": ["what they use now", "why it's inadequate"],
    "quotes": ["exact user quote 1", "exact user quote 2"],
    "sources": ["post title or comment excerpt"]
  }}
]

CRITICAL RULES:
- Only include pain points with clear evidence: at least one verbatim quote each
- Severity "critical" means users are desperate, "high" means actively seeking solutions
- Be specific; "email is hard" is too vague

Return ONLY valid JSON, no other text."""

        try:
            points = [p for p in parse_items(self.llm.generate_json(prompt), PainPoint) if p.quotes]
        except Exception as e:
            logger.warning("Pain point extraction failed: %s", e)
            points = []

        if not points:
            logger.info("Using fallback pain point generation from sources")
            return self.fallback_pain_points(sources)
        logger.info("Extracted %d pain point(s)", len(points))
        return points

    def fallback_pain_points(self, sources: List[SourceCandidate]) -> List[PainPoint]:
        discussions = [s for s in sources if s.source_type in DISCUSSION_TYPES]
        top_posts = sorted(
            [
                s
                for s in discussions
                if (s.metadata.engagement_score or 0) > FALLBACK_ENGAGEMENT_FLOOR
            ],
            key=lambda s: s.metadata.engagement_score or 0,
            reverse=True,
        )[:5]

        if not top_posts:
            return [
                PainPoint(
                    pain=NO_PAIN_POINTS,
                    severity="medium",
                    willingness_to_pay="Unknown - manual research required",
                    current_solutions=["Manual research needed"],
                    quotes=["Research data collected but automated analysis was unavailable"],
                    sources=[s.title or s.url for s in sources[:3]],
                    actionability_score=3,
                )
            ]

        return [
            PainPoint(
                pain=f"Discussion: {post.title[:100]}",
                severity="high" if (post.metadata.engagement_score or 0) > HIGH_SEVERITY_ENGAGEMENT else "medium",
                willingness_to_pay="See original discussion for context",
                current_solutions=["Review source for details"],
                quotes=[c.text[:200] for c in post.top_discussion_excerpts[:2]],
                sources=[post.url],
                actionability_score=4,
            )
            for post in top_posts
        ]

    # ------------------------------------------------------------------
    # Pass 2: opportunities
    # ------------------------------------------------------------------

    def identify_opportunities(self, sources: List[SourceCandidate], goal: str) -> List[Opportunity]:
        prompt = f"""You are a business strategist analyzing market research.

ORIGINAL RESEARCH QUESTION:
{goal}

RESEARCH DATA:
{consolidate_sources(sources)}

Identify SPECIFIC, ACTIONABLE business opportunities. Each must have a clear target
market, validated demand citing evidence from the sources, a concrete entry strategy,
a realistic revenue estimate, an honest competition assessment and its risks.

Return a JSON array:
[
  {{
    "title": "concise opportunity name",
    "description": "2-3 sentence description",
    "targetMarket": {{"demographics": "...", "psychographics": "...", "size": "..."}},
    "validationEvidence": ["specific evidence with source citation"],
    "entryStrategy": ["specific step 1", "specific step 2", "specific step 3"],
    "revenueEstimate": "realistic estimate with reasoning",
    "competition": {{"existing": ["competitor"], "gaps": ["what they don't do well"]}},
    "risks": ["risk 1"],
    "validationScore": <0-10, based on strength of evidence>
  }}
]

Only include opportunities with validationScore > {MIN_OPPORTUNITY_SCORE}.

Return ONLY valid JSON."""

        try:
            parsed = parse_items(self.llm.generate_json(prompt), Opportunity)
        except Exception as e:
            logger.warning("Opportunity identification failed: %s", e)
            return self.fallback_opportunities(sources, goal)

        if not parsed:
            return self.fallback_opportunities(sources, goal)
        kept = [o for o in parsed if o.validation_score > MIN_OPPORTUNITY_SCORE]
        logger.info("Identified %d opportunity(ies), kept %d", len(parsed), len(kept))
        return kept

    def fallback_opportunities(self, sources: List[SourceCandidate], goal: str) -> List[Opportunity]:
        return [
            Opportunity(
                title=f"Opportunity based on: {goal[:50]}",
                description=(
                    f"Analysis based on {len(sources)} source(s). Full automated analysis "
                    "was unavailable; review the collected sources."
                ),
                target_market={
                    "demographics": "Review sources for demographics",
                    "psychographics": "Review sources for psychographics",
                    "size": "Unknown - manual research required",
                },
                validation_evidence=[f"Source: {s.title or s.url}" for s in sources[:3]],
                entry_strategy=[
                    "Review the collected sources for insights",
                    "Identify common themes and pain points",
                    "Re-run the analysis once the model is available",
                ],
                revenue_estimate="Requires detailed analysis",
                risks=["Incomplete analysis"],
                validation_score=5,
            )
        ]

    # ------------------------------------------------------------------
    # Pass 3: market insights
    # ------------------------------------------------------------------

    def extract_market_insights(self, sources: List[SourceCandidate]) -> List[MarketInsight]:
        prompt = f"""Analyze this market research and extract key insights.

RESEARCH DATA:
{consolidate_sources(sources)}

Identify emerging trends, market patterns, behavioural shifts and market gaps.

Return a JSON array of insights:
[
  {{
    "type": "trend|pattern|shift|gap",
    "insight": "specific, actionable insight",
    "evidence": ["evidence 1", "evidence 2"],
    "impact": "high|medium|low",
    "timeframe": "how long until this matters"
  }}
]

Prefer insights backed by multiple sources, actionable and non-obvious.

Return ONLY valid JSON."""

        try:
            insights = parse_items(self.llm.generate_json(prompt), MarketInsight)
        except Exception as e:
            logger.warning("Market insight extraction failed: %s", e)
            insights = []

        if not insights:
            return self.fallback_market_insights(sources)
        logger.info("Extracted %d market insight(s)", len(insights))
        return insights

    def fallback_market_insights(self, sources: List[SourceCandidate]) -> List[MarketInsight]:
        platforms = len({s.source_type for s in sources})
        return [
            MarketInsight(
                type="pattern",
                insight=(
                    f"Insufficient data for automated market analysis: {len(sources)} source(s) "
                    f"across {platforms} platform type(s) need manual review"
                ),
                evidence=[s.title or s.url for s in sources[:3]],
                impact="medium",
                timeframe="Review sources manually for detailed insights",
            )
        ]

    # ------------------------------------------------------------------
    # Pass 4: competitors
    # ------------------------------------------------------------------

    def analyze_competitors(self, sources: List[SourceCandidate]) -> List[CompetitorProfile]:
        prompt = f"""Analyze competitor mentions in this research.

RESEARCH DATA:
{consolidate_sources(sources)}

Extract the competitors mentioned, what users say about them, pricing mentioned and the
feature gaps users complain about.

Return JSON:
{{
  "competitors": [
    {{
      "name": "competitor name",
      "mentions": <number>,
      "sentiment": "positive|negative|mixed",
      "strengths": ["strength 1"],
      "weaknesses": ["weakness 1"],
      "pricing": "pricing info if mentioned",
      "marketPosition": "leader|challenger|niche",
      "userQuotes": ["relevant quote 1"]
    }}
  ]
}}

Return ONLY valid JSON."""

        try:
            text = self.llm.generate_text(prompt, temperature=0.3)
            data = _first_brace_to_last(text)
        except Exception as e:
            logger.warning("Competitor analysis failed: %s", e)
            return []

        competitors = parse_items(data.get("competitors") if isinstance(data, dict) else [], CompetitorProfile)
        logger.info("Analyzed %d competitor(s)", len(competitors))
        return competitors

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------

    def synthesize(self, analysis: DeepAnalysis) -> str:
        data = analysis.model_dump(mode="json", exclude={"summary"})
        prompt = f"""Synthesize these research findings into a concise executive summary.

PAIN POINTS FOUND: {len(analysis.pain_points)}
OPPORTUNITIES IDENTIFIED: {len(analysis.opportunities)}
MARKET INSIGHTS: {len(analysis.market_insights)}

DATA:
{json.dumps(data, indent=2)[:MAX_SYNTHESIS_INPUT_CHARS]}

Create a 3-4 paragraph executive summary that:
1. Highlights the most critical findings
2. Connects pain points to opportunities
3. Provides clear recommendations
4. Notes confidence level and gaps in research

Be direct and actionable."""

        try:
            summary = self.llm.generate_text(prompt).strip()
        except Exception as e:
            logger.warning("Summary synthesis failed: %s", e)
            return SUMMARY_FAILED
        return summary or SUMMARY_FAILED

