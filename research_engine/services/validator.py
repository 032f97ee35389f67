# research_engine/services/validator.py
from __future__ import annotations

import logging
import re
import time
from typing import Callable, List, Optional

from ..core.config import get_settings
from ..schemas.pipeline import DeepAnalysis, MarketInsight, Opportunity, PainPoint
from .llm import LLMClient

logger = logging.getLogger(__name__)

settings = get_settings()

DEFAULT_ACTIONABILITY = 5
MIN_QUOTES = 2
MIN_DISTINCT_SOURCES = 2
MIN_EVIDENCE = 3
VALIDATED_OPPORTUNITY_SCORE = 7
MIN_MARKET_EVIDENCE = 2

RED_FLAG_NO_COMPETITION = "No competition mentioned - may indicate no market"
RED_FLAG_LIMITED_EVIDENCE = "Limited evidence - needs more validation"
RED_FLAG_NO_REVENUE_NUMBER = "No numeric revenue estimate provided"

_INT_RE = re.compile(r"\d+")


def has_strong_evidence(point: PainPoint) -> bool:
    distinct_sources = {s.strip().lower() for s in point.sources if s.strip()}
    return len(point.quotes) >= MIN_QUOTES and len(distinct_sources) >= MIN_DISTINCT_SOURCES


def opportunity_score(opp: Opportunity) -> int:
    evidence = len(opp.validation_evidence) * 2
    entry = 3 if len(opp.entry_strategy) >= 3 else 1
    gaps = 2 if opp.competition.gaps else 0
    return min(10, evidence + entry + gaps)


def red_flags(opp: Opportunity) -> List[str]:
    flags: List[str] = []
    if not opp.competition.existing:
        flags.append(RED_FLAG_NO_COMPETITION)
    if len(opp.validation_evidence) < MIN_EVIDENCE:
        flags.append(RED_FLAG_LIMITED_EVIDENCE)
    if not re.search(r"\d", opp.revenue_estimate or ""):
        flags.append(RED_FLAG_NO_REVENUE_NUMBER)
    return flags


def validate_opportunities(opportunities: List[Opportunity]) -> List[Opportunity]:
    """Scores are recomputed from the evidence; the model's own score is ignored."""
    validated: List[Opportunity] = []
    for opp in opportunities:
        score = opportunity_score(opp)
        flags = red_flags(opp)
        validated.append(
            opp.model_copy(
                update={
                    "validation_score": float(score),
                    "red_flags": flags,
                    "validated": score >= VALIDATED_OPPORTUNITY_SCORE and not flags,
                }
            )
        )
    return validated


def validate_market_insights(insights: List[MarketInsight]) -> List[MarketInsight]:
    return [
        i.model_copy(update={"validated": len(i.evidence) >= MIN_MARKET_EVIDENCE})
        for i in insights
    ]


class InsightValidator:
    """
    Evidence checks over analyzer output.

    Pain points get an LLM actionability score one at a time, with
    VALIDATOR_CALL_DELAY_SECONDS between calls; a failed scoring call falls
    back to DEFAULT_ACTIONABILITY so every point leaves with a score.
    """

    def __init__(
        self,
        llm: Optional[LLMClient],
        *,
        delay: Optional[float] = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.llm = llm
        self.delay = settings.VALIDATOR_CALL_DELAY_SECONDS if delay is None else delay
        self.sleeper = sleeper

    def score_actionability(self, text: str) -> int:
        if self.llm is None:
            return DEFAULT_ACTIONABILITY
        prompt = (
            "Rate the actionability of this insight on a scale of 0-10.\n\n"
            f'INSIGHT: "{text}"\n\n'
            "An actionable insight should have:\n"
            '- Specific target audience (not "users" but "B2B SaaS founders with 10-50 employees")\n'
            "- Clear problem statement\n"
            "- Implied or explicit solution direction\n"
            "- Measurable outcome potential\n\n"
            "Score (0-10):"
        )
        try:
            response = self.llm.generate_text(prompt)
        except Exception as e:
            logger.warning("Actionability scoring failed, using default: %s", e)
            return DEFAULT_ACTIONABILITY
        match = _INT_RE.search(response or "")
        if not match:
            return DEFAULT_ACTIONABILITY
        return max(0, min(10, int(match.group(0))))

    def validate_pain_points(self, points: List[PainPoint]) -> List[PainPoint]:
        validated: List[PainPoint] = []
        for i, point in enumerate(points):
            strong = has_strong_evidence(point)
            update = {
                "validated": strong,
                "actionability_score": self.score_actionability(point.pain),
            }
            if not strong:
                update["severity"] = "low"
            validated.append(point.model_copy(update=update))
            if self.llm is not None and i < len(points) - 1 and self.delay > 0:
                self.sleeper(self.delay)
        return validated

    def validate(self, analysis: DeepAnalysis) -> DeepAnalysis:
        pain_points = self.validate_pain_points(analysis.pain_points)
        opportunities = validate_opportunities(analysis.opportunities)
        market_insights = validate_market_insights(analysis.market_insights)
        logger.info(
            "Validated %d/%d pain point(s), %d/%d opportunity(ies)",
            sum(1 for p in pain_points if p.validated),
            len(pain_points),
            sum(1 for o in opportunities if o.validated),
            len(opportunities),
        )
        return analysis.model_copy(
            update={
                "pain_points": pain_points,
                "opportunities": opportunities,
                "market_insights": market_insights,
            }
        )
