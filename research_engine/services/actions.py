# research_engine/services/actions.py
"""
Output stages that follow the analysis: action items and leads.
"""
from __future__ import annotations

import logging
from typing import List

from ..schemas.pipeline import (
    ActionItemDraft,
    AnalysisResult,
    LeadDraft,
    Opportunity,
)
from .analyzer import parse_items
from .llm import LLMClient, NoParseableJSONError

logger = logging.getLogger(__name__)

ACTION_ITEM_COUNT = 10
MAX_LEADS = 10
MAX_PROMPT_INSIGHTS = 15


def _insight_lines(result: AnalysisResult) -> str:
    return "\n".join(f"- {i.title}: {i.content}" for i in result.insights[:MAX_PROMPT_INSIGHTS])


def opportunity_actions(opportunities: List[Opportunity]) -> List[ActionItemDraft]:
    """Entry steps of validated opportunities first, then the rest."""
    ordered = [o for o in opportunities if o.validated] + [o for o in opportunities if not o.validated]
    actions: List[ActionItemDraft] = []
    for opp in ordered:
        priority = "HIGH" if opp.validated else "MEDIUM"
        for step in opp.entry_strategy:
            actions.append(
                ActionItemDraft(description=f"{opp.title}: {step}", priority=priority, effort=3)
            )
    return actions


def _filler_actions(result: AnalysisResult) -> List[ActionItemDraft]:
    actions = [
        ActionItemDraft(
            description=f"Investigate finding '{i.title}' and confirm it with primary sources",
            priority="MEDIUM",
            effort=2,
        )
        for i in result.insights
    ]
    actions.append(
        ActionItemDraft(
            description="Review the collected sources and shortlist the strongest findings",
            priority="LOW",
            effort=2,
        )
    )
    return actions


def pad_actions(
    actions: List[ActionItemDraft],
    opportunities: List[Opportunity],
    result: AnalysisResult,
) -> List[ActionItemDraft]:
    """Exactly ACTION_ITEM_COUNT items: truncate, or pad without repeating descriptions."""
    out: List[ActionItemDraft] = []
    seen: set[str] = set()
    for action in actions + opportunity_actions(opportunities) + _filler_actions(result):
        key = action.description.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(action)
        if len(out) == ACTION_ITEM_COUNT:
            return out

    n = 1
    while len(out) < ACTION_ITEM_COUNT:
        out.append(
            ActionItemDraft(
                description=f"Follow-up research task {n}: deepen the analysis with new sources",
                priority="LOW",
                effort=3,
            )
        )
        n += 1
    return out


def generate_action_items(
    llm: LLMClient,
    goal: str,
    result: AnalysisResult,
    opportunities: List[Opportunity],
) -> List[ActionItemDraft]:
    prompt = f"""Based on these research findings, generate {ACTION_ITEM_COUNT} specific, high-impact actionable items.
Goal: {goal}
Summary: {result.summary}

Key Insights:
{_insight_lines(result)}

CRITICAL INSTRUCTIONS:
- Make actions CONCRETE (e.g. "Contact X" -> "Email Head of Sales at Company X asking for Y").
- Include WHY the action is needed in the description.
- Mix strategic (long-term) and tactical (immediate) actions.

Return as a JSON array only:
[
  {{"description": "Specific Action + Rationale", "priority": "HIGH" | "MEDIUM" | "LOW", "effort": 1-5}}
]"""

    try:
        actions = parse_items(llm.generate_json(prompt), ActionItemDraft)
    except NoParseableJSONError as e:
        logger.warning("Action items were not JSON; deriving them from opportunities: %s", e)
        actions = []
    return pad_actions(actions, opportunities, result)


def generate_leads(llm: LLMClient, goal: str, result: AnalysisResult) -> List[LeadDraft]:
    prompt = f"""Based on these research findings, identify specific business leads: companies or
organizations that would be relevant targets.

Goal: {goal}
Summary: {result.summary}

Key Insights:
{_insight_lines(result)}

INSTRUCTIONS:
- Prioritize SPECIFIC people (CTO, VP Marketing, Founder) over generic contacts.
- Infer "painPoints" directly from the research.
- "suggestedEmail" should be a best-guess pattern if not found (e.g. first.last@domain.com).

Extract details for up to {MAX_LEADS} high-quality leads.
Return as a JSON array:
[
  {{
    "name": "Contact Name or specific role",
    "company": "Company Name",
    "email": "Email if found or null",
    "phone": "Phone if found or null",
    "website": "Website URL",
    "industry": "Industry segment",
    "location": "City/Country",
    "painPoints": ["Specific Pain Point 1"],
    "suggestedDM": "Target Decision Maker Role",
    "suggestedEmail": "Predicted email pattern or specific email"
  }}
]"""

    try:
        leads = parse_items(llm.generate_json(prompt), LeadDraft)
    except NoParseableJSONError as e:
        logger.warning("Lead generation returned no JSON: %s", e)
        return []
    return leads[:MAX_LEADS]
