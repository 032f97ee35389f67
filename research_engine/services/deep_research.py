# research_engine/services/deep_research.py
"""
Client for the external deep-research delegate (Gemini Interactions API).

The delegate runs in background mode: `create_task` returns immediately with
an interaction id and the orchestrator polls `get_status` with checkpointed
sleeps in between. Completed outputs are turned into synthetic sources with
`interaction://` URLs.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ..core.config import get_settings
from ..schemas.pipeline import SourceCandidate, SourceType

logger = logging.getLogger(__name__)

settings = get_settings()

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"
FINISHED_STATUSES = {STATUS_COMPLETED, STATUS_FAILED, STATUS_CANCELLED}


class DeepResearchError(Exception):
    """Delegate failed, was cancelled, or did not finish within the poll bound."""


class InteractionThought(BaseModel):
    model_config = ConfigDict(extra="ignore")

    summary: Optional[str] = None
    signature: Optional[str] = None


class InteractionPart(BaseModel):
    model_config = ConfigDict(extra="ignore")

    text: Optional[str] = None
    thought: Optional[InteractionThought] = None


class InteractionContent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Optional[str] = None
    parts: List[InteractionPart] = Field(default_factory=list)


class Interaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str = "processing"
    outputs: List[InteractionContent] = Field(default_factory=list)
    error: Optional[Any] = None

    @property
    def finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @property
    def error_message(self) -> str:
        if isinstance(self.error, dict):
            return str(self.error.get("message") or self.error)
        return str(self.error or "unknown error")


class DeepResearchClient:
    def __init__(
        self,
        api_key: str,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = settings.DEEP_RESEARCH_BASE_URL.rstrip("/")
        self.agent = settings.DEEP_RESEARCH_AGENT
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def _request(self, method: str, path: str, json: Dict[str, Any] | None = None) -> Interaction:
        with httpx.Client(transport=self._transport, timeout=60) as client:
            resp = client.request(method, f"{self.base_url}{path}", headers=self._headers(), json=json)

        if resp.status_code >= 400:
            try:
                message = resp.json().get("error", {}).get("message")
            except ValueError:
                message = None
            raise DeepResearchError(
                f"Deep Research API error {resp.status_code}: {message or resp.reason_phrase}"
            )
        return Interaction.model_validate(resp.json())

    def create_task(self, prompt: str) -> Interaction:
        interaction = self._request(
            "POST",
            "/interactions",
            json={"input": prompt, "agent": self.agent, "background": True},
        )
        logger.info("Started deep research interaction %s", interaction.id)
        return interaction

    def get_status(self, interaction_id: str) -> Interaction:
        return self._request("GET", f"/interactions/{interaction_id}")


def interaction_to_sources(interaction: Interaction) -> List[SourceCandidate]:
    """
    Flatten delegate outputs into sources.

    Text of every output but the last becomes a `step-{i}` source, thought
    summaries become `thought-{i}` sources, and the text of the last output
    is the `final-report` source, which is always present.
    """
    base = f"interaction://{interaction.id}"
    sources: List[SourceCandidate] = []
    final_report = ""
    last = len(interaction.outputs) - 1

    for index, output in enumerate(interaction.outputs):
        text = "".join(part.text for part in output.parts if part.text)
        if index == last:
            final_report = text
        elif text:
            sources.append(
                SourceCandidate(
                    url=f"{base}/step-{index}",
                    title=f"Research Step {index + 1}",
                    raw_content=text,
                    source_type=SourceType.GENERIC_WEB,
                    provider="deep_research",
                )
            )
        for part in output.parts:
            if part.thought:
                summary = part.thought.summary or "No summary"
                sources.append(
                    SourceCandidate(
                        url=f"{base}/thought-{index}",
                        title=f"Research Logic (Step {index + 1})",
                        raw_content=(
                            f"[Thinking Process]\nSummary: {summary}\n"
                            f"Signature: {part.thought.signature or ''}"
                        ),
                        source_type=SourceType.GENERIC_WEB,
                        provider="deep_research",
                    )
                )

    if not final_report and not sources:
        final_report = "No output generated from Deep Research agent."

    sources.append(
        SourceCandidate(
            url=f"{base}/final-report",
            title="Gemini Deep Research Final Report",
            raw_content=final_report or "No final report text found.",
            source_type=SourceType.GENERIC_WEB,
            provider="deep_research",
        )
    )
    return sources
