# research_engine/services/llm.py
"""
LLM provider abstraction.

Two independent backends, both reached through the `openai` SDK against
their OpenAI-compatible endpoints:

- GEMINI (default model gemini-2.0-flash)
- GROQ   (default model llama-3.3-70b-versatile)

Every backend implements `_complete`; the research operations
(refine_prompt, analyze_content, identify_gaps, synthesize_final_report,
generate_text, generate_json) live on `LLMClient` so both backends share
the same prompt contracts, JSON recovery and rate-limit backoff.
"""
from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import openai
from openai import OpenAI
from tenacity import Retrying, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from ..core.config import get_settings
from ..schemas.pipeline import AnalysisResult, GapAnalysis

logger = logging.getLogger(__name__)

settings = get_settings()

PROVIDER_GEMINI = "GEMINI"
PROVIDER_GROQ = "GROQ"
PROVIDERS = (PROVIDER_GEMINI, PROVIDER_GROQ)

MAX_ANALYSIS_CHARS = 30_000
MAX_GAP_ANALYSIS_CHARS = 8_000
MAX_GAPS = 3

# Retired preview model names mapped to their current equivalents
MODEL_ALIASES = {
    "gemini-2.5-flash-preview-05-20": "gemini-2.0-flash",
}

# Substrings (lower-cased) that mark an error as quota / availability class
FALLBACK_ERROR_MARKERS = ("429", "quota", "limit", "404", "not found")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(Exception):
    """Base class for language-model failures."""


class LLMProviderError(LLMError):
    """A backend call failed; carries the HTTP status and any server retry hint."""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after


class NoParseableJSONError(LLMError):
    """The model answered, but no JSON value could be recovered from the text."""


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, LLMProviderError) and exc.status_code == 429:
        return True
    message = str(exc).lower()
    return "429" in message or "rate limit" in message or "resource_exhausted" in message


def is_fallback_error(exc: BaseException) -> bool:
    if isinstance(exc, LLMProviderError) and exc.status_code in (404, 429):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in FALLBACK_ERROR_MARKERS)


# ---------------------------------------------------------------------------
# JSON recovery
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)```")


def _balanced_span_at(text: str, start: int) -> str | None:
    """Balanced {...} / [...] span opening at `start`, honouring JSON strings."""
    pairs = {"{": "}", "[": "]"}
    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in pairs:
            stack.append(pairs[ch])
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                return None
            stack.pop()
            if not stack:
                return text[start : i + 1]
    return None


def _parsed_spans(text: str):
    """
    Yield every balanced {...} / [...] span that parses, in order of appearance.

    Openers nested inside a span that already parsed are skipped.
    """
    parsed_until = -1
    for start, ch in enumerate(text):
        if ch not in "{[" or start < parsed_until:
            continue
        span = _balanced_span_at(text, start)
        if not span:
            continue
        try:
            value = json.loads(span)
        except json.JSONDecodeError:
            continue
        parsed_until = start + len(span)
        yield value


def _is_structured(value: Any) -> bool:
    """Objects, and arrays holding more than bare numbers (citation markers like [3])."""
    if isinstance(value, dict):
        return True
    return isinstance(value, list) and any(
        not isinstance(v, (int, float)) or isinstance(v, bool) for v in value
    )


def extract_json(text: str) -> Any:
    """
    Recover a JSON value from model output.

    Tries fenced ```json blocks first, then balanced objects/arrays in the
    surrounding prose: the first structured one wins over number-only arrays
    such as citation markers. Output whose brackets never balance gets one
    last try from the first opener to the last matching closer. Raises
    NoParseableJSONError when nothing parses.
    """
    text = text or ""
    for block in _FENCE_RE.findall(text):
        try:
            return json.loads(block.strip())
        except json.JSONDecodeError:
            continue

    first_parsed: list[Any] = []
    for value in _parsed_spans(text):
        if _is_structured(value):
            return value
        if not first_parsed:
            first_parsed.append(value)
    if first_parsed:
        return first_parsed[0]

    first = next((i for i, ch in enumerate(text) if ch in "{["), -1)
    if first >= 0:
        end = text.rfind("}" if text[first] == "{" else "]")
        if end > first:
            try:
                return json.loads(text[first : end + 1])
            except json.JSONDecodeError:
                pass

    raise NoParseableJSONError("No valid JSON found in response")


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

_RETRY_DELAY_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*s?\s*$")


def parse_retry_delay(value: Any) -> float | None:
    """Parse '30s', '1.5s' or '30' (Retry-After / RetryInfo.retryDelay)."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = _RETRY_DELAY_RE.match(str(value))
    return float(match.group(1)) if match else None


def _find_retry_delay(body: Any) -> float | None:
    if isinstance(body, dict):
        if "retryDelay" in body:
            return parse_retry_delay(body["retryDelay"])
        for v in body.values():
            found = _find_retry_delay(v)
            if found is not None:
                return found
    elif isinstance(body, list):
        for v in body:
            found = _find_retry_delay(v)
            if found is not None:
                return found
    return None


class wait_rate_limit(wait_base):
    """
    Server-provided retry delay when present, else base * 2**attempt.

    A server hint below `minimum` (Gemini sometimes says "0s") is ignored.
    """

    def __init__(self, base: float, minimum: float) -> None:
        self.base = base
        self.minimum = minimum

    def __call__(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        hinted = getattr(exc, "retry_after", None)
        if hinted is not None and hinted >= self.minimum:
            return float(hinted)
        backoff = self.base * (2 ** (retry_state.attempt_number - 1))
        return max(self.minimum, backoff)


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

def sanitize_model_name(model: str | None) -> str | None:
    if not model:
        return None
    return MODEL_ALIASES.get(model.strip(), model.strip())


def truncate_content(text: str, limit: int = MAX_ANALYSIS_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n\n[Content truncated]"


class LLMClient(ABC):
    provider: str
    default_model: str

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        *,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_key = api_key
        self.model = self._resolve_model(model)
        self.sleeper = sleeper

    def _resolve_model(self, model: str | None) -> str:
        return sanitize_model_name(model) or self.default_model

    @abstractmethod
    def _complete(self, prompt: str, *, system: str | None = None, temperature: float | None = None) -> str:
        """One raw completion call. Raises LLMProviderError."""

    # ------------------------------------------------------------------
    # Generic
    # ------------------------------------------------------------------

    def generate_text(
        self, prompt: str, *, system: str | None = None, temperature: float | None = None
    ) -> str:
        retrying = Retrying(
            stop=stop_after_attempt(settings.LLM_MAX_RETRIES),
            wait=wait_rate_limit(settings.LLM_RETRY_BASE_SECONDS, settings.LLM_RETRY_MIN_SECONDS),
            retry=retry_if_exception(is_rate_limit_error),
            before_sleep=self._log_backoff,
            sleep=self.sleeper,
            reraise=True,
        )
        return retrying(self._complete, prompt, system=system, temperature=temperature)

    def _log_backoff(self, retry_state) -> None:
        logger.warning(
            "%s rate limited (attempt %d); backing off %.1fs",
            self.provider,
            retry_state.attempt_number,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
            extra={"provider": self.provider, "attempt": retry_state.attempt_number},
        )

    def generate_json(self, prompt: str, *, system: str | None = None) -> Any:
        text = self.generate_text(prompt, system=system, temperature=0.3)
        return extract_json(text)

    # ------------------------------------------------------------------
    # Research operations
    # ------------------------------------------------------------------

    def refine_prompt(self, original_prompt: str, scope: str | None = None, *, retry: bool = True) -> str:
        """Sharpen a user request into a research prompt. `retry=False` is one un-retried call."""
        prompt = (
            "You are an expert research strategist. Refine the following user request into a "
            "highly specific, actionable, and comprehensive research prompt for a research agent.\n\n"
            f"User Scope: {scope or 'GENERAL'}\n"
            f'User Request: "{original_prompt}"\n\n'
            "The refined prompt should:\n"
            "1. Define specific data points to extract.\n"
            "2. Identify target industries or businesses if applicable.\n"
            "3. Set clear boundaries for what NOT to search for.\n"
            "4. Specify the desired format of the insights.\n\n"
            "Return ONLY the refined prompt text. Do not include any headers or meta-talk."
        )
        text = self.generate_text(prompt) if retry else self._complete(prompt)
        refined = (text or "").strip()
        return refined or original_prompt

    def analyze_content(self, research_prompt: str, content: str) -> AnalysisResult:
        system = (
            "You are a Senior Research Analyst. Analyze the provided content and extract:\n"
            "1. Key insights with titles, detailed content, categories, and confidence scores (0-1)\n"
            "2. A comprehensive summary\n"
            "3. Identified trends\n\n"
            "Respond in valid JSON format:\n"
            '{"insights": [{"title": "string", "content": "string", "category": "string", '
            '"confidence": number}], "summary": "string", "trends": ["string"]}'
        )
        user = f"Research Topic: {research_prompt}\n\nContent to analyze:\n{truncate_content(content)}"
        text = self.generate_text(user, system=system, temperature=0.3)
        try:
            data = extract_json(text)
        except NoParseableJSONError:
            logger.warning("Analysis response was not JSON; keeping it as the summary", extra={"provider": self.provider})
            return AnalysisResult(insights=[], summary=text.strip(), trends=[])
        if not isinstance(data, dict):
            return AnalysisResult(insights=[], summary=text.strip(), trends=[])
        return AnalysisResult.model_validate(data)

    def identify_gaps(self, original_query: str, content: str) -> GapAnalysis:
        """
        Ask which critical information is still missing.

        Unparseable output means "no gaps"; a failed call raises.
        """
        system = (
            "You are a Research Gap Analyst. Analyze the provided research content and identify:\n"
            "1. Whether there are significant gaps in the information\n"
            "2. What specific information is missing\n"
            "3. Suggested search queries to fill those gaps\n\n"
            "Be concise. Only suggest gaps if they are significant and would meaningfully improve "
            f"the research. Limit to maximum {MAX_GAPS} gaps and {MAX_GAPS} follow-up queries.\n\n"
            'Respond in valid JSON format:\n{"hasGaps": boolean, "gaps": ["string"], "suggestedQueries": ["string"]}'
        )
        user = (
            f"Original Research Query: {original_query}\n\n"
            f"Current Research Content:\n{content[:MAX_GAP_ANALYSIS_CHARS]}"
        )
        text = self.generate_text(user, system=system, temperature=0.3)
        try:
            data = extract_json(text)
        except NoParseableJSONError:
            return GapAnalysis(has_gaps=False)
        if not isinstance(data, dict):
            return GapAnalysis(has_gaps=False)
        gaps = GapAnalysis.model_validate(data)
        return GapAnalysis(
            has_gaps=gaps.has_gaps,
            gaps=gaps.gaps[:MAX_GAPS],
            suggested_queries=gaps.suggested_queries[:MAX_GAPS],
        )

    def synthesize_final_report(self, query: str, all_content: str, iterations: int) -> str:
        system = (
            "You are a Senior Research Analyst creating a final research report.\n"
            "Synthesize all the gathered information into a comprehensive, well-structured report.\n\n"
            "Requirements:\n"
            "- Use clear headings and subheadings\n"
            "- Include key statistics and facts\n"
            "- Cite sources where possible (use [Source: URL] format)\n"
            "- Highlight conflicting viewpoints if any\n"
            "- Provide actionable conclusions\n"
            "- Use Markdown formatting"
        )
        user = (
            f"Research Query: {query}\n\n"
            f"This report is based on {iterations} research iteration(s).\n\n"
            f"Research Content:\n{truncate_content(all_content)}"
        )
        return self.generate_text(user, system=system, temperature=0.5)


class OpenAICompatibleClient(LLMClient):
    base_url: str

    def __init__(
        self,
        api_key: str,
        model: str | None = None,
        *,
        client: OpenAI | None = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(api_key, model, sleeper=sleeper)
        # SDK retries are disabled; backoff is handled by generate_text
        self._client = client or OpenAI(
            base_url=self.base_url,
            api_key=(api_key or "").strip(),
            max_retries=0,
            timeout=settings.LLM_TIMEOUT_SECONDS,
        )

    def _request_options(self, temperature: float | None) -> dict[str, Any]:
        return {"temperature": temperature if temperature is not None else 0.7}

    def _complete(self, prompt: str, *, system: str | None = None, temperature: float | None = None) -> str:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        try:
            resp = self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                **self._request_options(temperature),
            )
        except openai.APIStatusError as e:
            retry_after = parse_retry_delay(e.response.headers.get("retry-after")) if e.response is not None else None
            if retry_after is None:
                retry_after = _find_retry_delay(e.body)
            raise LLMProviderError(
                f"{self.provider} API error {e.status_code}: {e.message}",
                provider=self.provider,
                status_code=e.status_code,
                retry_after=retry_after,
            ) from e
        except openai.APIError as e:
            raise LLMProviderError(
                f"{self.provider} request failed: {e}",
                provider=self.provider,
            ) from e

        if not resp.choices:
            raise LLMProviderError(f"{self.provider} returned no choices", provider=self.provider)
        return (resp.choices[0].message.content or "").strip()


class GeminiClient(OpenAICompatibleClient):
    provider = PROVIDER_GEMINI
    default_model = settings.GEMINI_DEFAULT_MODEL
    base_url = settings.GEMINI_BASE_URL


class GroqClient(OpenAICompatibleClient):
    provider = PROVIDER_GROQ
    default_model = settings.GROQ_DEFAULT_MODEL
    base_url = settings.GROQ_BASE_URL

    def _resolve_model(self, model: str | None) -> str:
        # Only Groq-hosted families are accepted; a Gemini preference falls back to the default
        name = sanitize_model_name(model)
        if name and ("llama" in name.lower() or "mixtral" in name.lower()):
            return name
        return self.default_model

    def _request_options(self, temperature: float | None) -> dict[str, Any]:
        return {
            "temperature": temperature if temperature is not None else settings.GROQ_TEMPERATURE,
            "max_tokens": settings.GROQ_MAX_TOKENS,
        }


_CLIENTS: dict[str, type[LLMClient]] = {
    PROVIDER_GEMINI: GeminiClient,
    PROVIDER_GROQ: GroqClient,
}


def create_llm_client(provider: str, api_key: str, model: str | None = None) -> LLMClient:
    provider = (provider or PROVIDER_GEMINI).upper()
    client_cls = _CLIENTS.get(provider)
    if client_cls is None:
        raise LLMError(f"Unsupported LLM provider: {provider}")
    return client_cls(api_key, model)


def get_llm_client_with_fallback(
    primary_provider: str,
    primary_key: str | None,
    fallback_provider: str,
    fallback_key: str | None,
    model: str | None = None,
    *,
    factory: Callable[..., LLMClient] = create_llm_client,
) -> tuple[LLMClient, str]:
    """
    Pick the backend for one unit of work.

    A trivial canary call runs against the primary first. A quota, rate-limit
    or not-found failure switches to the fallback (with its default model)
    when a fallback key exists; anything else propagates.
    """
    if not primary_key:
        if fallback_key:
            logger.warning(
                "No %s key configured; using %s",
                primary_provider,
                fallback_provider,
                extra={"provider": fallback_provider},
            )
            return factory(fallback_provider, fallback_key), fallback_provider
        raise LLMError(f"No API key configured for {primary_provider}")

    primary = factory(primary_provider, primary_key, model)
    try:
        # Single attempt: a rate-limited primary switches now instead of backing off first
        primary.refine_prompt("test", retry=False)
        return primary, primary_provider
    except Exception as e:
        if is_fallback_error(e) and fallback_key:
            logger.warning(
                "%s unavailable (%s); falling back to %s",
                primary_provider,
                e,
                fallback_provider,
                extra={"provider": fallback_provider},
            )
            return factory(fallback_provider, fallback_key), fallback_provider
        raise


def other_provider(provider: str) -> str:
    return PROVIDER_GROQ if (provider or "").upper() == PROVIDER_GEMINI else PROVIDER_GEMINI
