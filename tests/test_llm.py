"""
Tests for llm.py - JSON recovery, backoff, backends and fallback selection
"""
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from research_engine.services.llm import (
    PROVIDER_GEMINI,
    PROVIDER_GROQ,
    GeminiClient,
    GroqClient,
    LLMError,
    LLMProviderError,
    NoParseableJSONError,
    extract_json,
    get_llm_client_with_fallback,
    is_fallback_error,
    parse_retry_delay,
    sanitize_model_name,
)

from tests.fixtures.research_fakes import ScriptedLLM


def _completion(text):
    resp = MagicMock()
    resp.choices = [MagicMock()]
    resp.choices[0].message.content = text
    return resp


def _rate_limit_error(retry_after="2"):
    request = httpx.Request("POST", "https://llm.test/chat/completions")
    response = httpx.Response(429, request=request, headers={"retry-after": retry_after})
    return openai.RateLimitError("Rate limit exceeded", response=response, body=None)


# ---------------------------------------------------------------------------
# JSON recovery
# ---------------------------------------------------------------------------

class TestExtractJson:
    """generate_json tolerates prose and code fences around the payload."""

    def test_plain_json(self):
        assert extract_json('{"a": 1}') == {"a": 1}

    def test_fenced_block_wins(self):
        text = 'Here you go:\n```json\n[{"pain": "x"}]\n```\nHope that helps {not json}'
        assert extract_json(text) == [{"pain": "x"}]

    def test_balanced_span_inside_prose(self):
        text = 'Sure! The answer is {"hasGaps": true, "gaps": ["pricing"]} as requested.'
        assert extract_json(text) == {"hasGaps": True, "gaps": ["pricing"]}

    def test_array_inside_prose(self):
        assert extract_json('Queries: ["a b", "c d"]. Done.') == ["a b", "c d"]

    def test_braces_inside_strings_do_not_break_the_span(self):
        text = 'Result: {"quote": "use {curly} braces", "n": 2} end'
        assert extract_json(text) == {"quote": "use {curly} braces", "n": 2}

    def test_broken_fence_falls_back_to_span(self):
        text = '```json\n{oops\n```\nActual: {"ok": true}'
        assert extract_json(text) == {"ok": True}

    def test_citation_markers_before_the_payload_are_skipped(self):
        markers = " ".join(f"[{i}]" for i in range(60))
        assert extract_json(f'Sources: {markers} Result: {{"x": 1}}') == {"x": 1}

    def test_string_array_after_citation_markers(self):
        assert extract_json('See [1] and [2]. Queries: ["pricing", "churn"]') == ["pricing", "churn"]

    def test_number_array_is_returned_when_nothing_else_parses(self):
        assert extract_json("Scores: [1, 2] then nothing") == [1, 2]

    @pytest.mark.parametrize("text", ["", "no json here", "{broken: json", "[1, 2"])
    def test_unrecoverable_raises_distinct_error(self, text):
        with pytest.raises(NoParseableJSONError):
            extract_json(text)

    def test_no_parseable_json_is_an_llm_error(self):
        """Callers that degrade on LLMError also degrade on unparseable output."""
        assert issubclass(NoParseableJSONError, LLMError)


# ---------------------------------------------------------------------------
# Backoff helpers
# ---------------------------------------------------------------------------

class TestRetryHelpers:
    @pytest.mark.parametrize("value,expected", [("30s", 30.0), ("1.5s", 1.5), ("12", 12.0), (7, 7.0), (None, None), ("soon", None)])
    def test_parse_retry_delay(self, value, expected):
        assert parse_retry_delay(value) == expected

    @pytest.mark.parametrize("exc", [
        LLMProviderError("x", provider="GEMINI", status_code=429),
        LLMProviderError("x", provider="GEMINI", status_code=404),
        LLMError("Quota exceeded for project"),
        LLMError("model not found"),
        LLMError("rate limit reached"),
    ])
    def test_fallback_class_errors(self, exc):
        assert is_fallback_error(exc) is True

    def test_other_errors_are_not_fallback_class(self):
        assert is_fallback_error(LLMProviderError("bad request", provider="GEMINI", status_code=400)) is False


class TestGenerateTextBackoff:
    """Rate-limited calls are retried with backoff up to LLM_MAX_RETRIES attempts."""

    def test_recovers_after_rate_limit(self):
        sleeps = []
        sdk = MagicMock()
        sdk.chat.completions.create.side_effect = [_rate_limit_error("3"), _completion("hello")]
        client = GeminiClient("key", client=sdk, sleeper=sleeps.append)

        assert client.generate_text("hi") == "hello"
        assert sleeps == [3.0]

    def test_server_delay_below_minimum_uses_exponential_backoff(self):
        sleeps = []
        sdk = MagicMock()
        sdk.chat.completions.create.side_effect = [_rate_limit_error("0"), _completion("ok")]
        client = GeminiClient("key", client=sdk, sleeper=sleeps.append)

        client.generate_text("hi")
        assert sleeps == [2.0]

    def test_gives_up_after_max_attempts(self):
        sdk = MagicMock()
        sdk.chat.completions.create.side_effect = [_rate_limit_error("1")] * 5
        client = GeminiClient("key", client=sdk, sleeper=lambda s: None)

        with pytest.raises(LLMProviderError) as exc_info:
            client.generate_text("hi")
        assert exc_info.value.status_code == 429
        assert sdk.chat.completions.create.call_count == 3

    def test_non_rate_limit_errors_are_not_retried(self):
        llm = ScriptedLLM([LLMProviderError("bad request", provider="FAKE", status_code=400)])
        with pytest.raises(LLMProviderError):
            llm.generate_text("hi")
        assert len(llm.calls) == 1


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class TestBackends:
    def test_gemini_default_and_alias(self):
        assert GeminiClient("k", client=MagicMock()).model == "gemini-2.0-flash"
        assert GeminiClient("k", "gemini-2.5-flash-preview-05-20", client=MagicMock()).model == "gemini-2.0-flash"
        assert sanitize_model_name("  gemini-1.5-pro ") == "gemini-1.5-pro"

    def test_groq_only_accepts_llama_and_mixtral(self):
        """A Gemini preference passed to Groq falls back to the Groq default."""
        assert GroqClient("k", "gemini-2.0-flash", client=MagicMock()).model == "llama-3.3-70b-versatile"
        assert GroqClient("k", "mixtral-8x7b-32768", client=MagicMock()).model == "mixtral-8x7b-32768"

    def test_groq_sends_temperature_and_max_tokens(self):
        sdk = MagicMock()
        sdk.chat.completions.create.return_value = _completion("ok")
        GroqClient("k", client=sdk).generate_text("hi", system="be brief")

        kwargs = sdk.chat.completions.create.call_args.kwargs
        assert kwargs["max_tokens"] == 4096
        assert kwargs["temperature"] == 0.7
        assert kwargs["messages"][0] == {"role": "system", "content": "be brief"}


# ---------------------------------------------------------------------------
# Research operations
# ---------------------------------------------------------------------------

class TestResearchOperations:
    def test_identify_gaps_parses_and_caps(self):
        llm = ScriptedLLM(['{"hasGaps": true, "gaps": ["a","b","c","d"], "suggestedQueries": ["q1","q2","q3","q4"]}'])
        gaps = llm.identify_gaps("goal", "content")
        assert gaps.has_gaps is True
        assert gaps.gaps == ["a", "b", "c"]
        assert gaps.suggested_queries == ["q1", "q2", "q3"]

    def test_identify_gaps_unparseable_means_no_gaps(self):
        gaps = ScriptedLLM(["I think it's fine"]).identify_gaps("goal", "content")
        assert gaps.has_gaps is False
        assert gaps.suggested_queries == []

    def test_identify_gaps_truncates_content(self):
        llm = ScriptedLLM(['{"hasGaps": false}'])
        llm.identify_gaps("goal", "x" * 20_000)
        assert llm.calls[0]["prompt"].count("x") <= 8_000 + 10

    def test_analyze_content_non_json_keeps_text_as_summary(self):
        result = ScriptedLLM(["Plain prose summary"]).analyze_content("goal", "content")
        assert result.insights == []
        assert result.summary == "Plain prose summary"

    def test_analyze_content_parses_insights(self):
        llm = ScriptedLLM(['{"insights": [{"title": "T", "content": "C", "category": "x", "confidence": 80}], "summary": "S", "trends": "one"}'])
        result = llm.analyze_content("goal", "content")
        assert result.insights[0].confidence == pytest.approx(0.8)
        assert result.trends == ["one"]

    def test_refine_prompt_falls_back_to_original_on_empty_reply(self):
        assert ScriptedLLM([""]).refine_prompt("original ask") == "original ask"

    def test_refine_prompt_carries_the_scope(self):
        llm = ScriptedLLM(["Refined ask"])
        assert llm.refine_prompt("ask", "MARKET_ANALYSIS") == "Refined ask"
        assert "User Scope: MARKET_ANALYSIS" in llm.calls[0]["prompt"]
        assert 'User Request: "ask"' in llm.calls[0]["prompt"]

    def test_refine_prompt_defaults_to_general_scope(self):
        llm = ScriptedLLM(["Refined ask"])
        llm.refine_prompt("ask")
        assert "User Scope: GENERAL" in llm.calls[0]["prompt"]

    def test_refine_prompt_without_retry_is_a_single_call(self):
        sleeps = []
        sdk = MagicMock()
        sdk.chat.completions.create.side_effect = [_rate_limit_error("1"), _completion("never reached")]
        client = GeminiClient("key", client=sdk, sleeper=sleeps.append)

        with pytest.raises(LLMProviderError):
            client.refine_prompt("test", retry=False)
        assert sdk.chat.completions.create.call_count == 1
        assert sleeps == []


# ---------------------------------------------------------------------------
# Fallback selection
# ---------------------------------------------------------------------------

class TestFallbackSelection:
    """Canary-then-commit selection between two backends."""

    def _factory(self, behaviours):
        created = []

        def factory(provider, key, model=None):
            # An empty marker matches every prompt, so the failure repeats on retries
            rules = [("", behaviours[provider])] if provider in behaviours else None
            llm = ScriptedLLM(rules=rules, default="ok")
            llm.provider = provider
            llm.created_with = (provider, key, model)
            created.append(llm)
            return llm

        return factory, created

    def test_healthy_primary_is_used(self):
        factory, created = self._factory({})
        client, used = get_llm_client_with_fallback(PROVIDER_GEMINI, "g", PROVIDER_GROQ, "q", "gemini-x", factory=factory)
        assert used == PROVIDER_GEMINI
        assert client.created_with == (PROVIDER_GEMINI, "g", "gemini-x")
        assert len(created) == 1

    def test_quota_failure_switches_to_fallback_with_default_model(self):
        factory, created = self._factory({PROVIDER_GEMINI: LLMError("429 quota exceeded")})
        client, used = get_llm_client_with_fallback(PROVIDER_GEMINI, "g", PROVIDER_GROQ, "q", "gemini-x", factory=factory)
        assert used == PROVIDER_GROQ
        assert client.created_with == (PROVIDER_GROQ, "q", None)

    def test_rate_limited_primary_switches_without_backing_off(self):
        limited = LLMProviderError("rate limited", provider=PROVIDER_GEMINI, status_code=429)
        factory, created = self._factory({PROVIDER_GEMINI: limited})

        _, used = get_llm_client_with_fallback(PROVIDER_GEMINI, "g", PROVIDER_GROQ, "q", factory=factory)

        assert used == PROVIDER_GROQ
        assert len(created[0].calls) == 1

    def test_quota_failure_without_fallback_key_propagates(self):
        factory, _ = self._factory({PROVIDER_GEMINI: LLMError("429 quota exceeded")})
        with pytest.raises(LLMError):
            get_llm_client_with_fallback(PROVIDER_GEMINI, "g", PROVIDER_GROQ, None, factory=factory)

    def test_non_fallback_error_propagates_even_with_fallback_key(self):
        factory, _ = self._factory({PROVIDER_GEMINI: LLMProviderError("invalid key", provider="GEMINI", status_code=401)})
        with pytest.raises(LLMProviderError):
            get_llm_client_with_fallback(PROVIDER_GEMINI, "g", PROVIDER_GROQ, "q", factory=factory)

    def test_missing_primary_key_uses_fallback(self):
        factory, created = self._factory({})
        client, used = get_llm_client_with_fallback(PROVIDER_GEMINI, None, PROVIDER_GROQ, "q", factory=factory)
        assert used == PROVIDER_GROQ
        assert len(created) == 1

    def test_no_keys_at_all_raises(self):
        factory, _ = self._factory({})
        with pytest.raises(LLMError):
            get_llm_client_with_fallback(PROVIDER_GEMINI, None, PROVIDER_GROQ, None, factory=factory)
