"""
Tests for deep_research.py - delegate client and output flattening
"""
import json

import httpx
import pytest

from research_engine.services.deep_research import (
    DeepResearchClient,
    DeepResearchError,
    Interaction,
    interaction_to_sources,
)


def _interaction(outputs, status="completed", id="int-42"):
    return Interaction.model_validate({"id": id, "status": status, "outputs": outputs})


class TestDeepResearchClient:
    def test_create_task_starts_a_background_interaction(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["key"] = request.headers["x-goog-api-key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "int-1", "status": "processing"})

        client = DeepResearchClient("gemini-key", transport=httpx.MockTransport(handler))
        interaction = client.create_task("Research freelancer invoicing")

        assert interaction.id == "int-1"
        assert interaction.finished is False
        assert seen["method"] == "POST"
        assert seen["url"].endswith("/interactions")
        assert seen["key"] == "gemini-key"
        assert seen["body"]["background"] is True
        assert seen["body"]["input"] == "Research freelancer invoicing"

    def test_get_status_parses_outputs(self):
        payload = {"id": "int-1", "status": "completed", "unknownField": 1,
                   "outputs": [{"role": "model", "parts": [{"text": "Report"}]}]}
        client = DeepResearchClient("k", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=payload)))

        interaction = client.get_status("int-1")

        assert interaction.finished is True
        assert interaction.outputs[0].parts[0].text == "Report"

    def test_api_error_carries_the_message(self):
        handler = lambda r: httpx.Response(403, json={"error": {"message": "API key not valid"}})
        client = DeepResearchClient("bad", transport=httpx.MockTransport(handler))

        with pytest.raises(DeepResearchError, match="403: API key not valid"):
            client.create_task("x")

    def test_non_json_error_uses_reason_phrase(self):
        client = DeepResearchClient("k", transport=httpx.MockTransport(lambda r: httpx.Response(502, text="<html>")))
        with pytest.raises(DeepResearchError, match="502: Bad Gateway"):
            client.get_status("int-1")

    @pytest.mark.parametrize("error,expected", [
        ({"message": "quota"}, "quota"),
        ("plain failure", "plain failure"),
        (None, "unknown error"),
    ])
    def test_error_message(self, error, expected):
        interaction = Interaction.model_validate({"id": "x", "status": "failed", "error": error})
        assert interaction.error_message == expected


class TestInteractionToSources:
    def test_steps_thoughts_and_final_report(self):
        interaction = _interaction([
            {"parts": [{"text": "Searched "}, {"text": "twelve sites."}]},
            {"parts": [{"thought": {"summary": "Compare pricing", "signature": "sig"}}]},
            {"parts": [{"text": "# Final findings"}]},
        ])

        sources = interaction_to_sources(interaction)

        assert [s.url for s in sources] == [
            "interaction://int-42/step-0",
            "interaction://int-42/thought-1",
            "interaction://int-42/final-report",
        ]
        assert sources[0].raw_content == "Searched twelve sites."
        assert sources[0].title == "Research Step 1"
        assert "Summary: Compare pricing" in sources[1].raw_content
        assert sources[2].raw_content == "# Final findings"
        assert all(s.provider == "deep_research" for s in sources)

    def test_final_report_is_always_present(self):
        sources = interaction_to_sources(_interaction([]))
        assert len(sources) == 1
        assert sources[0].url == "interaction://int-42/final-report"
        assert sources[0].raw_content == "No output generated from Deep Research agent."

    def test_missing_final_text_with_other_outputs(self):
        sources = interaction_to_sources(_interaction([
            {"parts": [{"text": "Step text"}]},
            {"parts": [{"thought": {"summary": None}}]},
        ]))
        assert sources[-1].raw_content == "No final report text found."
        assert "Summary: No summary" in sources[1].raw_content
