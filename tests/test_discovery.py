"""
Tests for discovery.py - query/subreddit generation, diversity and enrichment
"""
from research_engine.schemas.pipeline import SourceType
from research_engine.services.discovery import (
    FALLBACK_SUBREDDITS,
    DIVERSITY_QUOTAS,
    diversify,
    discover_sources,
    enrich_thin_web_sources,
    find_relevant_subreddits,
    generate_search_queries,
)
from research_engine.services.llm import LLMError
from research_engine.services.retrieval_cache import RetrievalCache

from tests.fixtures.research_fakes import (
    FakeExtractor,
    FakeProvider,
    InMemoryRepository,
    ScriptedLLM,
    as_json,
    make_source,
)

SUBREDDIT_MARKER = "active subreddits"
QUERY_MARKER = "search queries"


def _discovery_llm(subreddits=None, queries=None):
    return ScriptedLLM(rules=[
        (SUBREDDIT_MARKER, as_json(subreddits if subreddits is not None else ["r/SaaS", "smallbusiness"])),
        (QUERY_MARKER, as_json(queries if queries is not None else ["crm pain points", "crm pricing", "crm churn"])),
    ])


class TestLLMSuggestions:
    def test_queries_are_capped_at_three(self):
        llm = ScriptedLLM([as_json(["a", "b", "c", "d", "e"])])
        assert generate_search_queries(llm, "topic") == ["a", "b", "c"]

    def test_query_failure_falls_back_to_topic_prefix(self):
        llm = ScriptedLLM([LLMError("down")])
        topic = "x" * 80
        assert generate_search_queries(llm, topic) == ["x" * 50]

    def test_unparseable_queries_fall_back_to_topic(self):
        assert generate_search_queries(ScriptedLLM(["no idea"]), "crm") == ["crm"]

    def test_subreddits_drop_prefix_and_cap_at_five(self):
        llm = ScriptedLLM([as_json(["r/a", "b", "", "c", "d", "e", "f"])])
        assert find_relevant_subreddits(llm, "topic") == ["a", "b", "c", "d", "e"]

    def test_subreddit_failure_uses_fallback_set(self):
        assert find_relevant_subreddits(ScriptedLLM([LLMError("down")]), "topic") == FALLBACK_SUBREDDITS


class TestDiversify:
    """Per-type quotas keep one provider from crowding out the rest."""

    def test_quotas_per_source_type(self):
        ranked = (
            [make_source(f"https://r/{i}", source_type=SourceType.DISCUSSION_FORUM, engagement=600) for i in range(12)]
            + [make_source(f"https://hn/{i}", source_type=SourceType.LINK_AGGREGATOR) for i in range(7)]
            + [make_source(f"https://w/{i}", source_type=SourceType.GENERIC_WEB) for i in range(7)]
        )
        picked = diversify(ranked, "")

        counts = {t: sum(1 for s in picked if s.source_type == t) for t in DIVERSITY_QUOTAS}
        assert counts == DIVERSITY_QUOTAS
        # re-ranked together: the high-engagement forum posts lead
        assert picked[0].source_type == SourceType.DISCUSSION_FORUM


class TestEnrichThinWebSources:
    def test_only_thin_web_sources_are_extracted(self):
        repo = InMemoryRepository()
        extractor = FakeExtractor({"https://thin": "Full article text " * 20})
        sources = [
            make_source("https://thin", title="", content="snippet"),
            make_source("https://thick", content="x" * 600),
            make_source("https://forum", source_type=SourceType.DISCUSSION_FORUM, content="short"),
        ]

        enriched = enrich_thin_web_sources(sources, RetrievalCache(repo), extractor)

        assert extractor.calls == ["https://thin"]
        assert enriched[0].raw_content.startswith("Full article text")
        assert enriched[0].title == "Title of https://thin"
        assert enriched[1] is sources[1]
        assert enriched[2] is sources[2]

    def test_failed_extraction_keeps_the_snippet(self):
        sources = [make_source("https://gone", content="snippet")]
        enriched = enrich_thin_web_sources(sources, RetrievalCache(InMemoryRepository()), FakeExtractor())
        assert enriched[0].raw_content == "snippet"


class TestDiscoverSources:
    """End to end with fake providers."""

    def test_runs_all_providers_with_reddit_options(self):
        reddit = FakeProvider("reddit", [
            make_source("https://reddit.example/p1", source_type=SourceType.DISCUSSION_FORUM, engagement=300, content="post"),
        ], source_type=SourceType.DISCUSSION_FORUM)
        hn = FakeProvider("hackernews", [
            make_source("https://hn.example/1", source_type=SourceType.LINK_AGGREGATOR, engagement=120),
        ], source_type=SourceType.LINK_AGGREGATOR)
        web = FakeProvider("serper", [make_source("https://blog.example/crm", content="snippet")])
        extractor = FakeExtractor({"https://blog.example/crm": "Long article " * 50})
        progress = []

        result = discover_sources(
            _discovery_llm(),
            "What frustrates small teams about CRMs?",
            providers=[reddit, hn, web],
            cache=RetrievalCache(InMemoryRepository()),
            extractor=extractor,
            on_progress=progress.append,
        )

        assert result.queries == ["crm pain points", "crm pricing", "crm churn"]
        assert result.subreddits == ["SaaS", "smallbusiness"]
        assert reddit.calls == [{
            "query": "crm pain points",
            "subreddits": ["SaaS", "smallbusiness"],
            "sort_by": "top",
            "max_results": 30,
        }]
        assert hn.calls == [{"query": "crm pain points"}]
        assert {s.url for s in result.sources} == {
            "https://reddit.example/p1", "https://hn.example/1", "https://blog.example/crm",
        }
        web_source = next(s for s in result.sources if s.url == "https://blog.example/crm")
        assert web_source.raw_content.startswith("Long article")
        assert progress and "3 provider(s)" in progress[0]

    def test_failing_provider_does_not_fail_discovery(self):
        reddit = FakeProvider("reddit", error=RuntimeError("blocked"))
        hn = FakeProvider("hackernews", [make_source("https://hn.example/1", source_type=SourceType.LINK_AGGREGATOR)])

        result = discover_sources(
            _discovery_llm(),
            "goal",
            providers=[reddit, hn],
            cache=RetrievalCache(InMemoryRepository()),
            extractor=FakeExtractor(),
        )

        assert [s.url for s in result.sources] == ["https://hn.example/1"]

    def test_llm_outage_still_searches_with_fallbacks(self):
        reddit = FakeProvider("reddit")
        llm = ScriptedLLM(rules=[("", LLMError("down"))])

        result = discover_sources(
            llm,
            "crm frustrations",
            providers=[reddit],
            cache=RetrievalCache(InMemoryRepository()),
            extractor=FakeExtractor(),
        )

        assert reddit.calls[0]["query"] == "crm frustrations"
        assert reddit.calls[0]["subreddits"] == FALLBACK_SUBREDDITS
        assert result.sources == []
