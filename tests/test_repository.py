"""
Tests for repository.py / retention.py - SQL persistence on an in-memory database
"""
from datetime import datetime, timedelta
from uuid import uuid4

from research_engine.models.action_item import ActionItem
from research_engine.models.cached_extraction import CachedExtraction
from research_engine.models.research_insight import ResearchInsight
from research_engine.models.research_run import ResearchRun, RunStatus, SearchMethod
from research_engine.models.research_source import ResearchSource
from research_engine.models.step_checkpoint import ResearchStepCheckpoint
from research_engine.models.user_settings import UserSettings
from research_engine.schemas.pipeline import (
    ActionItemDraft,
    AnalysisResult,
    CompetitorProfile,
    ExtractionResult,
    Insight,
    LeadDraft,
    SourceType,
)
from research_engine.services.repository import (
    MAX_EXCERPT_CHARS,
    MAX_SOURCE_CONTENT_CHARS,
    SqlResearchRepository,
)
from research_engine.services.retention import purge_expired

from tests.fixtures.research_fakes import make_source

NOW = datetime(2026, 6, 1, 12, 0, 0)


def _add_run(db, status=RunStatus.PENDING, prompt_hash="hash-1", completed_at=None, **kwargs):
    run = ResearchRun(
        user_id=kwargs.pop("user_id", "user-1"),
        original_prompt="freelancer invoicing",
        refined_prompt="freelancer invoicing",
        prompt_hash=prompt_hash,
        search_method=SearchMethod.STANDARD,
        status=status,
        progress=kwargs.pop("progress", 0),
        completed_at=completed_at,
        **kwargs,
    )
    db.add(run)
    db.commit()
    return run


# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------

class TestRunLifecycle:
    def test_get_run_snapshot(self, db_session):
        run = _add_run(db_session)
        snapshot = SqlResearchRepository(db_session).get_run(run.id)
        assert snapshot.id == run.id
        assert snapshot.status == RunStatus.PENDING
        assert snapshot.prompt_hash == "hash-1"
        assert SqlResearchRepository(db_session).get_run(uuid4()) is None

    def test_in_progress_only_from_pending(self, db_session):
        repo = SqlResearchRepository(db_session)
        pending = _add_run(db_session)
        cancelled = _add_run(db_session, status=RunStatus.CANCELLED)

        repo.mark_in_progress(pending.id)
        repo.mark_in_progress(cancelled.id)

        assert repo.get_status(pending.id) == RunStatus.IN_PROGRESS
        assert repo.get_status(cancelled.id) == RunStatus.CANCELLED

    def test_progress_only_moves_forward_and_is_clamped(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session)

        repo.update_progress(run.id, 60)
        repo.update_progress(run.id, 30)
        assert repo.get_run(run.id).progress == 60

        repo.update_progress(run.id, 250)
        assert repo.get_run(run.id).progress == 100

    def test_mark_completed(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session, status=RunStatus.IN_PROGRESS, progress=90, error_message="old")

        repo.mark_completed(run.id)

        db_session.refresh(run)
        assert run.status == RunStatus.COMPLETED
        assert run.progress == 100
        assert run.error_message is None
        assert run.completed_at is not None

    def test_completion_never_overrides_cancellation(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session, status=RunStatus.CANCELLED)
        repo.mark_completed(run.id)
        assert repo.get_status(run.id) == RunStatus.CANCELLED

    def test_mark_failed_truncates_message(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session, status=RunStatus.IN_PROGRESS)

        repo.mark_failed(run.id, "x" * 800)

        db_session.refresh(run)
        assert run.status == RunStatus.FAILED
        assert len(run.error_message) == 500

    def test_cancel_only_unfinished_runs(self, db_session):
        repo = SqlResearchRepository(db_session)
        running = _add_run(db_session, status=RunStatus.IN_PROGRESS)
        done = _add_run(db_session, status=RunStatus.COMPLETED)

        assert repo.mark_cancelled(running.id) is True
        assert repo.mark_cancelled(running.id) is False
        assert repo.mark_cancelled(done.id) is False
        assert repo.mark_cancelled(uuid4()) is False
        assert repo.get_status(running.id) == RunStatus.CANCELLED

    def test_reset_for_retry_clears_analysis_but_keeps_sources(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session, status=RunStatus.FAILED, progress=70, error_message="boom")
        repo.add_sources(run.id, [make_source("https://a")])
        repo.add_insights(run.id, [Insight(title="t", content="c")])
        repo.add_competitors(run.id, [CompetitorProfile(name="Acme")])
        repo.replace_action_items(run.id, [ActionItemDraft(description="do it")])
        repo.set_analysis_result(run.id, AnalysisResult(summary="s"))
        repo.save_checkpoint(run.id, "save-sources", {"count": 1})

        repo.reset_for_retry(run.id, 30)

        db_session.refresh(run)
        assert run.status == RunStatus.PENDING
        assert run.progress == 30
        assert run.analysis_result is None
        assert run.error_message is None
        assert repo.get_checkpoint(run.id, "save-sources") == (False, None)
        assert db_session.query(ResearchInsight).count() == 0
        assert db_session.query(ActionItem).count() == 0
        assert len(repo.list_sources(run.id)) == 1

    def test_set_refined_prompt_leaves_original_and_hash(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session)

        repo.set_refined_prompt(run.id, "B2B invoicing pain for EU freelancers")
        repo.set_refined_prompt(uuid4(), "ignored")

        db_session.refresh(run)
        assert run.refined_prompt == "B2B invoicing pain for EU freelancers"
        assert run.original_prompt == "freelancer invoicing"
        assert run.prompt_hash == "hash-1"


class TestCredentials:
    def test_missing_settings_row(self, db_session):
        assert SqlResearchRepository(db_session).get_credentials("nobody") is None

    def test_reads_keys(self, db_session):
        db_session.add(UserSettings(user_id="user-1", llm_provider="GROQ", groq_api_key="gq"))
        db_session.commit()

        creds = SqlResearchRepository(db_session).get_credentials("user-1")

        assert creds.llm_provider == "GROQ"
        assert creds.groq_api_key == "gq"
        assert creds.serper_api_key is None
        assert creds.has_llm_key is True


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class TestSources:
    def test_duplicate_urls_are_not_stored_twice(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session)

        assert repo.add_sources(run.id, [make_source("https://a"), make_source("https://b")]) == 2
        assert repo.add_sources(run.id, [make_source("https://a"), make_source("https://c")]) == 1
        assert [s.url for s in repo.list_sources(run.id)] == ["https://a", "https://b", "https://c"]

    def test_content_is_capped_and_metadata_survives(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session)
        source = make_source(
            "https://reddit.com/r/freelance/1",
            content="y" * (MAX_SOURCE_CONTENT_CHARS + 10),
            source_type=SourceType.DISCUSSION_FORUM,
            provider="reddit",
            engagement=120,
            published_at=datetime(2026, 5, 1, 9, 30),
            excerpts=["We chase every invoice by hand"],
        )

        repo.add_sources(run.id, [source])

        row = db_session.query(ResearchSource).one()
        assert len(row.content) == MAX_SOURCE_CONTENT_CHARS
        assert len(row.excerpt) == MAX_EXCERPT_CHARS
        stored = repo.list_sources(run.id)[0]
        assert stored.source_type == SourceType.DISCUSSION_FORUM
        assert stored.metadata.engagement_score == 120
        assert stored.metadata.published_at == datetime(2026, 5, 1, 9, 30)
        assert stored.top_discussion_excerpts[0].text == "We chase every invoice by hand"


class TestAnalysisWrites:
    def test_insights_are_deduplicated_by_title(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session)

        repo.add_insights(run.id, [Insight(title="a", content="1"), Insight(title="b", content="2")])
        added = repo.add_insights(run.id, [Insight(title="b", content="2"), Insight(title="c", content="3")])

        rows = db_session.query(ResearchInsight).order_by(ResearchInsight.position).all()
        assert added == 1
        assert [(r.title, r.position) for r in rows] == [("a", 0), ("b", 1), ("c", 2)]

    def test_analysis_result_is_written_once(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session)

        assert repo.set_analysis_result(run.id, AnalysisResult(summary="first")) is True
        assert repo.set_analysis_result(run.id, AnalysisResult(summary="second")) is False
        assert repo.get_run(run.id).analysis_result["summary"] == "first"

    def test_competitors_are_deduplicated_by_name(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session)
        competitors = [CompetitorProfile(name="FreshBooks", mentions=3, strengths=["brand"])]

        assert repo.add_competitors(run.id, competitors) == 1
        assert repo.add_competitors(run.id, competitors) == 0

    def test_action_items_are_replaced(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session)

        repo.replace_action_items(run.id, [ActionItemDraft(description="old")])
        repo.replace_action_items(run.id, [
            ActionItemDraft(description="first", priority="high", effort=2),
            ActionItemDraft(description="second"),
        ])

        rows = db_session.query(ActionItem).order_by(ActionItem.position).all()
        assert [r.description for r in rows] == ["first", "second"]
        assert rows[0].priority.value == "HIGH"
        assert rows[0].effort == 2

    def test_lead_batches_accumulate(self, db_session):
        repo = SqlResearchRepository(db_session)
        run = _add_run(db_session)

        assert repo.save_leads(run.id, [LeadDraft(name="Dana", company="Ledgerly")]) == 1
        assert repo.save_leads(run.id, [LeadDraft(), LeadDraft()]) == 3

    def test_copy_run_results(self, db_session):
        repo = SqlResearchRepository(db_session)
        source_run = _add_run(db_session, status=RunStatus.COMPLETED)
        target_run = _add_run(db_session)
        repo.add_sources(source_run.id, [make_source("https://a")])
        repo.add_insights(source_run.id, [Insight(title="t", content="c", confidence=0.9)])
        repo.replace_action_items(source_run.id, [ActionItemDraft(description="act", priority="LOW")])
        repo.set_analysis_result(source_run.id, AnalysisResult(summary="cached"))

        repo.copy_run_results(source_run.id, target_run.id)

        assert [s.url for s in repo.list_sources(target_run.id)] == ["https://a"]
        assert repo.get_run(target_run.id).analysis_result["summary"] == "cached"
        copied = db_session.query(ActionItem).filter(ActionItem.run_id == target_run.id).one()
        assert copied.priority.value == "LOW"
        insight = db_session.query(ResearchInsight).filter(ResearchInsight.run_id == target_run.id).one()
        assert insight.confidence == 0.9


# ---------------------------------------------------------------------------
# Caches / checkpoints
# ---------------------------------------------------------------------------

class TestQueryCacheLookup:
    def test_finds_newest_fresh_completed_run(self, db_session):
        repo = SqlResearchRepository(db_session)
        _add_run(db_session, status=RunStatus.COMPLETED, completed_at=NOW - timedelta(hours=5))
        newest = _add_run(db_session, status=RunStatus.COMPLETED, completed_at=NOW - timedelta(hours=1))
        _add_run(db_session, status=RunStatus.FAILED, completed_at=NOW)
        _add_run(db_session, status=RunStatus.COMPLETED, completed_at=NOW, prompt_hash="other")

        assert repo.find_completed_run("hash-1", NOW - timedelta(hours=24)) == newest.id

    def test_window_boundary_and_exclusion(self, db_session):
        repo = SqlResearchRepository(db_session)
        since = NOW - timedelta(hours=24)
        edge = _add_run(db_session, status=RunStatus.COMPLETED, completed_at=since)
        _add_run(db_session, status=RunStatus.COMPLETED, completed_at=since - timedelta(seconds=1),
                 prompt_hash="stale")

        assert repo.find_completed_run("hash-1", since) == edge.id
        assert repo.find_completed_run("hash-1", since, exclude_run_id=edge.id) is None
        assert repo.find_completed_run("stale", since) is None


class TestExtractionCache:
    def test_fresh_non_empty_entries_only(self, db_session):
        repo = SqlResearchRepository(db_session)
        since = NOW - timedelta(days=7)
        repo.save_extraction(ExtractionResult(url="https://fresh", content="body", success=True), NOW)
        repo.save_extraction(ExtractionResult(url="https://old", content="body", success=True),
                             since - timedelta(minutes=1))
        repo.save_extraction(ExtractionResult(url="https://empty", content="", success=True), NOW)

        cached = repo.get_cached_extractions(["https://fresh", "https://old", "https://empty"], since)

        assert list(cached) == ["https://fresh"]
        assert cached["https://fresh"].content == "body"
        assert repo.get_cached_extractions([], since) == {}

    def test_last_write_wins(self, db_session):
        repo = SqlResearchRepository(db_session)
        repo.save_extraction(ExtractionResult(url="https://a", content="v1", success=True), NOW)
        repo.save_extraction(ExtractionResult(url="https://a", content="v2", title="T", success=True),
                             NOW + timedelta(hours=1))

        row = db_session.query(CachedExtraction).one()
        assert row.content == "v2"
        assert row.title == "T"


class TestCheckpoints:
    def test_save_get_and_overwrite(self, db_session):
        repo = SqlResearchRepository(db_session)
        run_id = uuid4()

        assert repo.get_checkpoint(run_id, "discover-sources") == (False, None)
        repo.save_checkpoint(run_id, "discover-sources", [{"url": "https://a"}])
        repo.save_checkpoint(run_id, "discover-sources", [{"url": "https://b"}])
        repo.save_checkpoint(run_id, "poll-wait-1", None)

        assert repo.get_checkpoint(run_id, "discover-sources") == (True, [{"url": "https://b"}])
        assert repo.get_checkpoint(run_id, "poll-wait-1") == (True, None)
        assert db_session.query(ResearchStepCheckpoint).count() == 2

    def test_clear(self, db_session):
        repo = SqlResearchRepository(db_session)
        run_id, other = uuid4(), uuid4()
        repo.save_checkpoint(run_id, "a", 1)
        repo.save_checkpoint(other, "a", 1)

        repo.clear_checkpoints(run_id)

        assert repo.get_checkpoint(run_id, "a") == (False, None)
        assert repo.get_checkpoint(other, "a") == (True, 1)


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

class TestPurgeExpired:
    def test_deletes_stale_extractions_and_finished_run_checkpoints(self, db_session):
        repo = SqlResearchRepository(db_session)
        repo.save_extraction(ExtractionResult(url="https://old", content="x", success=True),
                             NOW - timedelta(days=8))
        repo.save_extraction(ExtractionResult(url="https://new", content="x", success=True),
                             NOW - timedelta(days=1))
        old_done = _add_run(db_session, status=RunStatus.COMPLETED, created_at=NOW - timedelta(days=40))
        old_running = _add_run(db_session, status=RunStatus.IN_PROGRESS, created_at=NOW - timedelta(days=40))
        recent_done = _add_run(db_session, status=RunStatus.FAILED, created_at=NOW - timedelta(days=2))
        for run in (old_done, old_running, recent_done):
            repo.save_checkpoint(run.id, "save-sources", {"count": 1})

        deleted = purge_expired(db_session, now=NOW)

        assert deleted == {"extractions": 1, "checkpoints": 1}
        assert [r.url for r in db_session.query(CachedExtraction)] == ["https://new"]
        assert repo.get_checkpoint(old_done.id, "save-sources")[0] is False
        assert repo.get_checkpoint(old_running.id, "save-sources")[0] is True
        assert repo.get_checkpoint(recent_done.id, "save-sources")[0] is True
        # runs themselves are never removed
        assert db_session.query(ResearchRun).count() == 3
