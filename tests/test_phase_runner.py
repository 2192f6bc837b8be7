"""Tests for PhaseRunner and call_with_timeout."""

import time

import pytest

from rankscope.executor.errors import CollaboratorTimeoutError, JobCancelledError, ScrapeError
from rankscope.executor.phase_runner import PhaseRunner, call_with_timeout
from rankscope.executor.schemas import LogLevel, PhaseKey


@pytest.fixture
def job_id(store):
    return store.create("https://example.com")


class TestPhaseRunner:
    """Progress and log emission around a phase's work."""

    def test_success_writes_start_and_completion(self, store, job_id):
        """Progress ends at 100 with an info log on entry and a success log on exit."""
        def work(ctx):
            ctx.summary = "Scraped 120 words"
            return "content"

        outcome = PhaseRunner(store, job_id).run(PhaseKey.SCRAPING, work)

        assert outcome.ok
        assert outcome.value == "content"
        phase = store.get(job_id).phases["scraping"]
        assert phase.progress == 100
        assert phase.completed

        logs = store.get_logs(job_id)
        assert logs[0].level == LogLevel.INFO
        assert logs[0].message == "Phase 1: Analyzing website content and structure"
        assert logs[-1].level == LogLevel.SUCCESS
        assert logs[-1].message == "Scraped 120 words"
        assert all(e.phase == "scraping" for e in logs)

    def test_default_success_message(self, store, job_id):
        PhaseRunner(store, job_id).run(PhaseKey.DATA_SAVE, lambda ctx: None)
        assert store.get_logs(job_id)[-1].message == "Data Storage completed"

    def test_failure_returns_outcome(self, store, job_id):
        """An exception is logged and returned; the phase never reaches 100."""
        def work(ctx):
            ctx.report(40)
            raise ScrapeError("Failed to scrape https://example.com/: HTTP 500 Internal Server Error")

        outcome = PhaseRunner(store, job_id).run(PhaseKey.SCRAPING, work)

        assert not outcome.ok
        assert isinstance(outcome.error, ScrapeError)
        phase = store.get(job_id).phases["scraping"]
        assert phase.progress == 40
        assert not phase.completed
        error_log = store.get_logs(job_id)[-1]
        assert error_log.level == LogLevel.ERROR
        assert "HTTP 500" in error_log.message

    @pytest.mark.parametrize("reported,stored", [(0, 1), (50, 50), (100, 99)])
    def test_report_is_rescaled_below_100(self, store, job_id, reported, stored):
        """Only the runner marks a phase done."""
        seen = []

        def work(ctx):
            ctx.report(reported)
            seen.append(store.get(job_id).phases["ai_analysis"].progress)

        PhaseRunner(store, job_id).run(PhaseKey.AI_ANALYSIS, work)
        assert seen == [stored]

    def test_report_marks_sub_task(self, store, job_id):
        def work(ctx):
            ctx.report(25, "Loading", sub_task="Load website content")
            phase = store.get(job_id).phases["scraping"]
            assert phase.detail == "Loading"
            assert phase.sub_tasks[0].completed

        assert PhaseRunner(store, job_id).run(PhaseKey.SCRAPING, work).ok

    def test_cancelled_before_start(self, store, job_id):
        """A pending cancellation stops the phase before its work runs."""
        calls = []
        runner = PhaseRunner(store, job_id, cancellation_check=lambda: True)
        with pytest.raises(JobCancelledError):
            runner.run(PhaseKey.SCRAPING, calls.append)
        assert calls == []
        assert store.get_logs(job_id) == []

    def test_interruption_propagates(self, store, job_id):
        def work(ctx):
            raise InterruptedError("stop")

        with pytest.raises(InterruptedError):
            PhaseRunner(store, job_id).run(PhaseKey.SEARCH_VOLUME, work)

    def test_context_log_tags_phase(self, store, job_id):
        def work(ctx):
            ctx.log(LogLevel.WARNING, "Rank check failed for 'implant'", {"keyword": "implant"})

        PhaseRunner(store, job_id).run(PhaseKey.RANKING_CHECK, work)
        warning = [e for e in store.get_logs(job_id) if e.level == LogLevel.WARNING][0]
        assert warning.phase == "ranking_check"
        assert warning.detail == {"keyword": "implant"}


class TestCallWithTimeout:
    def test_returns_value(self):
        assert call_with_timeout(lambda a, b=0: a + b, 1, 2, b=3) == 5

    def test_timeout_raises(self):
        with pytest.raises(CollaboratorTimeoutError) as exc_info:
            call_with_timeout(time.sleep, 0.05, 0.5, label="Website scrape")
        assert "Website scrape timed out" in str(exc_info.value)

    def test_errors_propagate_unchanged(self):
        def fail():
            raise ScrapeError("connection refused")

        with pytest.raises(ScrapeError, match="connection refused"):
            call_with_timeout(fail, 1)
