"""
Tests for the collection job ledger state machine.
"""

from datetime import date, timedelta

import pytest

from analytics.job_ledger import JobLedger
from database.helpers import utcnow
from utils.schemas import JobStatus, JobType


@pytest.fixture
def ledger(session_factory):
    return JobLedger(session_factory)


class TestTransitions:
    @pytest.mark.asyncio
    async def test_happy_path(self, ledger):
        job_id = await ledger.create_job("owner-1", JobType.DAILY_CHANNEL, data_date=date(2024, 5, 1))
        assert (await ledger.get_job(job_id)).status == JobStatus.PENDING

        assert await ledger.mark_running(job_id) is True
        job = await ledger.get_job(job_id)
        assert job.status == JobStatus.RUNNING
        assert job.started_at is not None

        assert await ledger.mark_completed(job_id) is True
        job = await ledger.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None
        assert job.data_date == date(2024, 5, 1)

    @pytest.mark.asyncio
    async def test_failed_records_message(self, ledger):
        job_id = await ledger.create_job("owner-1", JobType.FULL_COLLECTION)
        await ledger.mark_running(job_id)
        assert await ledger.mark_failed(job_id, "twitch API error: 500") is True
        job = await ledger.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == "twitch API error: 500"

    @pytest.mark.asyncio
    async def test_pending_can_fail_directly(self, ledger):
        job_id = await ledger.create_job("owner-1", JobType.VIDEO_DATA)
        assert await ledger.mark_failed(job_id, "cancelled") is True

    @pytest.mark.asyncio
    async def test_terminal_states_are_final(self, ledger):
        done = await ledger.create_job("owner-1", JobType.VIDEO_DATA)
        await ledger.mark_running(done)
        await ledger.mark_completed(done)
        assert await ledger.mark_failed(done, "late failure") is False
        assert await ledger.mark_running(done) is False
        assert (await ledger.get_job(done)).status == JobStatus.COMPLETED

        failed = await ledger.create_job("owner-1", JobType.VIDEO_DATA)
        await ledger.mark_failed(failed, "boom")
        assert await ledger.mark_running(failed) is False
        assert await ledger.mark_completed(failed) is False

    @pytest.mark.asyncio
    async def test_complete_requires_running(self, ledger):
        job_id = await ledger.create_job("owner-1", JobType.VIDEO_DATA)
        assert await ledger.mark_completed(job_id) is False

    @pytest.mark.asyncio
    async def test_failure_needs_message(self, ledger):
        job_id = await ledger.create_job("owner-1", JobType.VIDEO_DATA)
        with pytest.raises(ValueError):
            await ledger.mark_failed(job_id, "")

    @pytest.mark.asyncio
    async def test_unknown_job_type(self, ledger):
        with pytest.raises(ValueError):
            await ledger.create_job("owner-1", "weekly_digest")


class TestBulkAndQueries:
    @pytest.mark.asyncio
    async def test_fail_unfinished_skips_terminal(self, ledger):
        pending = await ledger.create_job("owner-1", JobType.DAILY_CHANNEL)
        running = await ledger.create_job("owner-2", JobType.DAILY_CHANNEL)
        done = await ledger.create_job("owner-3", JobType.DAILY_CHANNEL)
        await ledger.mark_running(running)
        await ledger.mark_running(done)
        await ledger.mark_completed(done)

        assert await ledger.fail_unfinished([pending, running, done], "shutting down") == 2
        assert (await ledger.get_job(pending)).error_message == "shutting down"
        assert (await ledger.get_job(done)).status == JobStatus.COMPLETED
        assert await ledger.fail_unfinished([], "nothing") == 0

    @pytest.mark.asyncio
    async def test_recent_jobs_newest_first(self, ledger):
        ids = [await ledger.create_job("owner-1", JobType.DAILY_CHANNEL) for _ in range(3)]
        await ledger.create_job("owner-2", JobType.DAILY_CHANNEL)

        jobs = await ledger.recent_jobs("owner-1", limit=2)
        assert [j.id for j in jobs] == [ids[2], ids[1]]

    @pytest.mark.asyncio
    async def test_status_counts(self, ledger):
        a = await ledger.create_job("owner-1", JobType.DAILY_CHANNEL)
        await ledger.create_job("owner-2", JobType.DAILY_CHANNEL)
        await ledger.mark_failed(a, "boom")

        counts = await ledger.status_counts(since=utcnow() - timedelta(hours=1))
        assert counts == {"pending": 1, "running": 0, "completed": 0, "failed": 1}
        assert await ledger.status_counts(since=utcnow() + timedelta(hours=1)) == {
            "pending": 0, "running": 0, "completed": 0, "failed": 0,
        }

    @pytest.mark.asyncio
    async def test_get_missing_job(self, ledger):
        assert await ledger.get_job(999) is None
