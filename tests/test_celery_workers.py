"""
בדיקות ל-Celery Workers — app/workers/tasks.py ו-job handlers

מכסה:
- עיבוד עבודות webhook מהתור (הצלחה, redelivery, כשלון → retry)
- עבודת תזכורות לחברה
- enqueue יומי, sweep לאירועים יתומים וניקוי
- run_async ו-beat schedule
"""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from app.core.time_utils import utc_now
from app.db.models.job import Job, JobStatus, JobType
from app.db.models.rate_limit_bucket import RateLimitBucket
from app.db.models.recovery_case import CaseStatus, RecoveryCase
from app.domain.services.job_queue import JobQueue
from app.workers.celery_app import celery_app
from app.workers.tasks import (
    _cleanup_completed_jobs,
    _cleanup_rate_limit_buckets,
    _enqueue_reminder_jobs,
    _process_due_jobs,
    _requeue_stale_jobs,
    _run_single_job,
    _sweep_unprocessed_events,
    run_async,
)
from tests.helpers import TEST_COMPANY_ID, make_payload


async def _enqueue_webhook_job(db_session, event_id: str) -> int:
    job_id = await JobQueue(db_session).enqueue(
        JobType.WEBHOOK_PROCESSING,
        {"event_id": event_id, "company_id": TEST_COMPANY_ID},
        TEST_COMPANY_ID,
        singleton_key=event_id,
    )
    await db_session.commit()
    return job_id


async def _job(db_session, job_id: int) -> Job:
    return await db_session.get(Job, job_id, populate_existing=True)


async def _open_cases(db_session) -> int:
    return await db_session.scalar(
        select(func.count()).select_from(RecoveryCase).where(RecoveryCase.status == CaseStatus.OPEN)
    )


# ============================================================================
# webhook-processing
# ============================================================================


class TestWebhookJobs:

    @pytest.mark.unit
    async def test_processes_event_into_case(self, db_session, event_factory, patch_whop_client) -> None:
        await event_factory(make_payload(event_id="evt_job_1"))
        job_id = await _enqueue_webhook_job(db_session, "evt_job_1")

        summary = await _process_due_jobs(db_session)

        assert summary["completed"] == 1
        assert (await _job(db_session, job_id)).status == JobStatus.COMPLETED
        assert await _open_cases(db_session) == 1

    @pytest.mark.unit
    async def test_redelivered_job_skips_processed_event(
        self, db_session, event_factory, patch_whop_client
    ) -> None:
        await event_factory(make_payload(event_id="evt_done"), processed=True)
        job_id = await _enqueue_webhook_job(db_session, "evt_done")

        result = await _run_single_job(db_session, job_id)

        assert result == {"job_id": job_id, "status": "completed"}
        assert await _open_cases(db_session) == 0

    @pytest.mark.unit
    async def test_processing_failure_is_retried(self, db_session, event_factory, patch_whop_client) -> None:
        await event_factory({"id": "evt_broken", "type": "payment_failed"})
        job_id = await _enqueue_webhook_job(db_session, "evt_broken")

        summary = await _process_due_jobs(db_session)

        assert summary["retried"] == 1
        job = await _job(db_session, job_id)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 1
        assert "evt_broken" in job.last_error
        assert job.run_at > utc_now()

    @pytest.mark.unit
    async def test_missing_event_is_retried(self, db_session, patch_whop_client) -> None:
        job_id = await _enqueue_webhook_job(db_session, "evt_never_stored")

        await _run_single_job(db_session, job_id)

        assert (await _job(db_session, job_id)).status == JobStatus.QUEUED

    @pytest.mark.unit
    async def test_job_without_company_fails_until_dead_letter(self, db_session, patch_whop_client) -> None:
        queue = JobQueue(db_session)
        job_id = await queue.enqueue(
            JobType.WEBHOOK_PROCESSING, {"event_id": "evt_x"}, None, max_attempts=1
        )
        await db_session.commit()

        result = await _run_single_job(db_session, job_id)

        assert result["status"] == "failed"
        assert "Company context" in (await _job(db_session, job_id)).last_error


# ============================================================================
# reminder-processing
# ============================================================================


class TestReminderJobs:

    @pytest.mark.unit
    async def test_reminder_job_sends_due_nudges(
        self, db_session, case_factory, configure_company, patch_whop_client
    ) -> None:
        await configure_company()
        await case_factory()
        result = await _enqueue_reminder_jobs(db_session)
        assert result["enqueued"] == 1

        summary = await _process_due_jobs(db_session)

        assert summary["completed"] == 1
        assert len(patch_whop_client.calls_to("send_push")) == 1
        assert len(patch_whop_client.calls_to("send_direct_message")) == 1

    @pytest.mark.unit
    async def test_daily_enqueue_is_idempotent(self, db_session, case_factory, patch_whop_client) -> None:
        await case_factory()

        first = await _enqueue_reminder_jobs(db_session)
        second = await _enqueue_reminder_jobs(db_session)

        assert first["job_ids"] == second["job_ids"]
        assert await db_session.scalar(select(func.count()).select_from(Job)) == 1


# ============================================================================
# תחזוקה
# ============================================================================


class TestMaintenanceTasks:

    @pytest.mark.unit
    async def test_sweep_enqueues_orphans(self, db_session, event_factory, patch_whop_client) -> None:
        await event_factory(make_payload(event_id="evt_orphan"), received_at=utc_now() - timedelta(hours=1))

        assert await _sweep_unprocessed_events(db_session, 300) == {"enqueued": 1}
        assert await _sweep_unprocessed_events(db_session, 300) == {"enqueued": 0}

    @pytest.mark.unit
    async def test_requeue_stale(self, db_session) -> None:
        job = Job(
            job_type=JobType.REMINDER_PROCESSING,
            payload={"company_id": TEST_COMPANY_ID},
            status=JobStatus.ACTIVE,
            attempts=1,
            max_attempts=2,
            started_at=utc_now() - timedelta(hours=1),
        )
        db_session.add(job)
        await db_session.commit()

        assert await _requeue_stale_jobs(db_session, 900) == {"requeued": 1}
        assert (await _job(db_session, job.id)).status == JobStatus.QUEUED

    @pytest.mark.unit
    async def test_cleanup_completed_jobs(self, db_session) -> None:
        old = utc_now() - timedelta(days=10)
        db_session.add_all([
            Job(job_type=JobType.WEBHOOK_PROCESSING, payload={}, status=JobStatus.COMPLETED, completed_at=old),
            Job(job_type=JobType.WEBHOOK_PROCESSING, payload={}, status=JobStatus.FAILED, completed_at=old),
            Job(job_type=JobType.WEBHOOK_PROCESSING, payload={}, status=JobStatus.COMPLETED, completed_at=utc_now()),
        ])
        await db_session.commit()

        assert await _cleanup_completed_jobs(db_session, days=7) == {"deleted": 1}
        assert await db_session.scalar(select(func.count()).select_from(Job)) == 2

    @pytest.mark.unit
    async def test_cleanup_rate_limit_buckets(self, db_session) -> None:
        db_session.add(RateLimitBucket(identifier="webhook:global", window_start_ms=0, count=5))
        await db_session.commit()

        assert await _cleanup_rate_limit_buckets(db_session) == {"deleted": 1}


class TestCeleryPlumbing:

    @pytest.mark.unit
    def test_run_async_runs_on_fresh_loop(self) -> None:
        async def answer() -> int:
            return 42

        assert run_async(answer()) == 42

    @pytest.mark.unit
    def test_beat_schedule(self) -> None:
        tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
        assert tasks == {
            "app.workers.tasks.process_due_jobs",
            "app.workers.tasks.requeue_stale_jobs",
            "app.workers.tasks.enqueue_reminder_jobs",
            "app.workers.tasks.sweep_unprocessed_events",
            "app.workers.tasks.cleanup_completed_jobs",
            "app.workers.tasks.cleanup_rate_limit_buckets",
        }
