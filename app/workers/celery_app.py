"""
Celery Application Configuration

Celery משמש רק כטריגר; מצב העבודות עצמו שמור בטבלת jobs.
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "churn_recovery",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-jobs-every-5-seconds": {
        "task": "app.workers.tasks.process_due_jobs",
        "schedule": 5.0,
    },
    "requeue-stale-jobs-every-minute": {
        "task": "app.workers.tasks.requeue_stale_jobs",
        "schedule": 60.0,
    },
    # ריצת תזכורות יומית — job אחד לכל חברה (singleton לפי תאריך)
    "enqueue-reminders-daily": {
        "task": "app.workers.tasks.enqueue_reminder_jobs",
        "schedule": crontab(hour="9", minute="0"),
    },
    # אירועים שנשמרו אבל ה-job שלהם לא נוצר (כשלון enqueue אחרי commit)
    "sweep-unprocessed-events-every-10-minutes": {
        "task": "app.workers.tasks.sweep_unprocessed_events",
        "schedule": 600.0,
    },
    "cleanup-completed-jobs-daily": {
        "task": "app.workers.tasks.cleanup_completed_jobs",
        "schedule": 86400.0,  # 24 hours
    },
    "cleanup-rate-limit-buckets-daily": {
        "task": "app.workers.tasks.cleanup_rate_limit_buckets",
        "schedule": 86400.0,  # 24 hours
    },
}
