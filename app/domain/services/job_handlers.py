"""
Handlers לתור העבודות.

webhook-processing: עיבוד אירוע שמור אחד. אירוע שכבר עובד מדולג
(redelivery). עיבוד שנכשל זורק JobHandlerError כדי שהתור ינסה שוב.

reminder-processing: ריצת תזכורות לחברה אחת.
"""
from app.core.exceptions import JobHandlerError
from app.core.logging import get_logger
from app.db.models.job import JobType
from app.domain.services.event_processor import EventProcessor
from app.domain.services.job_queue import JobContext, job_handler
from app.domain.services.reminder_scheduler import ReminderScheduler

logger = get_logger(__name__)


@job_handler(JobType.WEBHOOK_PROCESSING)
async def handle_webhook_job(ctx: JobContext) -> None:
    job_id = ctx.job.id
    payload = ctx.job.payload or {}
    event_id = payload.get("event_id")
    company_id = payload.get("company_id") or ctx.job.company_id

    if not company_id:
        raise JobHandlerError("Company context required for webhook processing", job_id)
    if not event_id:
        raise JobHandlerError("Webhook job payload has no event_id", job_id)

    processor = EventProcessor(ctx.db)
    event = await processor.get_event(event_id, company_id)
    if event is None:
        raise JobHandlerError(f"Event {event_id} not found", job_id)

    if event.processed:
        logger.info(
            "Event already processed, skipping",
            extra_data={"event_id": event_id, "job_id": job_id}
        )
        return

    if not await processor.process_and_mark(event, company_id):
        raise JobHandlerError(f"Processing failed for event {event_id}", job_id)


@job_handler(JobType.REMINDER_PROCESSING)
async def handle_reminder_job(ctx: JobContext) -> None:
    job_id = ctx.job.id
    company_id = (ctx.job.payload or {}).get("company_id") or ctx.job.company_id
    if not company_id:
        raise JobHandlerError("Reminder job has no company_id", job_id)

    scheduler = ReminderScheduler(ctx.db, session_factory=ctx.session_factory)
    result = await scheduler.process_company(company_id)
    logger.info(
        "Reminder job finished",
        extra_data={"job_id": job_id, "company_id": company_id, **result.to_dict()}
    )
