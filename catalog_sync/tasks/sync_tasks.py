import asyncio
import structlog
from pydantic import ValidationError as PayloadValidationError

from catalog_sync.config.database import dispose_database
from catalog_sync.config.settings import get_settings
from catalog_sync.core.exceptions import ValidationError
from catalog_sync.models.sync import JobPayload
from catalog_sync.services.job_runner import run_sync_job
from catalog_sync.tasks.celery_app import celery_app

logger = structlog.get_logger()
settings = get_settings()

def retry_countdown(retries: int) -> int:
    """Exponential backoff between attempts of one job"""
    return settings.JOB_RETRY_DELAY_SECONDS * (2 ** retries)

@celery_app.task(
    bind=True,
    acks_late=True,
    rate_limit=settings.QUEUE_RATE_LIMIT,
    max_retries=max(settings.JOB_MAX_ATTEMPTS - 1, 0),
)
def process_sync_job(self, job_data: dict):
    """Celery task running one sync job from its queue payload"""
    try:
        payload = JobPayload.model_validate(job_data)
    except PayloadValidationError as e:
        logger.error("❌ Invalid job payload", error=str(e))
        raise ValidationError(f"Invalid job payload: {e}") from e

    will_retry = self.request.retries < self.max_retries

    async def async_run():
        try:
            result = await run_sync_job(payload, will_retry=will_retry)
        finally:
            await dispose_database()
        return result

    self.update_state(state="PROGRESS", meta={"job_id": payload.job_id, "status": "Running"})
    try:
        result = asyncio.run(async_run())
    except ValidationError:
        # Retrying cannot fix a missing tenant or job
        raise
    except Exception as e:
        if self.request.retries >= self.max_retries:
            logger.error(
                "❌ Sync job exhausted its attempts",
                job_id=payload.job_id,
                attempts=self.request.retries + 1,
                error=str(e),
            )
            raise
        countdown = retry_countdown(self.request.retries)
        logger.warning(
            "Sync job failed, retrying",
            job_id=payload.job_id,
            attempt=self.request.retries + 1,
            countdown=countdown,
            error=str(e),
        )
        raise self.retry(exc=e, countdown=countdown)

    if result is None:
        return {"job_id": payload.job_id, "status": "already_completed"}
    return {
        "job_id": payload.job_id,
        "status": "completed",
        "success": result.success,
        "items_processed": result.items_processed,
        "items_failed": result.items_failed,
        "duration_seconds": result.duration_seconds,
    }
