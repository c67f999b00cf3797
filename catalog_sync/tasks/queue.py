from typing import Any, Dict, List, Optional
import asyncio
import structlog
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.config.settings import get_settings
from catalog_sync.core.exceptions import ValidationError
from catalog_sync.models.database import SyncJob, Tenant
from catalog_sync.models.sync import JobPayload, SyncStatus
from catalog_sync.services.job_service import JobService, build_job_payload

logger = structlog.get_logger()

PRIORITY_LEVELS = 10

def to_celery_priority(priority: int) -> int:
    """Map a schedule priority (higher runs first) onto the redis transport's steps (0 runs first)"""
    clamped = max(0, min(PRIORITY_LEVELS - 1, int(priority or 0)))
    return PRIORITY_LEVELS - 1 - clamped

def priority_queue_names(queue_name: str) -> List[str]:
    """Redis list names kombu uses for one logical queue with priority steps"""
    return [queue_name] + [f"{queue_name}:{step}" for step in range(1, PRIORITY_LEVELS)]

def enqueue_sync_job(payload: JobPayload, priority: int = 0) -> str:
    """Publish a job on the sync queue; the job id doubles as the task id"""
    from catalog_sync.tasks.sync_tasks import process_sync_job

    settings = get_settings()
    process_sync_job.apply_async(
        kwargs={"job_data": payload.model_dump(mode="json")},
        task_id=payload.job_id,
        queue=settings.SYNC_QUEUE_NAME,
        priority=to_celery_priority(priority),
    )
    logger.info(
        "Enqueued sync job",
        job_id=payload.job_id,
        tenant_id=payload.tenant_id,
        sync_type=payload.sync_type.value,
        priority=priority,
    )
    return payload.job_id

async def ping_broker() -> bool:
    settings = get_settings()
    client = redis.from_url(settings.CELERY_BROKER_URL)
    try:
        return bool(await client.ping())
    except redis.RedisError as e:
        logger.error("Queue broker unreachable", error=str(e))
        return False
    finally:
        await client.aclose()

def _inspect_workers() -> Dict[str, int]:
    from catalog_sync.tasks.celery_app import celery_app

    inspector = celery_app.control.inspect(timeout=1.0)
    active = inspector.active() or {}
    reserved = inspector.reserved() or {}
    scheduled = inspector.scheduled() or {}
    return {
        "workers": len(set(active) | set(reserved)),
        "active": sum(len(tasks) for tasks in active.values()),
        "reserved": sum(len(tasks) for tasks in reserved.values()),
        "scheduled": sum(len(tasks) for tasks in scheduled.values()),
    }

async def get_queue_stats() -> Dict[str, Any]:
    """Waiting messages per priority step plus what the workers hold"""
    settings = get_settings()
    client = redis.from_url(settings.CELERY_BROKER_URL)
    try:
        names = priority_queue_names(settings.SYNC_QUEUE_NAME)
        depths = [await client.llen(name) for name in names]
    except redis.RedisError as e:
        logger.error("Failed to read queue depth", error=str(e))
        depths = None
    finally:
        await client.aclose()

    workers = await asyncio.to_thread(_inspect_workers)
    return {
        "queue": settings.SYNC_QUEUE_NAME,
        "waiting": sum(depths) if depths is not None else None,
        "waiting_by_step": depths,
        **workers,
    }

async def _enqueue_existing(db: AsyncSession, jobs: JobService, job: SyncJob) -> None:
    tenant = await db.get(Tenant, job.tenant_id)
    if tenant is None:
        raise ValidationError(f"Tenant {job.tenant_id} not found for job {job.id}")
    await jobs.reset_to_pending(job.id)
    enqueue_sync_job(build_job_payload(job, tenant), job.priority)

async def retry_failed_job(db: AsyncSession, job_id: str) -> Optional[SyncJob]:
    """Put a failed job back on the queue; returns None for an unknown job"""
    jobs = JobService(db)
    job = await jobs.get_job(job_id)
    if job is None:
        return None
    if job.status != SyncStatus.FAILED.value:
        raise ValidationError(f"Only failed jobs can be retried, job {job_id} is {job.status}")

    await _enqueue_existing(db, jobs, job)
    logger.info("Retrying failed job", job_id=job_id, tenant_id=job.tenant_id)
    return job

async def recover_stalled_jobs(db: AsyncSession, minutes: Optional[int] = None) -> List[str]:
    """Re-enqueue jobs left in processing by a crashed worker"""
    minutes = minutes or get_settings().STALLED_JOB_MINUTES
    jobs = JobService(db)
    recovered = []
    for job in await jobs.find_stalled_jobs(minutes):
        try:
            await _enqueue_existing(db, jobs, job)
        except ValidationError as e:
            logger.warning("Cannot recover stalled job", job_id=job.id, error=str(e))
            await jobs.mark_failed(job.id, str(e))
            continue
        recovered.append(job.id)

    if recovered:
        logger.warning("Recovered stalled jobs", count=len(recovered), job_ids=recovered)
    return recovered
