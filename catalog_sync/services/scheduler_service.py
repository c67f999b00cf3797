from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
import uuid
import structlog
from celery.schedules import ParseException, crontab
from pydantic import BaseModel, Field
from sqlalchemy import and_, delete, inspect as sa_inspect, or_, select, text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from catalog_sync.config.settings import Settings, get_settings
from catalog_sync.models.database import SyncJob, SyncLog, SyncSchedule, Tenant
from catalog_sync.models.sync import JobPayload, SyncStatus, SyncType, TenantStatus
from catalog_sync.services.job_service import JobService, build_job_payload
from catalog_sync.utils.helpers import utcnow

logger = structlog.get_logger()

def calculate_next_run(cron_expression: str, after: datetime) -> datetime:
    """Next fire time of a 5-field cron expression, or one hour later if it cannot be parsed"""
    fields = (cron_expression or "").split()
    if len(fields) != 5:
        logger.warning("Invalid cron expression, defaulting to one hour", cron=cron_expression)
        return after + timedelta(hours=1)

    minute, hour, day_of_month, month_of_year, day_of_week = fields
    reference = after.replace(tzinfo=timezone.utc)
    try:
        schedule = crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
            nowfun=lambda: reference,
        )
        remaining = schedule.remaining_estimate(reference)
    except (ValueError, ParseException) as e:
        logger.warning("Invalid cron expression, defaulting to one hour", cron=cron_expression, error=str(e))
        return after + timedelta(hours=1)

    return (reference + remaining).replace(tzinfo=None)

class SchedulerCycleResult(BaseModel):
    cycle_id: str
    due: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    job_ids: List[str] = Field(default_factory=list)

class SyncScheduler:
    """Turns due schedules into queued sync jobs"""

    def __init__(
        self,
        db: AsyncSession,
        enqueue: Optional[Callable[[JobPayload, int], Any]] = None,
        ping_queue: Optional[Callable[[], Awaitable[bool]]] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.jobs = JobService(db)
        if enqueue is None or ping_queue is None:
            from catalog_sync.tasks.queue import enqueue_sync_job, ping_broker
            enqueue = enqueue or enqueue_sync_job
            ping_queue = ping_queue or ping_broker
        self.enqueue = enqueue
        self.ping_queue = ping_queue

    async def get_due_schedules(self, now: datetime) -> List[SyncSchedule]:
        result = await self.db.execute(
            select(SyncSchedule)
            .join(Tenant, SyncSchedule.tenant_id == Tenant.id)
            .options(selectinload(SyncSchedule.tenant))
            .where(
                SyncSchedule.enabled.is_(True),
                Tenant.status == TenantStatus.ACTIVE.value,
                or_(SyncSchedule.next_run_at.is_(None), SyncSchedule.next_run_at <= now),
            )
            .order_by(SyncSchedule.priority.desc(), SyncSchedule.next_run_at.asc())
            .limit(self.settings.MAX_JOBS_PER_CYCLE)
        )
        return list(result.scalars().all())

    async def check_and_create_jobs(self, now: Optional[datetime] = None) -> SchedulerCycleResult:
        """One scheduler cycle: at most one active job per (tenant, sync type)"""
        now = now or utcnow()
        cycle = SchedulerCycleResult(cycle_id=uuid.uuid4().hex[:8])

        with structlog.contextvars.bound_contextvars(scheduler_cycle=cycle.cycle_id):
            schedules = await self.get_due_schedules(now)
            cycle.due = len(schedules)

            for schedule in schedules:
                job_id = None
                if sa_inspect(schedule).expired_attributes:
                    # A rollback for an earlier schedule expired it
                    await self.db.refresh(schedule)
                try:
                    if await self.jobs.has_active_job(schedule.tenant_id, schedule.sync_type):
                        # Keep the schedule moving even though nothing is queued
                        schedule.next_run_at = calculate_next_run(schedule.cron_expression, now)
                        await self.db.commit()
                        cycle.skipped += 1
                        logger.info(
                            "Job already pending or processing, skipping",
                            tenant_id=schedule.tenant_id,
                            sync_type=schedule.sync_type,
                        )
                        continue

                    job = await self.jobs.create_job(
                        schedule.tenant_id,
                        SyncType(schedule.sync_type),
                        priority=schedule.priority,
                        schedule_id=schedule.id,
                        direction=schedule.direction,
                    )
                    job_id = job.id
                    self.enqueue(build_job_payload(job, schedule.tenant), schedule.priority)

                    schedule.last_run_at = now
                    schedule.next_run_at = calculate_next_run(schedule.cron_expression, now)
                    await self.db.commit()

                    cycle.created += 1
                    cycle.job_ids.append(job_id)
                    logger.info(
                        "Created scheduled sync job",
                        job_id=job_id,
                        tenant_id=schedule.tenant_id,
                        sync_type=schedule.sync_type,
                        next_run_at=schedule.next_run_at.isoformat(),
                    )
                except Exception as e:
                    cycle.failed += 1
                    logger.exception("Failed to process schedule", schedule_id=schedule.id, error=str(e))
                    await self.db.rollback()
                    if job_id is not None:
                        await self.jobs.mark_failed(job_id, f"Enqueue failed: {e}")

            logger.info(
                "Scheduler cycle completed",
                due=cycle.due,
                created=cycle.created,
                skipped=cycle.skipped,
                failed=cycle.failed,
            )
        return cycle

    async def cleanup_old_jobs(self, days: Optional[int] = None) -> Dict[str, int]:
        """Delete completed jobs and logs older than N days, failed jobs older than 2N"""
        days = days or self.settings.CLEANUP_OLDER_THAN_DAYS
        now = utcnow()
        cutoff = now - timedelta(days=days)
        failed_cutoff = now - timedelta(days=days * 2)

        completed = await self.db.execute(
            delete(SyncJob).where(
                SyncJob.status == SyncStatus.COMPLETED.value,
                SyncJob.completed_at < cutoff,
            )
        )
        failed = await self.db.execute(
            delete(SyncJob).where(
                SyncJob.status == SyncStatus.FAILED.value,
                or_(
                    SyncJob.completed_at < failed_cutoff,
                    and_(SyncJob.completed_at.is_(None), SyncJob.created_at < failed_cutoff),
                ),
            )
        )
        logs = await self.db.execute(delete(SyncLog).where(SyncLog.created_at < cutoff))
        await self.db.commit()

        counts = {
            "completed_jobs": completed.rowcount or 0,
            "failed_jobs": failed.rowcount or 0,
            "logs": logs.rowcount or 0,
        }
        logger.info("Cleanup completed", days=days, **counts)
        return counts

    async def health_check(self) -> Dict[str, Any]:
        """Store and queue reachability"""
        try:
            await self.db.execute(text("SELECT 1"))
            database_ok = True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            database_ok = False

        queue_ok = bool(await self.ping_queue())
        healthy = database_ok and queue_ok
        log = logger.info if healthy else logger.warning
        log("Health check", database=database_ok, queue=queue_ok)
        return {"healthy": healthy, "database": database_ok, "queue": queue_ok, "checked_at": utcnow().isoformat()}
