from datetime import timedelta
from typing import Any, Dict, List, Optional
import uuid
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.models.database import SyncJob, Tenant
from catalog_sync.models.sync import (
    ACTIVE_JOB_STATUSES,
    JobPayload,
    SinkCredentials,
    SourceCredentials,
    SyncDirection,
    SyncStatus,
    SyncType,
)
from catalog_sync.utils.helpers import utcnow

logger = structlog.get_logger()

def build_job_payload(job: SyncJob, tenant: Tenant) -> JobPayload:
    """Queue payload for a job: descriptor plus the tenant's credentials"""
    return JobPayload(
        job_id=job.id,
        tenant_id=tenant.id,
        sync_type=SyncType(job.sync_type),
        direction=SyncDirection(job.direction),
        schedule_id=job.schedule_id,
        source_url=tenant.source_url,
        source_credentials=SourceCredentials(
            username=tenant.source_username,
            password=tenant.source_password,
        ),
        sink_url=tenant.sink_url,
        sink_credentials=SinkCredentials(
            client_id=tenant.sink_client_id,
            client_secret=tenant.sink_client_secret,
        ),
    )

class JobService:
    """SyncJob rows and their status transitions"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_job(
        self,
        tenant_id: str,
        sync_type: SyncType,
        priority: int = 0,
        schedule_id: Optional[int] = None,
        direction: SyncDirection = SyncDirection.SOURCE_TO_SINK,
    ) -> SyncJob:
        job = SyncJob(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            schedule_id=schedule_id,
            sync_type=SyncType(sync_type).value,
            direction=SyncDirection(direction).value,
            status=SyncStatus.PENDING.value,
            priority=priority,
            attempts=0,
            created_at=utcnow(),
        )
        self.db.add(job)
        await self.db.commit()
        logger.info("Created sync job", job_id=job.id, tenant_id=tenant_id, sync_type=job.sync_type, priority=priority)
        return job

    async def get_job(self, job_id: str) -> Optional[SyncJob]:
        return await self.db.get(SyncJob, job_id)

    async def get_recent_jobs(self, tenant_id: Optional[str] = None, limit: int = 20) -> List[SyncJob]:
        stmt = select(SyncJob).order_by(SyncJob.created_at.desc()).limit(limit)
        if tenant_id:
            stmt = stmt.where(SyncJob.tenant_id == tenant_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def has_active_job(self, tenant_id: str, sync_type: SyncType) -> bool:
        """A pending or processing job already exists for the pair"""
        result = await self.db.execute(
            select(SyncJob.id).where(
                SyncJob.tenant_id == tenant_id,
                SyncJob.sync_type == SyncType(sync_type).value,
                SyncJob.status.in_(ACTIVE_JOB_STATUSES),
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def mark_processing(self, job_id: str) -> Optional[SyncJob]:
        job = await self.get_job(job_id)
        if job is None:
            return None
        job.status = SyncStatus.PROCESSING.value
        job.attempts = (job.attempts or 0) + 1
        job.started_at = utcnow()
        job.completed_at = None
        job.error_message = None
        await self.db.commit()
        return job

    async def mark_completed(
        self,
        job_id: str,
        items_processed: int,
        items_failed: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SyncJob]:
        job = await self.get_job(job_id)
        if job is None:
            return None
        job.status = SyncStatus.COMPLETED.value
        job.completed_at = utcnow()
        job.items_processed = items_processed
        job.items_failed = items_failed
        job.job_metadata = metadata
        await self.db.commit()
        return job

    async def mark_failed(self, job_id: str, error_message: str) -> Optional[SyncJob]:
        job = await self.get_job(job_id)
        if job is None:
            return None
        job.status = SyncStatus.FAILED.value
        job.completed_at = utcnow()
        job.error_message = error_message[:5000]
        await self.db.commit()
        logger.warning("Sync job marked failed", job_id=job_id, tenant_id=job.tenant_id, error=error_message[:200])
        return job

    async def mark_retrying(self, job_id: str, error_message: str) -> Optional[SyncJob]:
        """Back to pending while the queue still holds a retry for the job"""
        job = await self.get_job(job_id)
        if job is None:
            return None
        job.status = SyncStatus.PENDING.value
        job.completed_at = None
        job.error_message = error_message[:5000]
        await self.db.commit()
        logger.info("Sync job awaiting retry", job_id=job_id, tenant_id=job.tenant_id, attempts=job.attempts)
        return job

    async def reset_to_pending(self, job_id: str) -> Optional[SyncJob]:
        job = await self.get_job(job_id)
        if job is None:
            return None
        job.status = SyncStatus.PENDING.value
        job.started_at = None
        job.completed_at = None
        job.error_message = None
        await self.db.commit()
        return job

    async def find_stalled_jobs(self, older_than_minutes: int) -> List[SyncJob]:
        """Jobs stuck in processing, e.g. after a worker crash"""
        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        result = await self.db.execute(
            select(SyncJob).where(
                SyncJob.status == SyncStatus.PROCESSING.value,
                SyncJob.started_at < cutoff,
            )
        )
        return list(result.scalars().all())
