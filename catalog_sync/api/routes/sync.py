from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, List, Optional

from catalog_sync.config.database import get_db
from catalog_sync.core.exceptions import ValidationError
from catalog_sync.models.database import SyncJob, Tenant
from catalog_sync.models.sync import SyncType, TenantStatus
from catalog_sync.services.job_service import JobService, build_job_payload
from catalog_sync.services.mapping_service import mapping_statistics
from catalog_sync.services.sync_state_service import SyncStateService
from catalog_sync.tasks import queue

router = APIRouter()

def _job_to_dict(job: SyncJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "tenant_id": job.tenant_id,
        "sync_type": job.sync_type,
        "status": job.status,
        "priority": job.priority,
        "attempts": job.attempts,
        "items_processed": job.items_processed,
        "items_failed": job.items_failed,
        "error_message": job.error_message,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }

async def _get_tenant(db: AsyncSession, tenant_id: str) -> Tenant:
    tenant = await db.get(Tenant, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail=f"Tenant {tenant_id} not found")
    return tenant

@router.post("/trigger/{tenant_id}/{sync_type}", response_model=Dict[str, Any])
async def trigger_sync(
    tenant_id: str,
    sync_type: SyncType,
    priority: int = 5,
    db: AsyncSession = Depends(get_db)
):
    """Manually queue a sync job for a tenant"""
    tenant = await _get_tenant(db, tenant_id)
    if tenant.status != TenantStatus.ACTIVE.value:
        raise HTTPException(status_code=409, detail=f"Tenant {tenant_id} is not active")

    jobs = JobService(db)
    if await jobs.has_active_job(tenant_id, sync_type):
        raise HTTPException(status_code=409, detail=f"A {sync_type.value} job is already pending or processing")

    job = await jobs.create_job(tenant_id, sync_type, priority=priority)
    try:
        queue.enqueue_sync_job(build_job_payload(job, tenant), priority)
    except Exception as e:
        await jobs.mark_failed(job.id, f"Enqueue failed: {e}")
        raise HTTPException(status_code=503, detail=f"Failed to enqueue sync job: {str(e)}")

    return {
        "message": "Synchronization queued",
        "job_id": job.id,
        "tenant_id": tenant_id,
        "sync_type": sync_type.value,
    }

@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str, db: AsyncSession = Depends(get_db)):
    """Status, counters and outcome of one sync job"""
    job = await JobService(db).get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    response = _job_to_dict(job)
    response["metadata"] = job.job_metadata
    return response

@router.get("/jobs", response_model=List[Dict[str, Any]])
async def get_recent_jobs(
    tenant_id: Optional[str] = None,
    limit: int = 20,
    db: AsyncSession = Depends(get_db)
):
    """Most recent sync jobs, optionally for one tenant"""
    jobs = await JobService(db).get_recent_jobs(tenant_id, limit=min(max(limit, 1), 200))
    return [_job_to_dict(job) for job in jobs]

@router.post("/jobs/{job_id}/retry")
async def retry_job(job_id: str, db: AsyncSession = Depends(get_db)):
    """Put a failed job back on the queue"""
    try:
        job = await queue.retry_failed_job(db, job_id)
    except ValidationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return {"message": "Job re-queued", "job_id": job.id}

@router.get("/tenants/{tenant_id}/mappings")
async def get_mapping_statistics(tenant_id: str, db: AsyncSession = Depends(get_db)):
    """Mapping counts per entity kind"""
    await _get_tenant(db, tenant_id)
    return await mapping_statistics(db, tenant_id)

@router.get("/tenants/{tenant_id}/state")
async def get_sync_state(tenant_id: str, db: AsyncSession = Depends(get_db)):
    """Watermarks per sync type"""
    await _get_tenant(db, tenant_id)
    state = SyncStateService(db)
    response = {}
    for sync_type in SyncType:
        row = await state.get_state(tenant_id, sync_type)
        response[sync_type.value] = None if row is None else {
            "last_sync_at": row.last_sync_at.isoformat() if row.last_sync_at else None,
            "last_successful_sync_at": (
                row.last_successful_sync_at.isoformat() if row.last_successful_sync_at else None
            ),
            "items_processed": row.items_processed,
            "items_failed": row.items_failed,
        }
    return response

@router.get("/queue")
async def get_queue_stats():
    """Waiting and in-flight sync jobs"""
    return await queue.get_queue_stats()
