from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict

from catalog_sync.clients.sink_client import SinkClient
from catalog_sync.clients.source_client import SourceClient
from catalog_sync.config.database import get_db
from catalog_sync.models.database import Tenant
from catalog_sync.models.sync import SinkCredentials, SourceCredentials
from catalog_sync.tasks.queue import ping_broker

router = APIRouter()

@router.get("/", response_model=Dict[str, str])
async def health_check():
    """Basic health check endpoint"""
    return {"status": "healthy", "service": "catalog-sync"}

@router.get("/detailed")
async def detailed_health_check(db: AsyncSession = Depends(get_db)):
    """Detailed health check including the job store and the queue broker"""
    health_status = {
        "service": "healthy",
        "database": "unknown",
        "queue": "unknown",
    }

    try:
        await db.execute(text("SELECT 1"))
        health_status["database"] = "healthy"
    except SQLAlchemyError as e:
        health_status["database"] = f"unhealthy: {str(e)}"

    health_status["queue"] = "healthy" if await ping_broker() else "unhealthy: broker unreachable"

    if any(value != "healthy" for value in health_status.values()):
        health_status["service"] = "degraded"
    return health_status

@router.get("/tenants/{tenant_id}", response_model=Dict[str, str])
async def tenant_health_check(tenant_id: str, db: AsyncSession = Depends(get_db)):
    """Check that a tenant's ERP and storefront accept its credentials"""
    tenant = await db.get(Tenant, tenant_id)
    if tenant is None:
        raise HTTPException(status_code=404, detail=f"Tenant {tenant_id} not found")

    source_client = SourceClient(
        tenant.source_url,
        SourceCredentials(username=tenant.source_username, password=tenant.source_password),
    )
    try:
        source_ok = await source_client.test_connection()
    finally:
        await source_client.close()

    sink_client = SinkClient(
        tenant.sink_url,
        SinkCredentials(client_id=tenant.sink_client_id, client_secret=tenant.sink_client_secret),
    )
    try:
        sink_ok = await sink_client.test_connection()
    finally:
        await sink_client.close()

    return {
        "tenant_id": tenant_id,
        "source_api": "healthy" if source_ok else "unhealthy",
        "sink_api": "healthy" if sink_ok else "unhealthy",
    }
