from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.models.database import SyncLog, SyncState
from catalog_sync.models.sync import SyncType
from catalog_sync.utils.helpers import utcnow

logger = structlog.get_logger()

class SyncStateService:
    """Per (tenant, sync type) watermarks"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_state(self, tenant_id: str, sync_type: SyncType) -> Optional[SyncState]:
        result = await self.db.execute(
            select(SyncState).where(
                SyncState.tenant_id == tenant_id,
                SyncState.sync_type == SyncType(sync_type).value,
            )
        )
        return result.scalar_one_or_none()

    async def get_last_successful_sync(self, tenant_id: str, sync_type: SyncType) -> Optional[datetime]:
        state = await self.get_state(tenant_id, sync_type)
        return state.last_successful_sync_at if state else None

    async def update_state(
        self,
        tenant_id: str,
        sync_type: SyncType,
        items_processed: int = 0,
        items_failed: int = 0,
        completed_at: Optional[datetime] = None,
    ) -> SyncState:
        """Stamp the watermark after a processor run, partial failures included"""
        completed_at = completed_at or utcnow()
        state = await self.get_state(tenant_id, sync_type)
        if state is None:
            state = SyncState(tenant_id=tenant_id, sync_type=SyncType(sync_type).value)
            self.db.add(state)

        state.last_sync_at = completed_at
        state.last_successful_sync_at = completed_at
        state.items_processed = items_processed
        state.items_failed = items_failed
        await self.db.commit()

        logger.info(
            "Sync watermark updated",
            tenant_id=tenant_id,
            sync_type=SyncType(sync_type).value,
            watermark=completed_at.isoformat(),
        )
        return state

    async def get_age(self, tenant_id: str, sync_type: SyncType) -> Optional[timedelta]:
        """Time since the last successful run, None if it never ran"""
        last = await self.get_last_successful_sync(tenant_id, sync_type)
        return utcnow() - last if last else None

class SyncLogService:
    """Operator-facing per-item log rows"""

    def __init__(self, db: AsyncSession):
        self.db = db

    def add(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: Any,
        status: str,
        action: Optional[str] = None,
        message: Optional[str] = None,
        job_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> SyncLog:
        """Stage a log row; it is written with the caller's next commit"""
        entry = SyncLog(
            tenant_id=tenant_id,
            job_id=job_id,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            action=action,
            status=status,
            message=message,
            details=details,
            created_at=utcnow(),
        )
        self.db.add(entry)
        return entry

    async def flush(self) -> None:
        await self.db.commit()
