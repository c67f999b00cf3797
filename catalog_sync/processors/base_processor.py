from typing import List, Optional
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.clients.sink_client import SinkClient
from catalog_sync.clients.source_client import SourceClient
from catalog_sync.config.settings import Settings, get_settings
from catalog_sync.core.exceptions import ValidationError
from catalog_sync.models.database import Tenant
from catalog_sync.models.sync import TenantStatus, TenantSyncConfig
from catalog_sync.services.sync_state_service import SyncLogService, SyncStateService
from catalog_sync.utils.helpers import unique

logger = structlog.get_logger()

class BaseProcessor:
    """Shared wiring for the sync processors"""

    def __init__(
        self,
        db: AsyncSession,
        source: SourceClient,
        sink: SinkClient,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.source = source
        self.sink = sink
        self.settings = settings or get_settings()
        self.state = SyncStateService(db)
        self.sync_logs = SyncLogService(db)

    async def load_tenant(self, tenant_id: str) -> Tenant:
        tenant = await self.db.get(Tenant, tenant_id)
        if tenant is None:
            raise ValidationError(f"Tenant {tenant_id} not found")
        if tenant.status != TenantStatus.ACTIVE.value:
            logger.warning("Tenant is not active", tenant_id=tenant_id, status=tenant.status)
            raise ValidationError(f"Tenant {tenant_id} is not active")
        return tenant

    @staticmethod
    def tenant_config(tenant: Tenant) -> TenantSyncConfig:
        return TenantSyncConfig.model_validate(tenant.config or {})

    def languages(self, config: TenantSyncConfig) -> List[str]:
        """Preferred language first, then the fallbacks"""
        preferred = config.default_language or self.settings.DEFAULT_LANGUAGE
        fallbacks = config.fallback_languages
        if fallbacks is None:
            fallbacks = self.settings.FALLBACK_LANGUAGES
        return unique([preferred, *fallbacks])

    def tax_rate(self, config: TenantSyncConfig) -> float:
        return config.tax_rate if config.tax_rate is not None else self.settings.DEFAULT_TAX_RATE
