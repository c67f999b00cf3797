from pydantic import BaseModel, Field
from typing import Dict, List, Optional, Any
from enum import Enum

class SyncType(str, Enum):
    CONFIG = "CONFIG"
    STOCK = "STOCK"
    PRODUCT_DELTA = "PRODUCT_DELTA"
    FULL_PRODUCT = "FULL_PRODUCT"

class SyncStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

class SyncDirection(str, Enum):
    SOURCE_TO_SINK = "SOURCE_TO_SINK"

class TenantStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"

class MappingType(str, Enum):
    MANUAL = "MANUAL"
    AUTO = "AUTO"

class MappingStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ORPHANED = "ORPHANED"

class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"

class MediaSourceType(str, Enum):
    PRODUCT_IMAGE = "PRODUCT_IMAGE"
    PROPERTY_OPTION_IMAGE = "PROPERTY_OPTION_IMAGE"
    MANUFACTURER_LOGO = "MANUFACTURER_LOGO"

ACTIVE_JOB_STATUSES = (SyncStatus.PENDING.value, SyncStatus.PROCESSING.value)

class SourceCredentials(BaseModel):
    username: str
    password: str

class SinkCredentials(BaseModel):
    client_id: str
    client_secret: str

class JobPayload(BaseModel):
    """Everything a worker needs to run one sync job"""
    job_id: str
    tenant_id: str
    sync_type: SyncType
    direction: SyncDirection = SyncDirection.SOURCE_TO_SINK
    schedule_id: Optional[int] = None
    source_url: str
    source_credentials: SourceCredentials
    sink_url: str
    sink_credentials: SinkCredentials

class SyncErrorEntry(BaseModel):
    entity_id: str
    entity_type: str
    error: str
    details: Dict[str, Any] = Field(default_factory=dict)

class SyncResult(BaseModel):
    success: bool = True
    items_processed: int = 0
    items_created: int = 0
    items_updated: int = 0
    items_failed: int = 0
    items_skipped: int = 0
    errors: List[SyncErrorEntry] = Field(default_factory=list)
    duration_seconds: float = 0.0

    def record_failure(self, entity_id: Any, entity_type: str, error: str, **details: Any) -> None:
        self.items_failed += 1
        self.errors.append(SyncErrorEntry(
            entity_id=str(entity_id),
            entity_type=entity_type,
            error=error,
            details=details,
        ))

    def record_success(self, action: str) -> None:
        if action == SyncAction.CREATE.value:
            self.items_created += 1
        else:
            self.items_updated += 1

class EntitySyncResult(BaseModel):
    synced: int = 0
    errors: int = 0
    orphaned: int = 0

class ConfigSyncResult(SyncResult):
    entities: Dict[str, EntitySyncResult] = Field(default_factory=dict)

class TenantSyncConfig(BaseModel):
    """Per-tenant overrides stored in the tenant's config column"""
    default_language: Optional[str] = None
    fallback_languages: Optional[List[str]] = None
    tax_rate: Optional[float] = None
    sink_tax_id: Optional[str] = None
    sink_currency_id: Optional[str] = None
    sink_sales_channel_id: Optional[str] = None
    sink_root_category_id: Optional[str] = None
    sink_cms_page_id: Optional[str] = None
    source_frontend_url: Optional[str] = None
    default_sales_price_id: Optional[int] = None
    rrp_sales_price_id: Optional[int] = None
    property_referrers: List[str] = Field(default_factory=lambda: ["1.00"])
    property_clients: Optional[List[str]] = None
