from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, ForeignKey, JSON, Index, UniqueConstraint
from sqlalchemy.orm import relationship, declared_attr
from sqlalchemy.sql import func

from catalog_sync.config.database import Base
from catalog_sync.models.sync import (
    MappingStatus,
    MappingType,
    SyncDirection,
    SyncStatus,
    TenantStatus,
)

class Tenant(Base):
    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=TenantStatus.ACTIVE.value)
    source_url = Column(String(500), nullable=False)
    source_username = Column(String(255), nullable=False)
    source_password = Column(String(255), nullable=False)
    sink_url = Column(String(500), nullable=False)
    sink_client_id = Column(String(255), nullable=False)
    sink_client_secret = Column(String(255), nullable=False)
    config = Column(JSON, default=dict)  # TenantSyncConfig overrides
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    schedules = relationship("SyncSchedule", back_populates="tenant", cascade="all, delete-orphan")

class SyncSchedule(Base):
    __tablename__ = "sync_schedules"
    __table_args__ = (
        UniqueConstraint("tenant_id", "sync_type", "direction", name="uq_sync_schedule_tenant_type_direction"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    sync_type = Column(String(30), nullable=False)
    cron_expression = Column(String(100), nullable=False)
    direction = Column(String(30), nullable=False, default=SyncDirection.SOURCE_TO_SINK.value)
    priority = Column(Integer, nullable=False, default=0)
    enabled = Column(Boolean, nullable=False, default=True)
    last_run_at = Column(DateTime)
    next_run_at = Column(DateTime, index=True)
    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    tenant = relationship("Tenant", back_populates="schedules")

class SyncJob(Base):
    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index("ix_sync_jobs_tenant_type_status", "tenant_id", "sync_type", "status"),
    )

    id = Column(String(36), primary_key=True)  # Doubles as the queue task id
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    schedule_id = Column(Integer, ForeignKey("sync_schedules.id", ondelete="SET NULL"), nullable=True)
    sync_type = Column(String(30), nullable=False)
    direction = Column(String(30), nullable=False, default=SyncDirection.SOURCE_TO_SINK.value)
    status = Column(String(20), nullable=False, default=SyncStatus.PENDING.value)
    priority = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    error_message = Column(Text)
    items_processed = Column(Integer, default=0)
    items_failed = Column(Integer, default=0)
    job_metadata = Column("metadata", JSON)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class SyncState(Base):
    __tablename__ = "sync_states"
    __table_args__ = (
        UniqueConstraint("tenant_id", "sync_type", name="uq_sync_state_tenant_type"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    sync_type = Column(String(30), nullable=False)
    last_sync_at = Column(DateTime)
    last_successful_sync_at = Column(DateTime)
    items_processed = Column(Integer, default=0)
    items_failed = Column(Integer, default=0)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class SyncLog(Base):
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    job_id = Column(String(36), index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100))
    action = Column(String(20))
    status = Column(String(20), nullable=False)  # success, error, info
    message = Column(Text)
    details = Column(JSON)
    created_at = Column(DateTime, server_default=func.now(), index=True)

class MappingMixin:
    """Columns shared by every source id -> sink id mapping table"""

    id = Column(Integer, primary_key=True, index=True)
    source_id = Column(String(64), nullable=False)
    sink_id = Column(String(64), nullable=False)
    mapping_type = Column(String(10), nullable=False, default=MappingType.AUTO.value)
    status = Column(String(10), nullable=False, default=MappingStatus.ACTIVE.value)
    last_sync_action = Column(String(10))
    last_synced_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @declared_attr
    def tenant_id(cls):
        return Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    @declared_attr
    def __table_args__(cls):
        return (UniqueConstraint("tenant_id", "source_id", name=f"uq_{cls.__tablename__}_tenant_source"),)

class CategoryMapping(MappingMixin, Base):
    __tablename__ = "category_mappings"

class AttributeMapping(MappingMixin, Base):
    __tablename__ = "attribute_mappings"

class AttributeValueMapping(MappingMixin, Base):
    __tablename__ = "attribute_value_mappings"

    source_attribute_id = Column(String(64))
    sink_group_id = Column(String(64))

class PropertyMapping(MappingMixin, Base):
    __tablename__ = "property_mappings"

class PropertySelectionMapping(MappingMixin, Base):
    __tablename__ = "property_selection_mappings"

    source_property_id = Column(String(64))
    sink_group_id = Column(String(64))

class ManufacturerMapping(MappingMixin, Base):
    __tablename__ = "manufacturer_mappings"

class UnitMapping(MappingMixin, Base):
    __tablename__ = "unit_mappings"

class SalesPriceMapping(MappingMixin, Base):
    __tablename__ = "sales_price_mappings"

class ProductMapping(Base):
    __tablename__ = "product_mappings"
    __table_args__ = (
        UniqueConstraint("tenant_id", "source_variation_id", name="uq_product_mapping_tenant_variation"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    source_item_id = Column(String(64), nullable=False, index=True)
    source_variation_id = Column(String(64), nullable=False)
    sink_product_id = Column(String(64), nullable=False)
    product_number = Column(String(255))
    is_parent = Column(Boolean, nullable=False, default=False)
    sink_parent_id = Column(String(64))
    mapping_type = Column(String(10), nullable=False, default=MappingType.AUTO.value)
    last_sync_action = Column(String(10))
    last_synced_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class MediaMapping(Base):
    __tablename__ = "media_mappings"
    __table_args__ = (
        UniqueConstraint("tenant_id", "source_url_hash", name="uq_media_mapping_tenant_url"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    source_url_hash = Column(String(32), nullable=False)
    source_url = Column(Text, nullable=False)
    source_type = Column(String(30), nullable=False)
    source_entity_id = Column(String(100))
    sink_media_id = Column(String(64), nullable=False)
    folder_id = Column(String(64))
    file_name = Column(String(255))
    mime_type = Column(String(100))
    file_size = Column(Integer)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

class CachedSourceMixin:
    """Local mirror of a source config record"""

    id = Column(Integer, primary_key=True, index=True)
    source_id = Column(String(64), nullable=False)
    raw = Column(JSON, nullable=False)
    synced_at = Column(DateTime, server_default=func.now())

    @declared_attr
    def tenant_id(cls):
        return Column(String(36), ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)

    @declared_attr
    def __table_args__(cls):
        return (UniqueConstraint("tenant_id", "source_id", name=f"uq_{cls.__tablename__}_tenant_source"),)

class CachedCategory(CachedSourceMixin, Base):
    __tablename__ = "cached_categories"

    parent_id = Column(String(64))
    level = Column(Integer, default=0)
    type = Column(String(30))
    names = Column(JSON)  # {lang: name}

class CachedAttribute(CachedSourceMixin, Base):
    __tablename__ = "cached_attributes"

    backend_name = Column(String(255))
    position = Column(Integer, default=0)
    names = Column(JSON)

class CachedManufacturer(CachedSourceMixin, Base):
    __tablename__ = "cached_manufacturers"

    name = Column(String(255))

class CachedUnit(CachedSourceMixin, Base):
    __tablename__ = "cached_units"

    unit_of_measurement = Column(String(50))
    names = Column(JSON)

class CachedSalesPrice(CachedSourceMixin, Base):
    __tablename__ = "cached_sales_prices"

    type = Column(String(50))
    names = Column(JSON)

class CachedProperty(CachedSourceMixin, Base):
    __tablename__ = "cached_properties"

    cast = Column(String(30))
    group_id = Column(String(64))
    names = Column(JSON)
