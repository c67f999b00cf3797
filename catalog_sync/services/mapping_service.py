from typing import Any, Dict, Iterable, List, Optional, Sequence, Type
from enum import Enum
import structlog
from pydantic import BaseModel, Field
from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.models.database import (
    AttributeMapping,
    AttributeValueMapping,
    CategoryMapping,
    ManufacturerMapping,
    MediaMapping,
    ProductMapping,
    PropertyMapping,
    PropertySelectionMapping,
    SalesPriceMapping,
    UnitMapping,
)
from catalog_sync.models.sync import MappingStatus, MappingType, MediaSourceType, SyncAction
from catalog_sync.utils.helpers import utcnow
from catalog_sync.utils.identifiers import url_hash

logger = structlog.get_logger()

class MappingKind(str, Enum):
    CATEGORY = "category"
    ATTRIBUTE = "attribute"
    ATTRIBUTE_VALUE = "attribute_value"
    PROPERTY = "property"
    PROPERTY_SELECTION = "property_selection"
    MANUFACTURER = "manufacturer"
    UNIT = "unit"
    SALES_PRICE = "sales_price"

MAPPING_MODELS: Dict[MappingKind, Type] = {
    MappingKind.CATEGORY: CategoryMapping,
    MappingKind.ATTRIBUTE: AttributeMapping,
    MappingKind.ATTRIBUTE_VALUE: AttributeValueMapping,
    MappingKind.PROPERTY: PropertyMapping,
    MappingKind.PROPERTY_SELECTION: PropertySelectionMapping,
    MappingKind.MANUFACTURER: ManufacturerMapping,
    MappingKind.UNIT: UnitMapping,
    MappingKind.SALES_PRICE: SalesPriceMapping,
}

# Kind-specific columns a record may carry in `extra`
EXTRA_COLUMNS: Dict[MappingKind, Sequence[str]] = {
    MappingKind.ATTRIBUTE_VALUE: ("source_attribute_id", "sink_group_id"),
    MappingKind.PROPERTY_SELECTION: ("source_property_id", "sink_group_id"),
}

class MappingRecord(BaseModel):
    source_id: str
    sink_id: str
    mapping_type: MappingType = MappingType.AUTO
    action: SyncAction = SyncAction.CREATE
    extra: Dict[str, Any] = Field(default_factory=dict)

class ProductMappingRecord(BaseModel):
    source_item_id: str
    source_variation_id: str
    sink_product_id: str
    product_number: Optional[str] = None
    is_parent: bool = False
    sink_parent_id: Optional[str] = None
    mapping_type: MappingType = MappingType.AUTO
    action: SyncAction = SyncAction.CREATE

async def _upsert_rows(
    db: AsyncSession,
    model: Type,
    key_column: str,
    rows: List[Dict[str, Any]],
    updatable: Sequence[str],
) -> None:
    """Insert or update rows keyed by (tenant_id, key_column).

    An AUTO row never overwrites an existing MANUAL row: only last_synced_at
    is refreshed in that case.
    """
    if not rows:
        return

    # Last write per key wins inside one batch
    deduped = {(row["tenant_id"], row[key_column]): row for row in rows}
    rows = list(deduped.values())

    if db.get_bind().dialect.name == "postgresql":
        stmt = pg_insert(model).values(rows)
        keep_manual = and_(
            model.mapping_type == MappingType.MANUAL.value,
            stmt.excluded.mapping_type == MappingType.AUTO.value,
        )
        set_ = {
            column: case((keep_manual, getattr(model, column)), else_=getattr(stmt.excluded, column))
            for column in updatable
        }
        set_["last_synced_at"] = stmt.excluded.last_synced_at
        set_["updated_at"] = func.now()
        await db.execute(stmt.on_conflict_do_update(index_elements=["tenant_id", key_column], set_=set_))
        await db.commit()
        return

    tenant_ids = {row["tenant_id"] for row in rows}
    keys = [row[key_column] for row in rows]
    result = await db.execute(
        select(model).where(model.tenant_id.in_(tenant_ids), getattr(model, key_column).in_(keys))
    )
    existing = {(m.tenant_id, getattr(m, key_column)): m for m in result.scalars().all()}

    for row in rows:
        current = existing.get((row["tenant_id"], row[key_column]))
        if current is None:
            db.add(model(**row))
            continue

        current.last_synced_at = row["last_synced_at"]
        if (
            current.mapping_type == MappingType.MANUAL.value
            and row["mapping_type"] == MappingType.AUTO.value
        ):
            continue
        for column in updatable:
            setattr(current, column, row[column])

    await db.commit()

class MappingService:
    """Source id -> sink id mappings of one entity kind"""

    def __init__(self, db: AsyncSession, kind: MappingKind):
        self.db = db
        self.kind = MappingKind(kind)
        self.model = MAPPING_MODELS[self.kind]
        self.extra_columns = EXTRA_COLUMNS.get(self.kind, ())

    async def get_batch_mappings(self, tenant_id: str, source_ids: Iterable[Any]) -> Dict[str, Any]:
        """Existing mappings for the given source ids, keyed by source id"""
        ids = list({str(source_id) for source_id in source_ids})
        if not ids:
            return {}

        result = await self.db.execute(
            select(self.model).where(self.model.tenant_id == tenant_id, self.model.source_id.in_(ids))
        )
        return {mapping.source_id: mapping for mapping in result.scalars().all()}

    async def get_mapping(self, tenant_id: str, source_id: Any):
        result = await self.db.execute(
            select(self.model).where(self.model.tenant_id == tenant_id, self.model.source_id == str(source_id))
        )
        return result.scalar_one_or_none()

    async def upsert_mappings(self, tenant_id: str, records: Sequence[MappingRecord]) -> int:
        if not records:
            return 0

        now = utcnow()
        rows = []
        for record in records:
            row = {
                "tenant_id": tenant_id,
                "source_id": str(record.source_id),
                "sink_id": record.sink_id,
                "mapping_type": MappingType(record.mapping_type).value,
                "status": MappingStatus.ACTIVE.value,
                "last_sync_action": SyncAction(record.action).value,
                "last_synced_at": now,
            }
            for column in self.extra_columns:
                value = record.extra.get(column)
                row[column] = str(value) if value is not None else None
            rows.append(row)

        updatable = ["sink_id", "mapping_type", "status", "last_sync_action", *self.extra_columns]
        await _upsert_rows(self.db, self.model, "source_id", rows, updatable)

        logger.debug("Upserted mappings", kind=self.kind.value, tenant_id=tenant_id, count=len(rows))
        return len(rows)

    async def delete_mappings(self, tenant_id: str, source_ids: Iterable[Any]) -> int:
        ids = [str(source_id) for source_id in source_ids]
        if not ids:
            return 0
        result = await self.db.execute(
            delete(self.model).where(self.model.tenant_id == tenant_id, self.model.source_id.in_(ids))
        )
        await self.db.commit()
        return result.rowcount or 0

    async def get_mapping_count(self, tenant_id: str) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(self.model).where(self.model.tenant_id == tenant_id)
        )
        return result.scalar_one()

    async def get_manual_mappings(self, tenant_id: str) -> List[Any]:
        result = await self.db.execute(
            select(self.model).where(
                self.model.tenant_id == tenant_id,
                self.model.mapping_type == MappingType.MANUAL.value,
            )
        )
        return list(result.scalars().all())

    async def get_all_active_mappings(self, tenant_id: str) -> Dict[str, str]:
        """source id -> sink id for every active mapping"""
        result = await self.db.execute(
            select(self.model.source_id, self.model.sink_id).where(
                self.model.tenant_id == tenant_id,
                self.model.status == MappingStatus.ACTIVE.value,
            )
        )
        return {source_id: sink_id for source_id, sink_id in result.all()}

    async def mark_orphaned(self, tenant_id: str, seen_source_ids: Iterable[Any]) -> int:
        """Flag AUTO mappings whose source record no longer exists"""
        seen = [str(source_id) for source_id in seen_source_ids]
        stmt = update(self.model).where(
            self.model.tenant_id == tenant_id,
            self.model.mapping_type == MappingType.AUTO.value,
            self.model.status == MappingStatus.ACTIVE.value,
        )
        if seen:
            stmt = stmt.where(self.model.source_id.not_in(seen))

        result = await self.db.execute(stmt.values(status=MappingStatus.ORPHANED.value))
        await self.db.commit()

        orphaned = result.rowcount or 0
        if orphaned:
            logger.info("Marked mappings orphaned", kind=self.kind.value, tenant_id=tenant_id, count=orphaned)
        return orphaned

class ProductMappingService:
    """Variation -> storefront product mappings"""

    UPDATABLE = (
        "source_item_id",
        "sink_product_id",
        "product_number",
        "is_parent",
        "sink_parent_id",
        "mapping_type",
        "last_sync_action",
    )

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_batch_mappings(self, tenant_id: str, variation_ids: Iterable[Any]) -> Dict[str, ProductMapping]:
        ids = list({str(variation_id) for variation_id in variation_ids})
        if not ids:
            return {}
        result = await self.db.execute(
            select(ProductMapping).where(
                ProductMapping.tenant_id == tenant_id,
                ProductMapping.source_variation_id.in_(ids),
            )
        )
        return {m.source_variation_id: m for m in result.scalars().all()}

    async def get_mapping(self, tenant_id: str, variation_id: Any) -> Optional[ProductMapping]:
        result = await self.db.execute(
            select(ProductMapping).where(
                ProductMapping.tenant_id == tenant_id,
                ProductMapping.source_variation_id == str(variation_id),
            )
        )
        return result.scalar_one_or_none()

    async def get_parent_mappings(self, tenant_id: str, item_ids: Iterable[Any]) -> Dict[str, ProductMapping]:
        """Parent product mapping per source item id"""
        ids = list({str(item_id) for item_id in item_ids})
        if not ids:
            return {}
        result = await self.db.execute(
            select(ProductMapping).where(
                ProductMapping.tenant_id == tenant_id,
                ProductMapping.source_item_id.in_(ids),
                ProductMapping.is_parent.is_(True),
            )
        )
        return {m.source_item_id: m for m in result.scalars().all()}

    async def get_parent_mapping(self, tenant_id: str, item_id: Any) -> Optional[ProductMapping]:
        return (await self.get_parent_mappings(tenant_id, [item_id])).get(str(item_id))

    async def get_sink_ids(self, tenant_id: str) -> Dict[str, str]:
        """variation id -> sink product id for the whole tenant"""
        result = await self.db.execute(
            select(ProductMapping.source_variation_id, ProductMapping.sink_product_id).where(
                ProductMapping.tenant_id == tenant_id
            )
        )
        return {variation_id: sink_id for variation_id, sink_id in result.all()}

    async def upsert_mappings(self, tenant_id: str, records: Sequence[ProductMappingRecord]) -> int:
        if not records:
            return 0
        now = utcnow()
        rows = [
            {
                "tenant_id": tenant_id,
                "source_item_id": str(record.source_item_id),
                "source_variation_id": str(record.source_variation_id),
                "sink_product_id": record.sink_product_id,
                "product_number": record.product_number,
                "is_parent": record.is_parent,
                "sink_parent_id": record.sink_parent_id,
                "mapping_type": MappingType(record.mapping_type).value,
                "last_sync_action": SyncAction(record.action).value,
                "last_synced_at": now,
            }
            for record in records
        ]
        await _upsert_rows(self.db, ProductMapping, "source_variation_id", rows, self.UPDATABLE)
        return len(rows)

    async def delete_mappings(self, tenant_id: str, variation_ids: Iterable[Any]) -> int:
        ids = [str(variation_id) for variation_id in variation_ids]
        if not ids:
            return 0
        result = await self.db.execute(
            delete(ProductMapping).where(
                ProductMapping.tenant_id == tenant_id,
                ProductMapping.source_variation_id.in_(ids),
            )
        )
        await self.db.commit()
        return result.rowcount or 0

    async def get_mapping_count(self, tenant_id: str, parents_only: bool = False) -> int:
        stmt = select(func.count()).select_from(ProductMapping).where(ProductMapping.tenant_id == tenant_id)
        if parents_only:
            stmt = stmt.where(ProductMapping.is_parent.is_(True))
        return (await self.db.execute(stmt)).scalar_one()

class MediaMappingService:
    """Source URL -> uploaded storefront media"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_url(self, tenant_id: str, source_url: str) -> Optional[MediaMapping]:
        result = await self.db.execute(
            select(MediaMapping).where(
                MediaMapping.tenant_id == tenant_id,
                MediaMapping.source_url_hash == url_hash(source_url),
            )
        )
        return result.scalar_one_or_none()

    async def save(
        self,
        tenant_id: str,
        source_url: str,
        source_type: MediaSourceType,
        sink_media_id: str,
        source_entity_id: Optional[Any] = None,
        folder_id: Optional[str] = None,
        file_name: Optional[str] = None,
        mime_type: Optional[str] = None,
        file_size: Optional[int] = None,
    ) -> MediaMapping:
        mapping = await self.get_by_url(tenant_id, source_url)
        if mapping is None:
            mapping = MediaMapping(
                tenant_id=tenant_id,
                source_url_hash=url_hash(source_url),
                source_url=source_url,
            )
            self.db.add(mapping)

        mapping.source_type = MediaSourceType(source_type).value
        mapping.source_entity_id = str(source_entity_id) if source_entity_id is not None else None
        mapping.sink_media_id = sink_media_id
        mapping.folder_id = folder_id
        mapping.file_name = file_name
        mapping.mime_type = mime_type
        mapping.file_size = file_size

        await self.db.commit()
        return mapping

async def mapping_statistics(db: AsyncSession, tenant_id: str) -> Dict[str, Dict[str, int]]:
    """Totals per mapping kind, split by manual/auto and orphaned"""
    stats: Dict[str, Dict[str, int]] = {}

    for kind, model in MAPPING_MODELS.items():
        result = await db.execute(
            select(model.mapping_type, model.status, func.count())
            .where(model.tenant_id == tenant_id)
            .group_by(model.mapping_type, model.status)
        )
        counts = {"total": 0, "manual": 0, "auto": 0, "orphaned": 0}
        for mapping_type, status, count in result.all():
            counts["total"] += count
            counts["manual" if mapping_type == MappingType.MANUAL.value else "auto"] += count
            if status == MappingStatus.ORPHANED.value:
                counts["orphaned"] += count
        stats[kind.value] = counts

    result = await db.execute(
        select(ProductMapping.is_parent, ProductMapping.mapping_type, func.count())
        .where(ProductMapping.tenant_id == tenant_id)
        .group_by(ProductMapping.is_parent, ProductMapping.mapping_type)
    )
    product_counts = {"total": 0, "manual": 0, "auto": 0, "parents": 0, "children": 0}
    for is_parent, mapping_type, count in result.all():
        product_counts["total"] += count
        product_counts["manual" if mapping_type == MappingType.MANUAL.value else "auto"] += count
        product_counts["parents" if is_parent else "children"] += count
    stats["product"] = product_counts

    media_total = await db.execute(
        select(func.count()).select_from(MediaMapping).where(MediaMapping.tenant_id == tenant_id)
    )
    stats["media"] = {"total": media_total.scalar_one()}
    return stats
