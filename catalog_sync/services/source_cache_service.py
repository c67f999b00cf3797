from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Sequence, Tuple, Type
from time import monotonic
import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.models.database import (
    CachedAttribute,
    CachedCategory,
    CachedManufacturer,
    CachedProperty,
    CachedSalesPrice,
    CachedUnit,
)
from catalog_sync.models.source import (
    SourceAttribute,
    SourceCategory,
    SourceManufacturer,
    SourceModel,
    SourceProperty,
    SourceSalesPrice,
    SourceUnit,
)
from catalog_sync.utils.helpers import utcnow

logger = structlog.get_logger()

class SourceConfigCache:
    """Local mirror of the source config collections, one row per record"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _upsert(
        self,
        model: Type,
        tenant_id: str,
        records: Sequence[SourceModel],
        columns: Callable[[Any], Dict[str, Any]],
    ) -> int:
        if not records:
            return 0

        now = utcnow()
        rows = {
            str(record.id): {
                "raw": record.model_dump(mode="json", by_alias=True),
                "synced_at": now,
                **columns(record),
            }
            for record in records
        }

        result = await self.db.execute(
            select(model).where(model.tenant_id == tenant_id, model.source_id.in_(list(rows)))
        )
        existing = {row.source_id: row for row in result.scalars().all()}

        for source_id, values in rows.items():
            cached = existing.get(source_id)
            if cached is None:
                self.db.add(model(tenant_id=tenant_id, source_id=source_id, **values))
            else:
                for key, value in values.items():
                    setattr(cached, key, value)

        await self.db.commit()
        logger.debug("Cached source records", table=model.__tablename__, tenant_id=tenant_id, count=len(rows))
        return len(rows)

    async def upsert_categories(self, tenant_id: str, categories: Sequence[SourceCategory]) -> int:
        return await self._upsert(CachedCategory, tenant_id, categories, lambda c: {
            "parent_id": str(c.parent_category_id) if c.parent_category_id else None,
            "level": c.level,
            "type": c.type,
            "names": c.names(),
        })

    async def upsert_attributes(self, tenant_id: str, attributes: Sequence[SourceAttribute]) -> int:
        return await self._upsert(CachedAttribute, tenant_id, attributes, lambda a: {
            "backend_name": a.backend_name,
            "position": a.position,
            "names": a.names(),
        })

    async def upsert_manufacturers(self, tenant_id: str, manufacturers: Sequence[SourceManufacturer]) -> int:
        return await self._upsert(CachedManufacturer, tenant_id, manufacturers, lambda m: {
            "name": m.external_name or m.name,
        })

    async def upsert_units(self, tenant_id: str, units: Sequence[SourceUnit]) -> int:
        return await self._upsert(CachedUnit, tenant_id, units, lambda u: {
            "unit_of_measurement": u.unit_of_measurement,
            "names": {n.lang: n.name for n in u.names if n.name},
        })

    async def upsert_sales_prices(self, tenant_id: str, sales_prices: Sequence[SourceSalesPrice]) -> int:
        return await self._upsert(CachedSalesPrice, tenant_id, sales_prices, lambda p: {
            "type": p.type,
            "names": {n.lang: n.name_external or n.name_internal for n in p.names},
        })

    async def upsert_properties(self, tenant_id: str, properties: Sequence[SourceProperty]) -> int:
        return await self._upsert(CachedProperty, tenant_id, properties, lambda p: {
            "cast": p.cast,
            "group_id": str(p.property_group_id) if p.property_group_id else None,
            "names": p.localized_names(),
        })

    async def _get_many(self, model: Type, tenant_id: str, source_ids: Optional[Iterable[Any]] = None) -> Dict[str, Any]:
        stmt = select(model).where(model.tenant_id == tenant_id)
        if source_ids is not None:
            ids = list({str(source_id) for source_id in source_ids})
            if not ids:
                return {}
            stmt = stmt.where(model.source_id.in_(ids))
        result = await self.db.execute(stmt)
        return {row.source_id: row for row in result.scalars().all()}

    async def get_categories(self, tenant_id: str, category_ids: Iterable[Any]) -> Dict[str, CachedCategory]:
        return await self._get_many(CachedCategory, tenant_id, category_ids)

    async def get_category_graph(self, tenant_id: str) -> Dict[str, CachedCategory]:
        """Every cached category keyed by id, for offline hierarchy walks"""
        return await self._get_many(CachedCategory, tenant_id)

    async def get_attributes(self, tenant_id: str, attribute_ids: Optional[Iterable[Any]] = None) -> Dict[str, CachedAttribute]:
        return await self._get_many(CachedAttribute, tenant_id, attribute_ids)

    async def get_properties(self, tenant_id: str, property_ids: Optional[Iterable[Any]] = None) -> Dict[str, CachedProperty]:
        return await self._get_many(CachedProperty, tenant_id, property_ids)

    async def get_sales_prices(self, tenant_id: str) -> Dict[str, CachedSalesPrice]:
        return await self._get_many(CachedSalesPrice, tenant_id)

    async def prune(self, model: Type, tenant_id: str, keep_source_ids: Iterable[Any]) -> int:
        """Drop cached rows whose source record vanished"""
        keep = [str(source_id) for source_id in keep_source_ids]
        stmt = delete(model).where(model.tenant_id == tenant_id)
        if keep:
            stmt = stmt.where(model.source_id.not_in(keep))
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount or 0

class ConfigSnapshotCache:
    """Per-tenant TTL cache of lookups the transformer needs on every batch.

    Instances are passed explicitly to whoever needs them; nothing here is
    module-level state.
    """

    def __init__(self, ttl_seconds: float = 300):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[Tuple[str, str], Tuple[float, Any]] = {}

    def get(self, tenant_id: str, key: str) -> Optional[Any]:
        entry = self._entries.get((tenant_id, key))
        if entry is None:
            return None
        expires_at, value = entry
        if monotonic() >= expires_at:
            del self._entries[(tenant_id, key)]
            return None
        return value

    def set(self, tenant_id: str, key: str, value: Any) -> None:
        self._entries[(tenant_id, key)] = (monotonic() + self.ttl_seconds, value)

    async def get_or_load(self, tenant_id: str, key: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        value = self.get(tenant_id, key)
        if value is None:
            value = await loader()
            self.set(tenant_id, key, value)
        return value

    def invalidate(self, tenant_id: str, key: Optional[str] = None) -> None:
        if key is not None:
            self._entries.pop((tenant_id, key), None)
            return
        for entry_key in [k for k in self._entries if k[0] == tenant_id]:
            del self._entries[entry_key]
