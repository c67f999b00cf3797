from datetime import timedelta
from time import monotonic
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
import os
import structlog
from urllib.parse import urlparse

from catalog_sync.core.exceptions import CatalogSyncException
from catalog_sync.models.database import (
    CachedAttribute,
    CachedCategory,
    CachedManufacturer,
    CachedProperty,
    CachedSalesPrice,
    CachedUnit,
)
from catalog_sync.models.sink import BulkItemResult, SinkModel
from catalog_sync.models.source import SourceCategory
from catalog_sync.models.sync import (
    ConfigSyncResult,
    EntitySyncResult,
    JobPayload,
    MediaSourceType,
    SyncType,
    TenantSyncConfig,
)
from catalog_sync.processors.base_processor import BaseProcessor
from catalog_sync.services.mapping_service import MappingKind, MappingRecord, MappingService
from catalog_sync.services.media_service import (
    MANUFACTURER_LOGO_FOLDER,
    PROPERTY_OPTION_MEDIA_FOLDER,
    MediaService,
)
from catalog_sync.services.source_cache_service import SourceConfigCache
from catalog_sync.transformers.config_transformer import (
    build_category,
    build_manufacturer,
    build_property_group,
    build_property_option,
    build_unit,
)
from catalog_sync.utils.helpers import chunked, sanitize_file_name
from catalog_sync.utils.identifiers import sink_entity_id

logger = structlog.get_logger()

# (source id, payload, extra mapping columns)
PendingItem = Tuple[str, SinkModel, Dict[str, Any]]
UpsertFn = Callable[[Sequence[SinkModel], Iterable[str]], Awaitable[List[BulkItemResult]]]

class ConfigSyncProcessor(BaseProcessor):
    """Syncs categories, attributes, manufacturers and units; caches prices and properties.

    Every collection is fetched in full, mirrored into the local cache, then
    upserted to the storefront in batches. Mappings are committed only for
    items the storefront accepted. The CONFIG watermark is stamped at the end
    even when single items failed.
    """

    async def process(self, job: JobPayload) -> ConfigSyncResult:
        started = monotonic()
        tenant = await self.load_tenant(job.tenant_id)
        config = self.tenant_config(tenant)
        languages = self.languages(config)

        self.cache = SourceConfigCache(self.db)
        self.media = MediaService(self.db, self.sink, tenant.id)
        result = ConfigSyncResult()

        logger.info("Starting config sync", tenant_id=tenant.id, job_id=job.job_id)

        await self.sync_categories(tenant.id, config, languages, result)
        await self.sync_attributes(tenant.id, config, languages, result)
        await self.sync_sales_prices(tenant.id, result)
        await self.sync_properties(tenant.id, config, result)
        await self.sync_manufacturers(tenant.id, result)
        await self.sync_units(tenant.id, languages, result)

        await self.state.update_state(tenant.id, SyncType.CONFIG, result.items_processed, result.items_failed)

        result.success = result.items_failed == 0
        result.duration_seconds = round(monotonic() - started, 3)
        logger.info(
            "✅ Config sync completed",
            tenant_id=tenant.id,
            processed=result.items_processed,
            failed=result.items_failed,
            entities={name: entity.model_dump() for name, entity in result.entities.items()},
            duration=result.duration_seconds,
        )
        return result

    async def get_config_age(self, tenant_id: str) -> Optional[timedelta]:
        return await self.state.get_age(tenant_id, SyncType.CONFIG)

    def _sink_id(self, kind: MappingKind, tenant_id: str, source_id: str, existing: Dict[str, Any]) -> str:
        mapping = existing.get(source_id)
        return mapping.sink_id if mapping else sink_entity_id(kind.value, tenant_id, source_id)

    async def _upsert_items(
        self,
        tenant_id: str,
        entity_type: str,
        mappings: MappingService,
        items: List[PendingItem],
        existing: Dict[str, Any],
        upsert: UpsertFn,
        result: ConfigSyncResult,
        entity_result: EntitySyncResult,
    ) -> Dict[str, str]:
        """Batch upsert, commit mappings for successes; returns source id -> sink id"""
        existing_ids = {mapping.sink_id for mapping in existing.values()}
        synced: Dict[str, str] = {}

        for batch in chunked(items, self.settings.SYNC_BATCH_SIZE):
            result.items_processed += len(batch)
            try:
                bulk_results = await upsert([payload for _, payload, _ in batch], existing_ids)
            except CatalogSyncException as e:
                logger.error("Config batch failed", entity_type=entity_type, size=len(batch), error=str(e))
                for source_id, _, _ in batch:
                    result.record_failure(source_id, entity_type, str(e))
                entity_result.errors += len(batch)
                continue

            records = []
            for (source_id, _, extra), item in zip(batch, bulk_results):
                if item.success:
                    records.append(MappingRecord(source_id=source_id, sink_id=item.id, action=item.action, extra=extra))
                    result.record_success(item.action)
                    entity_result.synced += 1
                    synced[source_id] = item.id
                else:
                    result.record_failure(source_id, entity_type, item.error or "Unknown error")
                    entity_result.errors += 1
            await mappings.upsert_mappings(tenant_id, records)

        return synced

    # Categories

    async def sync_categories(
        self,
        tenant_id: str,
        config: TenantSyncConfig,
        languages: List[str],
        result: ConfigSyncResult,
    ) -> None:
        entity_result = result.entities.setdefault("categories", EntitySyncResult())
        categories = await self.source.get_all_categories()
        await self.cache.upsert_categories(tenant_id, categories)
        await self.cache.prune(CachedCategory, tenant_id, [c.id for c in categories])

        mappings = MappingService(self.db, MappingKind.CATEGORY)
        existing = await mappings.get_batch_mappings(tenant_id, [c.id for c in categories])
        # Parents may come from an earlier run, so resolve through every active mapping
        resolved = await mappings.get_all_active_mappings(tenant_id)

        by_level: Dict[int, List[SourceCategory]] = {}
        for category in categories:
            by_level.setdefault(category.level, []).append(category)

        for level in sorted(by_level):
            items: List[PendingItem] = []
            for category in by_level[level]:
                source_id = str(category.id)
                parent_source_id = str(category.parent_category_id) if category.parent_category_id else None
                if parent_source_id and parent_source_id not in resolved:
                    result.items_processed += 1
                    result.record_failure(source_id, "category", "Parent category not synced", parent_id=parent_source_id)
                    entity_result.errors += 1
                    continue

                parent_id = resolved[parent_source_id] if parent_source_id else config.sink_root_category_id
                payload = build_category(
                    category,
                    self._sink_id(MappingKind.CATEGORY, tenant_id, source_id, existing),
                    parent_id,
                    languages,
                    config.sink_cms_page_id,
                )
                items.append((source_id, payload, {}))

            synced = await self._upsert_items(
                tenant_id, "category", mappings, items, existing, self.sink.upsert_categories, result, entity_result
            )
            resolved.update(synced)
            logger.info("Synced category level", level=level, submitted=len(items), synced=len(synced))

        entity_result.orphaned = await mappings.mark_orphaned(tenant_id, [c.id for c in categories])

    # Attributes

    def _attribute_image_url(self, config: TenantSyncConfig, image: str) -> Optional[str]:
        if not config.source_frontend_url:
            return None
        return f"{config.source_frontend_url.rstrip('/')}/images/produkte/grp/{image}"

    async def sync_attributes(
        self,
        tenant_id: str,
        config: TenantSyncConfig,
        languages: List[str],
        result: ConfigSyncResult,
    ) -> None:
        attributes = await self.source.get_all_attributes()
        await self.cache.upsert_attributes(tenant_id, attributes)
        await self.cache.prune(CachedAttribute, tenant_id, [a.id for a in attributes])

        # Phase 1: attribute groups
        group_result = result.entities.setdefault("attributes", EntitySyncResult())
        group_mappings = MappingService(self.db, MappingKind.ATTRIBUTE)
        existing_groups = await group_mappings.get_batch_mappings(tenant_id, [a.id for a in attributes])
        group_items: List[PendingItem] = [
            (
                str(attribute.id),
                build_property_group(
                    attribute,
                    self._sink_id(MappingKind.ATTRIBUTE, tenant_id, str(attribute.id), existing_groups),
                    languages,
                ),
                {},
            )
            for attribute in attributes
        ]
        await self._upsert_items(
            tenant_id, "attribute", group_mappings, group_items, existing_groups,
            self.sink.upsert_property_groups, result, group_result,
        )
        group_result.orphaned = await group_mappings.mark_orphaned(tenant_id, [a.id for a in attributes])

        # Phase 2: attribute values, under the groups resolved above
        value_result = result.entities.setdefault("attribute_values", EntitySyncResult())
        value_mappings = MappingService(self.db, MappingKind.ATTRIBUTE_VALUE)
        groups = await group_mappings.get_all_active_mappings(tenant_id)
        all_values = [(attribute, value) for attribute in attributes for value in attribute.values]
        existing_values = await value_mappings.get_batch_mappings(tenant_id, [v.id for _, v in all_values])

        warned_missing_frontend = False
        value_items: List[PendingItem] = []
        for attribute, value in all_values:
            group_id = groups.get(str(attribute.id))
            if not group_id:
                result.items_processed += 1
                result.record_failure(value.id, "attribute_value", "Attribute group not synced", attribute_id=attribute.id)
                value_result.errors += 1
                continue

            media_id = None
            if value.image:
                url = self._attribute_image_url(config, value.image)
                if url is None:
                    if not warned_missing_frontend:
                        logger.warning("No source frontend URL configured, skipping attribute value images", tenant_id=tenant_id)
                        warned_missing_frontend = True
                else:
                    upload = await self.media.upload_from_url(
                        url,
                        MediaSourceType.PROPERTY_OPTION_IMAGE,
                        source_entity_id=value.id,
                        folder_name=PROPERTY_OPTION_MEDIA_FOLDER,
                    )
                    media_id = upload.media_id if upload.success else None

            value_items.append((
                str(value.id),
                build_property_option(
                    value,
                    self._sink_id(MappingKind.ATTRIBUTE_VALUE, tenant_id, str(value.id), existing_values),
                    group_id,
                    languages,
                    media_id,
                ),
                {"source_attribute_id": attribute.id, "sink_group_id": group_id},
            ))

        await self._upsert_items(
            tenant_id, "attribute_value", value_mappings, value_items, existing_values,
            self.sink.upsert_property_options, result, value_result,
        )
        value_result.orphaned = await value_mappings.mark_orphaned(tenant_id, [v.id for _, v in all_values])

    # Cached-only collections

    async def sync_sales_prices(self, tenant_id: str, result: ConfigSyncResult) -> None:
        """Prices are embedded in products, so sales prices are only cached"""
        sales_prices = await self.source.get_all_sales_prices()
        cached = await self.cache.upsert_sales_prices(tenant_id, sales_prices)
        await self.cache.prune(CachedSalesPrice, tenant_id, [p.id for p in sales_prices])
        result.entities["sales_prices"] = EntitySyncResult(synced=cached)

    async def sync_properties(self, tenant_id: str, config: TenantSyncConfig, result: ConfigSyncResult) -> None:
        properties = await self.source.get_all_properties()
        filtered = self.source.filter_properties(properties, config.property_referrers, config.property_clients)
        cached = await self.cache.upsert_properties(tenant_id, filtered)
        await self.cache.prune(CachedProperty, tenant_id, [p.id for p in filtered])
        result.entities["properties"] = EntitySyncResult(synced=cached)
        logger.info("Cached properties", total=len(properties), kept=len(filtered))

    # Manufacturers and units

    async def _upload_logo(self, manufacturer) -> Optional[str]:
        extension = os.path.splitext(urlparse(manufacturer.logo).path)[1].lower() or ".jpg"
        file_name = f"manufacturer_{sanitize_file_name(manufacturer.name or 'logo')}_{manufacturer.id}{extension}"
        upload = await self.media.upload_from_url(
            manufacturer.logo,
            MediaSourceType.MANUFACTURER_LOGO,
            source_entity_id=manufacturer.id,
            folder_name=MANUFACTURER_LOGO_FOLDER,
            file_name=file_name,
        )
        return upload.media_id if upload.success else None

    async def sync_manufacturers(self, tenant_id: str, result: ConfigSyncResult) -> None:
        entity_result = result.entities.setdefault("manufacturers", EntitySyncResult())
        manufacturers = await self.source.get_all_manufacturers()
        await self.cache.upsert_manufacturers(tenant_id, manufacturers)
        await self.cache.prune(CachedManufacturer, tenant_id, [m.id for m in manufacturers])

        mappings = MappingService(self.db, MappingKind.MANUFACTURER)
        existing = await mappings.get_batch_mappings(tenant_id, [m.id for m in manufacturers])

        items: List[PendingItem] = []
        for manufacturer in manufacturers:
            media_id = await self._upload_logo(manufacturer) if manufacturer.logo else None
            source_id = str(manufacturer.id)
            items.append((
                source_id,
                build_manufacturer(manufacturer, self._sink_id(MappingKind.MANUFACTURER, tenant_id, source_id, existing), media_id),
                {},
            ))

        await self._upsert_items(
            tenant_id, "manufacturer", mappings, items, existing, self.sink.upsert_manufacturers, result, entity_result
        )
        entity_result.orphaned = await mappings.mark_orphaned(tenant_id, [m.id for m in manufacturers])

    async def sync_units(self, tenant_id: str, languages: List[str], result: ConfigSyncResult) -> None:
        entity_result = result.entities.setdefault("units", EntitySyncResult())
        units = await self.source.get_all_units()
        await self.cache.upsert_units(tenant_id, units)
        await self.cache.prune(CachedUnit, tenant_id, [u.id for u in units])

        mappings = MappingService(self.db, MappingKind.UNIT)
        existing = await mappings.get_batch_mappings(tenant_id, [u.id for u in units])
        items: List[PendingItem] = [
            (
                str(unit.id),
                build_unit(unit, self._sink_id(MappingKind.UNIT, tenant_id, str(unit.id), existing), languages),
                {},
            )
            for unit in units
        ]
        await self._upsert_items(
            tenant_id, "unit", mappings, items, existing, self.sink.upsert_units, result, entity_result
        )
        entity_result.orphaned = await mappings.mark_orphaned(tenant_id, [u.id for u in units])
