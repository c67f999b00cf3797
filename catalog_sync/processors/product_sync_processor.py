from dataclasses import dataclass, field
from datetime import timedelta
from time import monotonic
from typing import Dict, List, Optional, Sequence
import structlog

from catalog_sync.core.exceptions import CatalogSyncException, ValidationError
from catalog_sync.models.database import ProductMapping, Tenant
from catalog_sync.models.sink import SinkProduct
from catalog_sync.models.source import SourceVariation
from catalog_sync.models.sync import JobPayload, MediaSourceType, SyncResult, SyncType, TenantSyncConfig
from catalog_sync.processors.base_processor import BaseProcessor
from catalog_sync.services.attribute_sync_service import AttributeSyncService
from catalog_sync.services.category_sync_service import CategorySyncService
from catalog_sync.services.mapping_service import (
    MappingKind,
    MappingService,
    ProductMappingRecord,
    ProductMappingService,
)
from catalog_sync.services.media_service import PRODUCT_MEDIA_FOLDER, MediaService
from catalog_sync.services.property_sync_service import PropertySyncService
from catalog_sync.services.source_cache_service import ConfigSnapshotCache, SourceConfigCache
from catalog_sync.transformers.product_transformer import ProductTransformer, TransformContext
from catalog_sync.utils.helpers import chunked, utcnow
from catalog_sync.utils.identifiers import sink_entity_id

logger = structlog.get_logger()

@dataclass
class ProductGroup:
    """One source item: the parent variation and its children.

    parent is None when the item's parent already lives in the storefront
    and was not part of the fetch window; every fetched variation is then a
    child of that parent.
    """
    item_id: int
    parent: Optional[SourceVariation]
    children: List[SourceVariation] = field(default_factory=list)
    promoted: bool = False

def group_variations(variations: Sequence[SourceVariation]) -> List[ProductGroup]:
    """Group variations by item; without a main variation the first child stands in"""
    by_item: Dict[int, List[SourceVariation]] = {}
    for variation in variations:
        by_item.setdefault(variation.item_id, []).append(variation)

    groups = []
    for item_id, item_variations in by_item.items():
        main = next((v for v in item_variations if v.is_main), None)
        promoted = main is None
        if promoted:
            main = item_variations[0]
            logger.debug("No main variation in fetch window, promoting first child", item_id=item_id, variation_id=main.id)
        children = [v for v in item_variations if v is not main]
        groups.append(ProductGroup(item_id=item_id, parent=main, children=children, promoted=promoted))
    return groups

def attach_known_parents(groups: Sequence[ProductGroup], parent_mappings: Dict[str, ProductMapping]) -> Dict[int, str]:
    """Undo promotion for items whose parent is already mapped.

    Returns item id -> sink parent id for the groups that now consist of
    children only.
    """
    known: Dict[int, str] = {}
    for group in groups:
        mapping = parent_mappings.get(str(group.item_id))
        if not group.promoted or mapping is None:
            continue

        variations = [group.parent] + group.children
        mapped_parent = next((v for v in variations if str(v.id) == mapping.source_variation_id), None)
        if mapped_parent is not None:
            group.parent = mapped_parent
            group.children = [v for v in variations if v is not mapped_parent]
            group.promoted = False
            continue

        group.parent = None
        group.children = variations
        group.promoted = False
        known[group.item_id] = mapping.sink_product_id
    return known

class ProductSyncProcessor(BaseProcessor):
    """Two-phase product sync: parents first, then children of parents that succeeded"""

    def __init__(self, *args, snapshot_cache: Optional[ConfigSnapshotCache] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.snapshot_cache = snapshot_cache or ConfigSnapshotCache(self.settings.CONFIG_CACHE_TTL_SECONDS)
        self.products = ProductMappingService(self.db)

    async def process(self, job: JobPayload, full_sync: bool = False) -> SyncResult:
        started = monotonic()
        tenant = await self.load_tenant(job.tenant_id)
        config = self.tenant_config(tenant)
        languages = self.languages(config)

        await self._check_config_watermark(tenant.id)

        since = None
        if not full_sync:
            since = await self.state.get_last_successful_sync(tenant.id, SyncType.PRODUCT_DELTA)
            if since is None:
                logger.info("No product watermark yet, falling back to full sync", tenant_id=tenant.id)

        fetch_started_at = utcnow()
        if since is not None:
            variations = await self.source.get_variations_delta(since)
        else:
            variations = await self.source.get_all_variations()

        groups = group_variations(variations)
        known_parents = attach_known_parents(
            groups, await self.products.get_parent_mappings(tenant.id, [group.item_id for group in groups])
        )
        if known_parents:
            logger.debug("Syncing variations under existing parents", tenant_id=tenant.id, items=len(known_parents))
        logger.info(
            "Starting product sync",
            tenant_id=tenant.id,
            job_id=job.job_id,
            mode="delta" if since else "full",
            since=since.isoformat() if since else None,
            items=len(groups),
            variations=len(variations),
        )

        self.job_id = job.job_id
        self.context = await self.build_context(tenant, config, languages, groups)
        self.transformer = ProductTransformer(self.context)
        self.media = MediaService(self.db, self.sink, tenant.id)
        self.categories = CategorySyncService(
            self.db, self.sink, tenant.id, languages,
            root_category_id=config.sink_root_category_id,
            cms_page_id=config.sink_cms_page_id,
        )
        self.attributes = AttributeSyncService(self.db, self.sink, tenant.id, languages)
        self.properties = PropertySyncService(self.db, self.sink, tenant.id, languages)

        result = SyncResult()
        parent_ids = await self.sync_parents(tenant.id, groups, result)
        parent_ids.update(known_parents)
        await self.sync_children(tenant.id, groups, parent_ids, result)

        await self.state.update_state(
            tenant.id, SyncType.PRODUCT_DELTA, result.items_processed, result.items_failed, completed_at=fetch_started_at
        )
        if full_sync:
            await self.state.update_state(
                tenant.id, SyncType.FULL_PRODUCT, result.items_processed, result.items_failed, completed_at=fetch_started_at
            )

        result.success = result.items_failed == 0
        result.duration_seconds = round(monotonic() - started, 3)
        logger.info(
            "✅ Product sync completed",
            tenant_id=tenant.id,
            processed=result.items_processed,
            created=result.items_created,
            updated=result.items_updated,
            failed=result.items_failed,
            skipped=result.items_skipped,
            duration=result.duration_seconds,
        )
        return result

    async def _check_config_watermark(self, tenant_id: str) -> None:
        config_synced_at = await self.state.get_last_successful_sync(tenant_id, SyncType.CONFIG)
        if config_synced_at is None:
            raise ValidationError(f"Tenant {tenant_id} has no completed config sync; run a CONFIG sync first")

        age = utcnow() - config_synced_at
        if age > timedelta(hours=self.settings.CONFIG_STALE_AFTER_HOURS):
            logger.warning("Config data is stale", tenant_id=tenant_id, age_hours=round(age.total_seconds() / 3600, 1))

    async def _sales_price_types(self, tenant_id: str) -> Dict[int, str]:
        async def load() -> Dict[int, str]:
            cached = await SourceConfigCache(self.db).get_sales_prices(tenant_id)
            return {int(source_id): row.type for source_id, row in cached.items()}

        return await self.snapshot_cache.get_or_load(tenant_id, "sales_price_types", load)

    async def build_context(
        self,
        tenant: Tenant,
        config: TenantSyncConfig,
        languages: List[str],
        groups: List[ProductGroup],
    ) -> TransformContext:
        tax_rate = self.tax_rate(config)

        tax_id = config.sink_tax_id
        if not tax_id:
            tax = await self.sink.get_default_tax(tax_rate)
            tax_id = tax.id if tax else None

        currency_id = config.sink_currency_id
        if not currency_id:
            currency = await self.sink.get_default_currency()
            if currency is None:
                raise ValidationError("Storefront has no default currency")
            currency_id = currency.id

        async def active(kind: MappingKind) -> Dict[str, str]:
            return await MappingService(self.db, kind).get_all_active_mappings(tenant.id)

        images = await self.source.get_batch_item_images(group.item_id for group in groups) if groups else {}

        return TransformContext(
            tenant_id=tenant.id,
            languages=languages,
            tax_id=tax_id,
            tax_rate=tax_rate,
            currency_id=currency_id,
            sales_channel_id=config.sink_sales_channel_id,
            default_sales_price_id=config.default_sales_price_id,
            rrp_sales_price_id=config.rrp_sales_price_id,
            sales_price_types=await self._sales_price_types(tenant.id),
            category_ids=await active(MappingKind.CATEGORY),
            manufacturer_ids=await active(MappingKind.MANUFACTURER),
            unit_ids=await active(MappingKind.UNIT),
            attribute_value_ids=await active(MappingKind.ATTRIBUTE_VALUE),
            property_selection_ids=await active(MappingKind.PROPERTY_SELECTION),
            images=images,
        )

    async def resolve_dependencies(self, variations: Sequence[SourceVariation]) -> None:
        """Create missing categories, attribute values and property selections.

        Failures are logged; products are then synced without the missing
        references.
        """
        ctx = self.context

        category_ids = {
            str(c.category_id) for v in variations for c in v.variation_categories
            if str(c.category_id) not in ctx.category_ids
        }
        if category_ids:
            try:
                ctx.category_ids.update(await self.categories.ensure_categories_exist(sorted(category_ids)))
            except CatalogSyncException as e:
                logger.error("Failed to create missing categories", category_ids=sorted(category_ids), error=str(e))

        value_pairs = {
            (a.attribute_id, a.resolved_value_id) for v in variations for a in v.variation_attribute_values
            if a.resolved_value_id is not None and str(a.resolved_value_id) not in ctx.attribute_value_ids
        }
        if value_pairs:
            try:
                ctx.attribute_value_ids.update(await self.attributes.ensure_attribute_values_exist(sorted(value_pairs)))
            except CatalogSyncException as e:
                logger.error("Failed to create missing attribute values", count=len(value_pairs), error=str(e))

        selection_pairs = {
            (p.property_id, p.property_selection_id) for v in variations for p in v.variation_properties
            if p.property_selection_id is not None and str(p.property_selection_id) not in ctx.property_selection_ids
        }
        if selection_pairs:
            try:
                ctx.property_selection_ids.update(await self.properties.ensure_selections_exist(sorted(selection_pairs)))
            except CatalogSyncException as e:
                logger.error("Failed to create missing property selections", count=len(selection_pairs), error=str(e))

    async def upload_images(self, groups: Sequence[ProductGroup]) -> None:
        """Upload every image of the items; failed images are left out of the media pool"""
        for group in groups:
            for image in self.context.images.get(group.item_id, []):
                if not image.url or image.id in self.context.media_ids:
                    continue
                upload = await self.media.upload_from_url(
                    image.url,
                    MediaSourceType.PRODUCT_IMAGE,
                    source_entity_id=image.id,
                    folder_name=PRODUCT_MEDIA_FOLDER,
                )
                if upload.success:
                    self.context.media_ids[image.id] = upload.media_id

    def _product_id(self, tenant_id: str, variation: SourceVariation, existing: Dict) -> str:
        mapping = existing.get(str(variation.id))
        return mapping.sink_product_id if mapping else sink_entity_id("product", tenant_id, variation.id)

    async def _reconcile_media(self, product: SinkProduct) -> None:
        keep_ids = [media.id for media in product.media or []]
        try:
            await self.sink.sync_product_media(product.id, keep_ids)
        except CatalogSyncException as e:
            logger.warning("Failed to reconcile product media", product_id=product.id, error=str(e))

    async def _write_batch(
        self,
        tenant_id: str,
        variations: List[SourceVariation],
        payloads: List[SinkProduct],
        existing: Dict,
        result: SyncResult,
        parent_ids: Optional[Dict[int, str]] = None,
    ) -> Dict[int, str]:
        """Bulk upsert one batch and commit mappings for the items that succeeded"""
        is_parent = parent_ids is None
        existing_ids = {mapping.sink_product_id for mapping in existing.values()}
        bulk_results = await self.sink.upsert_products(payloads, existing_ids)

        succeeded: Dict[int, str] = {}
        records = []
        for variation, payload, item in zip(variations, payloads, bulk_results):
            if item.success:
                records.append(ProductMappingRecord(
                    source_item_id=str(variation.item_id),
                    source_variation_id=str(variation.id),
                    sink_product_id=item.id,
                    product_number=payload.product_number,
                    is_parent=is_parent,
                    sink_parent_id=None if is_parent else parent_ids[variation.item_id],
                    action=item.action,
                ))
                result.record_success(item.action)
                succeeded[variation.item_id] = item.id
                await self._reconcile_media(payload)
                self.sync_logs.add(
                    tenant_id, "product", variation.id, "success",
                    action=item.action, job_id=self.job_id,
                    details={"sink_id": item.id, "is_parent": is_parent},
                )
            else:
                result.record_failure(variation.id, "product", item.error or "Unknown error", item_id=variation.item_id)
                self.sync_logs.add(
                    tenant_id, "product", variation.id, "error",
                    action=item.action, job_id=self.job_id, message=item.error,
                )

        await self.products.upsert_mappings(tenant_id, records)
        await self.sync_logs.flush()
        return succeeded

    async def sync_parents(self, tenant_id: str, groups: List[ProductGroup], result: SyncResult) -> Dict[int, str]:
        """Phase 1; returns item id -> sink parent id for every parent that succeeded"""
        parent_ids: Dict[int, str] = {}
        groups = [group for group in groups if group.parent is not None]

        for batch in chunked(groups, self.settings.SYNC_BATCH_SIZE):
            result.items_processed += len(batch)
            variations = [group.parent for group in batch]
            try:
                await self.resolve_dependencies(variations)
                await self.upload_images(batch)
                existing = await self.products.get_batch_mappings(tenant_id, [v.id for v in variations])
                payloads = [
                    self.transformer.transform_as_parent(v, self._product_id(tenant_id, v, existing))
                    for v in variations
                ]
                parent_ids.update(await self._write_batch(tenant_id, variations, payloads, existing, result))
            except CatalogSyncException as e:
                logger.error("Parent batch failed", size=len(batch), error=str(e))
                for variation in variations:
                    result.record_failure(variation.id, "product", str(e), item_id=variation.item_id, phase="parent")

        logger.info("Parent phase completed", parents=len(groups), succeeded=len(parent_ids))
        return parent_ids

    async def sync_children(
        self,
        tenant_id: str,
        groups: List[ProductGroup],
        parent_ids: Dict[int, str],
        result: SyncResult,
    ) -> None:
        """Phase 2, limited to items whose parent is in the storefront"""
        children: List[SourceVariation] = []
        for group in groups:
            if group.item_id in parent_ids:
                children.extend(group.children)
            elif group.children:
                result.items_skipped += len(group.children)
                logger.warning("Skipping children of failed parent", item_id=group.item_id, children=len(group.children))

        child_only = [group for group in groups if group.parent is None and group.item_id in parent_ids]
        if child_only:
            await self.upload_images(child_only)

        for batch in chunked(children, self.settings.SYNC_BATCH_SIZE):
            result.items_processed += len(batch)
            try:
                await self.resolve_dependencies(batch)
                existing = await self.products.get_batch_mappings(tenant_id, [v.id for v in batch])
                payloads = [
                    self.transformer.transform_as_child(
                        v, self._product_id(tenant_id, v, existing), parent_ids[v.item_id]
                    )
                    for v in batch
                ]
                await self._write_batch(tenant_id, batch, payloads, existing, result, parent_ids=parent_ids)
            except CatalogSyncException as e:
                logger.error("Child batch failed", size=len(batch), error=str(e))
                for variation in batch:
                    result.record_failure(variation.id, "product", str(e), item_id=variation.item_id, phase="child")

        logger.info("Child phase completed", children=len(children))
