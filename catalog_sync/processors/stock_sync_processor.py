from time import monotonic
from typing import Dict, Iterable
import math
import structlog

from catalog_sync.core.exceptions import CatalogSyncException
from catalog_sync.models.sink import SinkStockUpdate
from catalog_sync.models.source import SourceStockEntry
from catalog_sync.models.sync import JobPayload, SyncResult, SyncType
from catalog_sync.processors.base_processor import BaseProcessor
from catalog_sync.services.mapping_service import ProductMappingService
from catalog_sync.utils.helpers import chunked

logger = structlog.get_logger()

def aggregate_stock(entries: Iterable[SourceStockEntry]) -> Dict[int, int]:
    """Net stock per variation, summed over warehouses"""
    totals: Dict[int, float] = {}
    for entry in entries:
        totals[entry.variation_id] = totals.get(entry.variation_id, 0.0) + entry.stock_net
    return {variation_id: int(math.floor(total)) for variation_id, total in totals.items()}

class StockSyncProcessor(BaseProcessor):
    """Pushes the full stock snapshot to products that are already synced"""

    async def process(self, job: JobPayload) -> SyncResult:
        started = monotonic()
        tenant = await self.load_tenant(job.tenant_id)
        result = SyncResult()

        # The stock endpoint has no updated-since filter
        entries = await self.source.get_stock_management()
        stock = aggregate_stock(entries)

        sink_ids = await ProductMappingService(self.db).get_sink_ids(tenant.id)
        updates = []
        for variation_id, quantity in stock.items():
            sink_id = sink_ids.get(str(variation_id))
            if sink_id is None:
                result.items_skipped += 1
                continue
            updates.append(SinkStockUpdate(id=sink_id, stock=quantity))

        logger.info(
            "Starting stock sync",
            tenant_id=tenant.id,
            job_id=job.job_id,
            entries=len(entries),
            variations=len(stock),
            mapped=len(updates),
            skipped=result.items_skipped,
        )

        for batch in chunked(updates, self.settings.SYNC_BATCH_SIZE):
            result.items_processed += len(batch)
            try:
                bulk_results = await self.sink.batch_update_stock(batch)
            except CatalogSyncException as e:
                logger.error("Stock batch failed", size=len(batch), error=str(e))
                for update in batch:
                    result.record_failure(update.id, "stock", str(e))
                continue

            for item in bulk_results:
                if item.success:
                    result.items_updated += 1
                else:
                    result.record_failure(item.id, "stock", item.error or "Unknown error")

        await self.state.update_state(tenant.id, SyncType.STOCK, result.items_processed, result.items_failed)

        result.success = result.items_failed == 0
        result.duration_seconds = round(monotonic() - started, 3)
        logger.info(
            "✅ Stock sync completed",
            tenant_id=tenant.id,
            updated=result.items_updated,
            failed=result.items_failed,
            skipped=result.items_skipped,
            duration=result.duration_seconds,
        )
        return result
