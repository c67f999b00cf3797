# tests/test_stock_sync.py
from catalog_sync.core.exceptions import SinkAPIError
from catalog_sync.models.source import SourceStockEntry
from catalog_sync.models.sync import JobPayload, SyncType
from catalog_sync.processors.stock_sync_processor import StockSyncProcessor, aggregate_stock
from catalog_sync.services.mapping_service import ProductMappingRecord, ProductMappingService
from catalog_sync.services.sync_state_service import SyncStateService

TENANT_ID = "tenant-1"

def entry(variation_id, stock, warehouse_id=1):
    return SourceStockEntry.model_validate({
        "variationId": variation_id,
        "warehouseId": warehouse_id,
        "stockNet": stock,
    })

def job_payload():
    return JobPayload.model_validate({
        "job_id": "job-stock",
        "tenant_id": TENANT_ID,
        "sync_type": SyncType.STOCK,
        "source_url": "https://erp.example.com",
        "source_credentials": {"username": "api", "password": "secret"},
        "sink_url": "https://shop.example.com",
        "sink_credentials": {"client_id": "client", "client_secret": "client-secret"},
    })

async def seed_products(db):
    await ProductMappingService(db).upsert_mappings(TENANT_ID, [
        ProductMappingRecord(source_item_id="100", source_variation_id="1001", sink_product_id="sink-1001", is_parent=True),
        ProductMappingRecord(source_item_id="100", source_variation_id="1002", sink_product_id="sink-1002"),
    ])

def test_aggregate_stock_sums_warehouses():
    stock = aggregate_stock([entry(1, 5, 1), entry(1, -2, 2), entry(1, 10, 3), entry(2, 1.5), entry(2, 1.2, 2)])

    assert stock == {1: 13, 2: 2}

async def test_stock_is_pushed_for_mapped_variations(db, tenant, fake_source, fake_sink, settings):
    await seed_products(db)
    fake_source.stock = [
        entry(1001, 5, 1), entry(1001, -2, 2), entry(1001, 10, 3),
        entry(1002, 0),
        entry(9999, 50),
    ]

    result = await StockSyncProcessor(db, fake_source, fake_sink, settings).process(job_payload())

    assert result.success
    assert fake_sink.stock == {"sink-1001": 13, "sink-1002": 0}
    assert result.items_skipped == 1
    assert result.items_updated == 2
    assert fake_sink.calls == [("stock", [{"id": "sink-1001", "stock": 13}, {"id": "sink-1002", "stock": 0}])]
    assert await SyncStateService(db).get_last_successful_sync(TENANT_ID, SyncType.STOCK) is not None

async def test_failed_stock_batch_marks_items_failed(db, tenant, fake_source, fake_sink, settings):
    await seed_products(db)
    fake_source.stock = [entry(1001, 3), entry(1002, 4)]
    fake_sink.stock_error = SinkAPIError("sync rejected", status_code=400)

    result = await StockSyncProcessor(db, fake_source, fake_sink, settings).process(job_payload())

    assert not result.success
    assert result.items_failed == 2
    assert {error.entity_id for error in result.errors} == {"sink-1001", "sink-1002"}
