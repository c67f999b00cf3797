# tests/test_config_sync.py
import pytest

from catalog_sync.models.sink import SinkEntity
from catalog_sync.models.source import (
    SourceAttribute,
    SourceCategory,
    SourceManufacturer,
    SourceProperty,
    SourceSalesPrice,
    SourceUnit,
)
from catalog_sync.models.sync import JobPayload, MappingStatus, MappingType, SyncType
from catalog_sync.processors.config_sync_processor import ConfigSyncProcessor
from catalog_sync.services.mapping_service import MappingKind, MappingRecord, MappingService
from catalog_sync.services.source_cache_service import SourceConfigCache
from catalog_sync.services.sync_state_service import SyncStateService
from catalog_sync.utils.identifiers import sink_entity_id, url_hash

TENANT_ID = "tenant-1"

def category(category_id, level, parent=None, name=None):
    return SourceCategory.model_validate({
        "id": category_id,
        "parentCategoryId": parent,
        "level": level,
        "type": "item",
        "linklist": "Y",
        "details": [{"lang": "de", "name": name or f"Kategorie {category_id}"}],
    })

def job_payload():
    return JobPayload.model_validate({
        "job_id": "job-config",
        "tenant_id": TENANT_ID,
        "sync_type": SyncType.CONFIG,
        "source_url": "https://erp.example.com",
        "source_credentials": {"username": "api", "password": "secret"},
        "sink_url": "https://shop.example.com",
        "sink_credentials": {"client_id": "client", "client_secret": "client-secret"},
    })

def sink_id(kind, source_id):
    return sink_entity_id(kind, TENANT_ID, source_id)

@pytest.fixture
def catalog(fake_source):
    fake_source.categories = [
        category(3, 3, parent=2),
        category(1, 1),
        category(2, 2, parent=1),
        category(9, 2, parent=99),
    ]
    fake_source.attributes = [
        SourceAttribute.model_validate({
            "id": 5,
            "backendName": "color",
            "typeOfSelectionInOnlineStore": "image",
            "attributeNames": [{"lang": "de", "name": "Farbe"}, {"lang": "en", "name": "Colour"}],
            "values": [
                {"id": 501, "attributeId": 5, "backendName": "red", "image": "red.png",
                 "valueNames": [{"lang": "de", "name": "Rot"}]},
                {"id": 502, "attributeId": 5, "backendName": "blue",
                 "valueNames": [{"lang": "en", "name": "Blue"}]},
            ],
        })
    ]
    fake_source.sales_prices = [
        SourceSalesPrice.model_validate({"id": 1, "type": "default"}),
        SourceSalesPrice.model_validate({"id": 2, "type": "rrp"}),
    ]
    fake_source.properties = [
        SourceProperty.model_validate({
            "id": 70, "cast": "selection",
            "names": [{"lang": "de", "name": "Material"}],
            "options": [{"typeOptionIdentifier": "referrers", "propertyOptionValues": [{"value": "1.00"}]}],
        }),
        SourceProperty.model_validate({
            "id": 71, "cast": "selection",
            "options": [{"typeOptionIdentifier": "referrers", "propertyOptionValues": [{"value": "4.00"}]}],
        }),
    ]
    fake_source.manufacturers = [
        SourceManufacturer.model_validate({
            "id": 3, "name": "ACME Corp", "logo": "https://erp.example.com/logos/acme.png",
        })
    ]
    fake_source.units = [
        SourceUnit.model_validate({"id": 1, "unitOfMeasurement": "C62", "names": [{"lang": "de", "name": "Stück"}]})
    ]
    return fake_source

async def test_categories_are_synced_parents_first(db, tenant, catalog, fake_sink, settings):
    result = await ConfigSyncProcessor(db, catalog, fake_sink, settings).process(job_payload())

    calls = fake_sink.payloads_for(SinkEntity.CATEGORY)
    assert [[c["id"] for c in call] for call in calls] == [
        [sink_id("category", 1)],
        [sink_id("category", 2)],
        [sink_id("category", 3)],
    ]
    assert calls[0][0]["parentId"] == "root-category"
    assert calls[1][0]["parentId"] == sink_id("category", 1)
    assert calls[2][0]["parentId"] == sink_id("category", 2)
    assert calls[0][0]["translations"] == {"de-DE": {"name": "Kategorie 1"}}

    assert result.entities["categories"].synced == 3
    assert result.entities["categories"].errors == 1
    failure = next(e for e in result.errors if e.entity_id == "9")
    assert failure.error == "Parent category not synced"

async def test_attribute_groups_and_values(db, tenant, catalog, fake_sink, settings):
    await ConfigSyncProcessor(db, catalog, fake_sink, settings).process(job_payload())

    group = fake_sink.records[SinkEntity.PROPERTY_GROUP][sink_id("attribute", 5)]
    assert group["name"] == "Farbe"
    assert group["displayType"] == "media"

    options = fake_sink.records[SinkEntity.PROPERTY_GROUP_OPTION]
    red = options[sink_id("attribute_value", 501)]
    blue = options[sink_id("attribute_value", 502)]
    assert red["groupId"] == sink_id("attribute", 5)
    assert red["name"] == "Rot"
    assert blue["name"] == "Blue"
    image_url = "https://erp-frontend.example.com/images/produkte/grp/red.png"
    assert red["mediaId"] == sink_entity_id("media", TENANT_ID, url_hash(image_url))
    assert "mediaId" not in blue

    assert image_url in [u["url"] for u in fake_sink.uploads]

    mapping = await MappingService(db, MappingKind.ATTRIBUTE_VALUE).get_mapping(TENANT_ID, 501)
    assert mapping.source_attribute_id == "5"
    assert mapping.sink_group_id == sink_id("attribute", 5)

async def test_manufacturer_logo_file_name(db, tenant, catalog, fake_sink, settings):
    await ConfigSyncProcessor(db, catalog, fake_sink, settings).process(job_payload())

    logo = next(u for u in fake_sink.uploads if u["url"] == "https://erp.example.com/logos/acme.png")
    assert logo["file_name"] == "manufacturer_acme_corp_3.png"
    assert logo["folder_id"] == "folder-Manufacturer Logos"

    manufacturer = fake_sink.records[SinkEntity.MANUFACTURER][sink_id("manufacturer", 3)]
    assert manufacturer["name"] == "ACME Corp"
    assert manufacturer["mediaId"] == logo["media_id"]

async def test_prices_and_properties_are_cached_only(db, tenant, catalog, fake_sink, settings):
    result = await ConfigSyncProcessor(db, catalog, fake_sink, settings).process(job_payload())

    cache = SourceConfigCache(db)
    assert set(await cache.get_sales_prices(TENANT_ID)) == {"1", "2"}
    assert set(await cache.get_properties(TENANT_ID)) == {"70"}
    assert result.entities["properties"].synced == 1
    assert result.entities["sales_prices"].synced == 2

async def test_config_watermark_is_stamped(db, tenant, catalog, fake_sink, settings):
    processor = ConfigSyncProcessor(db, catalog, fake_sink, settings)
    assert await processor.get_config_age(TENANT_ID) is None

    await processor.process(job_payload())

    assert await SyncStateService(db).get_last_successful_sync(TENANT_ID, SyncType.CONFIG) is not None
    assert await processor.get_config_age(TENANT_ID) is not None

async def test_manual_mapping_is_kept(db, tenant, catalog, fake_sink, settings):
    units = MappingService(db, MappingKind.UNIT)
    await units.upsert_mappings(
        TENANT_ID, [MappingRecord(source_id="1", sink_id="manual-unit", mapping_type=MappingType.MANUAL)]
    )

    await ConfigSyncProcessor(db, catalog, fake_sink, settings).process(job_payload())

    assert "manual-unit" in fake_sink.records[SinkEntity.UNIT]
    mapping = await units.get_mapping(TENANT_ID, 1)
    assert mapping.sink_id == "manual-unit"
    assert mapping.mapping_type == MappingType.MANUAL.value

async def test_vanished_records_are_orphaned(db, tenant, catalog, fake_sink, settings):
    processor = ConfigSyncProcessor(db, catalog, fake_sink, settings)
    await processor.process(job_payload())

    catalog.categories = [c for c in catalog.categories if c.id != 3]
    result = await processor.process(job_payload())

    assert result.entities["categories"].orphaned == 1
    mapping = await MappingService(db, MappingKind.CATEGORY).get_mapping(TENANT_ID, 3)
    assert mapping.status == MappingStatus.ORPHANED.value
    assert "3" not in await SourceConfigCache(db).get_categories(TENANT_ID, [3])

async def test_rerun_updates_instead_of_creating(db, tenant, catalog, fake_sink, settings):
    processor = ConfigSyncProcessor(db, catalog, fake_sink, settings)
    first = await processor.process(job_payload())
    second = await processor.process(job_payload())

    assert first.items_created > 0
    assert second.items_created == 0
    assert second.items_updated == first.items_created

async def test_partial_level_failure_keeps_going(db, tenant, catalog, fake_sink, settings):
    catalog.categories = [
        category(1, 1),
        category(2, 2, parent=1),
        category(4, 2, parent=1),
        category(3, 3, parent=2),
        category(5, 3, parent=4),
    ]
    fake_sink.fail_ids = {sink_id("category", 2)}

    result = await ConfigSyncProcessor(db, catalog, fake_sink, settings).process(job_payload())

    calls = fake_sink.payloads_for(SinkEntity.CATEGORY)
    assert [sorted(c["id"] for c in call) for call in calls] == [
        [sink_id("category", 1)],
        sorted([sink_id("category", 2), sink_id("category", 4)]),
        [sink_id("category", 5)],
    ]
    assert calls[2][0]["parentId"] == sink_id("category", 4)

    mappings = await MappingService(db, MappingKind.CATEGORY).get_batch_mappings(TENANT_ID, [1, 2, 3, 4, 5])
    assert set(mappings) == {"1", "4", "5"}
    assert result.entities["categories"].synced == 3
    assert result.entities["categories"].errors == 2
    failed = {e.entity_id: e.error for e in result.errors if e.entity_type == "category"}
    assert failed["2"] == "rejected"
    assert failed["3"] == "Parent category not synced"
