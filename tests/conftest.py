# tests/conftest.py
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from catalog_sync.clients.source_client import SourceClient
from catalog_sync.config.database import Base
from catalog_sync.config.settings import Settings
from catalog_sync.core.exceptions import SinkAPIError
from catalog_sync.models.database import Tenant
from catalog_sync.models.sink import BulkItemResult, SinkCurrency, SinkEntity, SinkMedia, SinkTax
from catalog_sync.models.sync import SinkCredentials, SourceCredentials, SyncAction

TENANT_ID = "tenant-1"

@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite+aiosqlite://",
        SOURCE_PAGE_DELAY_SECONDS=0,
        IMAGE_FETCH_DELAY_SECONDS=0,
        RETRY_DELAY_SECONDS=0,
        RATE_LIMIT_DEFAULT_WAIT_SECONDS=0,
        SINK_RATE_LIMIT=10000,
        SYNC_BATCH_SIZE=100,
        DEFAULT_LANGUAGE="de",
        FALLBACK_LANGUAGES=["en"],
    )

@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session

@pytest.fixture
async def tenant(db):
    tenant = Tenant(
        id=TENANT_ID,
        name="Test Shop",
        status="ACTIVE",
        source_url="https://erp.example.com",
        source_username="api",
        source_password="secret",
        sink_url="https://shop.example.com",
        sink_client_id="client",
        sink_client_secret="client-secret",
        config={
            "tax_rate": 19,
            "sink_root_category_id": "root-category",
            "source_frontend_url": "https://erp-frontend.example.com",
            "default_sales_price_id": 1,
            "rrp_sales_price_id": 2,
        },
    )
    db.add(tenant)
    await db.commit()
    return tenant

@pytest.fixture
def source_credentials():
    return SourceCredentials(username="api", password="secret")

@pytest.fixture
def sink_credentials():
    return SinkCredentials(client_id="client", client_secret="client-secret")

class FakeSource:
    """In-memory source adapter; lists are set by each test"""

    filter_properties = staticmethod(SourceClient.filter_properties)

    def __init__(self):
        self.variations = []
        self.images = {}
        self.stock = []
        self.categories = []
        self.attributes = []
        self.sales_prices = []
        self.manufacturers = []
        self.units = []
        self.properties = []
        self.calls = []
        self.stock_error = None
        self.closed = False

    async def get_all_variations(self, query=None):
        self.calls.append(("full", None))
        return list(self.variations)

    async def get_variations_delta(self, since, query=None):
        self.calls.append(("delta", since))
        return list(self.variations)

    async def get_batch_item_images(self, item_ids):
        return {item_id: self.images.get(item_id, []) for item_id in item_ids}

    async def get_stock_management(self):
        if self.stock_error is not None:
            raise self.stock_error
        return list(self.stock)

    async def get_all_categories(self):
        return list(self.categories)

    async def get_all_attributes(self):
        return list(self.attributes)

    async def get_all_sales_prices(self):
        return list(self.sales_prices)

    async def get_all_manufacturers(self):
        return list(self.manufacturers)

    async def get_all_units(self):
        return list(self.units)

    async def get_all_properties(self):
        return list(self.properties)

    async def close(self):
        self.closed = True

class FakeSink:
    """In-memory storefront recording every write"""

    def __init__(self):
        self.records = {entity: {} for entity in SinkEntity}
        self.calls = []
        self.fail_ids = set()
        self.failing_urls = set()
        self.uploads = []
        self.stock = {}
        self.stock_error = None
        self.media_reconciled = []
        self.closed = False

    def _upsert(self, entity, payloads, existing_ids=None):
        existing = set(existing_ids or ())
        payloads = [p.to_payload() for p in payloads]
        self.calls.append((entity, payloads))
        results = []
        for payload in payloads:
            item_id = payload["id"]
            action = SyncAction.UPDATE.value if item_id in existing else SyncAction.CREATE.value
            if item_id in self.fail_ids:
                results.append(BulkItemResult(id=item_id, action=action, success=False, error="rejected"))
                continue
            self.records[entity][item_id] = payload
            results.append(BulkItemResult(id=item_id, action=action, success=True))
        return results

    def payloads_for(self, entity):
        return [payloads for called, payloads in self.calls if called == entity]

    async def upsert_products(self, products, existing_ids=None):
        return self._upsert(SinkEntity.PRODUCT, products, existing_ids)

    async def upsert_categories(self, categories, existing_ids=None):
        return self._upsert(SinkEntity.CATEGORY, categories, existing_ids)

    async def upsert_property_groups(self, groups, existing_ids=None):
        return self._upsert(SinkEntity.PROPERTY_GROUP, groups, existing_ids)

    async def upsert_property_options(self, options, existing_ids=None):
        return self._upsert(SinkEntity.PROPERTY_GROUP_OPTION, options, existing_ids)

    async def upsert_manufacturers(self, manufacturers, existing_ids=None):
        return self._upsert(SinkEntity.MANUFACTURER, manufacturers, existing_ids)

    async def upsert_units(self, units, existing_ids=None):
        return self._upsert(SinkEntity.UNIT, units, existing_ids)

    async def batch_update_stock(self, updates):
        if self.stock_error is not None:
            raise self.stock_error
        self.calls.append(("stock", [u.to_payload() for u in updates]))
        for update in updates:
            self.stock[update.id] = update.stock
        return [BulkItemResult(id=u.id, action="update", success=True) for u in updates]

    async def get_default_tax(self, tax_rate=None):
        return SinkTax(id="tax-standard", tax_rate=tax_rate or 19.0, name="Standard")

    async def get_default_currency(self):
        return SinkCurrency(id="currency-eur", iso_code="EUR", factor=1.0)

    async def get_or_create_media_folder(self, name):
        return f"folder-{name}"

    async def create_media_from_url(self, url, file_name, folder_id=None, media_id=None):
        if url in self.failing_urls:
            raise SinkAPIError(f"Download of {url} failed with 404", status_code=404)
        self.uploads.append({"url": url, "file_name": file_name, "folder_id": folder_id, "media_id": media_id})
        return SinkMedia(id=media_id, file_name=file_name, mime_type="image/jpeg", file_size=100)

    async def sync_product_media(self, product_id, keep_ids):
        self.media_reconciled.append((product_id, list(keep_ids)))
        return 0

    async def close(self):
        self.closed = True

@pytest.fixture
def fake_source():
    return FakeSource()

@pytest.fixture
def fake_sink():
    return FakeSink()
