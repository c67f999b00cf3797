# tests/test_clients.py
import json
from datetime import datetime

import httpx
import pytest

from catalog_sync.clients.sink_client import SinkClient
from catalog_sync.clients.source_client import SourceClient
from catalog_sync.core.exceptions import AuthError, SourceAPIError, TransientNetworkError
from catalog_sync.models.sink import SinkEntity, SinkStockUpdate
from catalog_sync.models.source import SourceProperty

SOURCE_URL = "https://erp.example.com"
SINK_URL = "https://shop.example.com"

class FakeSourceAPI:
    """Login plus a paginated units endpoint"""

    def __init__(self, tokens=("token-1",), pages=None):
        self.tokens = list(tokens)
        self.pages = pages or {1: {"page": 1, "isLastPage": True, "entries": [{"id": 1}]}}
        self.logins = 0
        self.requests = []
        self.responses = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/rest/login":
            token = self.tokens[min(self.logins, len(self.tokens) - 1)]
            self.logins += 1
            return httpx.Response(200, json={"accessToken": token, "expiresIn": 3600})

        self.requests.append(request)
        if self.responses:
            response = self.responses.pop(0)
            if response is not None:
                return response
        page = int(request.url.params.get("page", 1))
        return httpx.Response(200, json=self.pages[page])

def source_client(api, credentials, settings):
    return SourceClient(SOURCE_URL, credentials, settings=settings, transport=httpx.MockTransport(api))

async def test_source_pagination_follows_pages(source_credentials, settings):
    api = FakeSourceAPI(pages={
        1: {"page": 1, "isLastPage": False, "lastPageNumber": 2, "totalsCount": 2, "entries": [{"id": 1}]},
        2: {"page": 2, "isLastPage": True, "lastPageNumber": 2, "totalsCount": 2, "entries": [{"id": 2}]},
    })
    client = source_client(api, source_credentials, settings)

    units = await client.get_all_units()
    await client.close()

    assert [unit.id for unit in units] == [1, 2]
    assert api.logins == 1
    assert [r.url.params["page"] for r in api.requests] == ["1", "2"]
    assert api.requests[0].url.params["with"] == "names"
    assert api.requests[0].headers["Authorization"] == "Bearer token-1"

async def test_delta_query_sends_unix_timestamp(source_credentials, settings):
    api = FakeSourceAPI(pages={1: {"page": 1, "isLastPage": True, "entries": []}})
    client = source_client(api, source_credentials, settings)

    await client.get_variations_delta(datetime(2024, 1, 1, 0, 0))
    await client.close()

    params = api.requests[0].url.params
    assert params["updatedBetween"] == "1704067200"
    assert "variationSalesPrices" in params["with"]

async def test_401_refreshes_token_once(source_credentials, settings):
    api = FakeSourceAPI(tokens=("stale", "fresh"))
    api.responses = [httpx.Response(401, json={"error": "expired"})]
    client = source_client(api, source_credentials, settings)

    units = await client.get_all_units()
    await client.close()

    assert [unit.id for unit in units] == [1]
    assert api.logins == 2
    assert api.requests[-1].headers["Authorization"] == "Bearer fresh"

async def test_second_401_is_an_auth_error(source_credentials, settings):
    api = FakeSourceAPI(tokens=("a", "b"))
    api.responses = [httpx.Response(401), httpx.Response(401)]
    client = source_client(api, source_credentials, settings)

    with pytest.raises(AuthError):
        await client.get_all_units()
    await client.close()

    assert api.logins == 2
    assert len(api.requests) == 2

async def test_429_waits_and_retries(source_credentials, settings):
    api = FakeSourceAPI()
    api.responses = [httpx.Response(429, headers={"Retry-After": "0"})]
    client = source_client(api, source_credentials, settings)

    units = await client.get_all_units()
    await client.close()

    assert [unit.id for unit in units] == [1]
    assert len(api.requests) == 2

async def test_server_errors_exhaust_retries(source_credentials, settings):
    api = FakeSourceAPI()
    api.responses = [httpx.Response(503)] * settings.RETRY_ATTEMPTS
    client = source_client(api, source_credentials, settings)

    with pytest.raises(TransientNetworkError):
        await client.get_all_units()
    await client.close()

    assert len(api.requests) == settings.RETRY_ATTEMPTS

async def test_server_error_then_success(source_credentials, settings):
    api = FakeSourceAPI()
    api.responses = [httpx.Response(502)]
    client = source_client(api, source_credentials, settings)

    units = await client.get_all_units()
    await client.close()

    assert len(units) == 1
    assert len(api.requests) == 2

async def test_client_errors_are_not_retried(source_credentials, settings):
    api = FakeSourceAPI()
    api.responses = [httpx.Response(400, text="bad filter")]
    client = source_client(api, source_credentials, settings)

    with pytest.raises(SourceAPIError) as exc_info:
        await client.get_all_units()
    await client.close()

    assert exc_info.value.status_code == 400
    assert len(api.requests) == 1

async def test_failed_login_is_an_auth_error(source_credentials, settings):
    def handler(request):
        return httpx.Response(403, text="wrong password")

    client = SourceClient(SOURCE_URL, source_credentials, settings=settings, transport=httpx.MockTransport(handler))

    with pytest.raises(AuthError):
        await client.authenticate()
    await client.close()

def test_filter_properties_by_referrer_and_client():
    def prop(prop_id, referrers, clients=None):
        options = [{"typeOptionIdentifier": "referrers", "propertyOptionValues": [{"value": r} for r in referrers]}]
        if clients:
            options.append({"typeOptionIdentifier": "clients", "propertyOptionValues": [{"value": c} for c in clients]})
        return SourceProperty.model_validate({"id": prop_id, "cast": "selection", "options": options})

    properties = [prop(1, ["1.00"], ["100"]), prop(2, ["4.00"]), prop(3, ["1.00"], ["200"])]

    assert [p.id for p in SourceClient.filter_properties(properties, ["1.00"])] == [1, 3]
    assert [p.id for p in SourceClient.filter_properties(properties, ["1.00"], ["100"])] == [1]

class FakeSinkAPI:
    def __init__(self):
        self.requests = []
        self.sync_response = {}
        self.missing = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/oauth/token":
            return httpx.Response(200, json={"access_token": "sink-token", "expires_in": 600})
        self.requests.append(request)
        if request.url.path == "/api/_action/sync":
            return httpx.Response(200, json=self.sync_response)
        if request.method == "GET":
            entity_id = request.url.path.rsplit("/", 1)[-1]
            if entity_id in self.missing:
                return httpx.Response(404, json={"errors": [{"status": "404"}]})
            return httpx.Response(200, json={"data": {"id": entity_id}})
        return httpx.Response(204)

@pytest.fixture
def sink_api():
    return FakeSinkAPI()

@pytest.fixture
async def sink(sink_api, sink_credentials, settings):
    client = SinkClient(SINK_URL, sink_credentials, settings=settings, transport=httpx.MockTransport(sink_api))
    yield client
    await client.close()

async def test_bulk_upsert_reports_per_item_errors(sink, sink_api):
    sink_api.sync_response = {
        "errors": {"upsert-product": {"1": [{"detail": "productNumber already in use"}]}},
    }

    results = await sink.bulk_upsert(SinkEntity.PRODUCT, [{"id": "a"}, {"id": "b"}], existing_ids={"a"})

    assert [(r.id, r.action, r.success) for r in results] == [("a", "update", True), ("b", "create", False)]
    assert results[1].error == "productNumber already in use"

    request = sink_api.requests[0]
    assert request.headers["fail-on-error"] == "false"
    assert request.headers["Authorization"] == "Bearer sink-token"
    body = json.loads(request.content)
    assert body == {"upsert-product": {"entity": "product", "action": "upsert", "payload": [{"id": "a"}, {"id": "b"}]}}

async def test_empty_bulk_upsert_sends_nothing(sink, sink_api):
    assert await sink.bulk_upsert(SinkEntity.CATEGORY, []) == []
    assert sink_api.requests == []

async def test_get_by_id_returns_none_for_404(sink, sink_api):
    sink_api.missing = {"gone"}

    assert await sink.get_by_id(SinkEntity.MEDIA, "gone") is None
    assert await sink.get_by_id(SinkEntity.MEDIA, "here") == {"id": "here"}
    assert sink_api.requests[0].url.path == "/api/media/gone"

async def test_stock_updates_are_addressed_by_id(sink, sink_api):
    results = await sink.batch_update_stock([
        SinkStockUpdate(id="p-1", stock=5, product_number="SKU-1"),
        SinkStockUpdate(id="p-2", stock=0),
    ])

    assert all(r.success for r in results)
    body = json.loads(sink_api.requests[0].content)
    assert body["update-stock"]["payload"] == [{"id": "p-1", "stock": 5}, {"id": "p-2", "stock": 0}]

async def test_source_connection_check(source_credentials, settings):
    client = source_client(FakeSourceAPI(), source_credentials, settings)
    assert await client.test_connection()
    await client.close()

    def refuse(request):
        return httpx.Response(403, text="wrong password")

    client = SourceClient(SOURCE_URL, source_credentials, settings=settings, transport=httpx.MockTransport(refuse))
    assert not await client.test_connection()
    await client.close()

async def test_sink_connection_check(sink, sink_api):
    assert await sink.test_connection()
    assert sink_api.requests[0].url.path == "/api/search/currency"
