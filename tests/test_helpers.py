# tests/test_helpers.py
import pytest

from catalog_sync.core.exceptions import CircularReferenceError
from catalog_sync.models.database import CachedCategory
from catalog_sync.services.category_sync_service import resolve_chain
from catalog_sync.services.source_cache_service import ConfigSnapshotCache
from catalog_sync.tasks.queue import priority_queue_names, to_celery_priority
from catalog_sync.tasks.sync_tasks import retry_countdown
from catalog_sync.utils.helpers import chunked, file_name_from_url, pick_localized, sanitize_file_name, unique
from catalog_sync.utils.identifiers import deterministic_uuid, product_media_id, sink_entity_id
from catalog_sync.utils.rate_limiter import RateLimiter

def test_chunked():
    assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(chunked([], 3)) == []

def test_pick_localized():
    values = {"en": "Chair", "de": "", "fr": "Chaise"}

    assert pick_localized(values, ["de", "en"]) == "Chair"
    assert pick_localized({"fr": "Chaise"}, ["de", "en"]) == "Chaise"
    assert pick_localized({}, ["de"]) is None

def test_unique_keeps_order():
    assert unique([3, 1, 3, 2, 1]) == [3, 1, 2]

def test_file_names():
    assert sanitize_file_name("  ACME  Corp! ") == "acme_corp"
    assert sanitize_file_name("***") == "file"
    assert file_name_from_url("https://cdn.example.com/img/Red Shirt.PNG?size=2") == "red_shirt.png"
    assert file_name_from_url("https://cdn.example.com/") == "image.jpg"

def test_deterministic_ids():
    assert sink_entity_id("category", "t1", 5) == sink_entity_id("category", "t1", "5")
    assert sink_entity_id("category", "t1", 5) != sink_entity_id("category", "t2", 5)
    assert sink_entity_id("category", "t1", 5) != sink_entity_id("attribute", "t1", 5)
    assert len(deterministic_uuid("media", "x")) == 32
    assert product_media_id(1, 2) != product_media_id(2, 1)

def test_resolve_chain_stops_at_resolved_ancestor():
    graph = {
        "1": CachedCategory(source_id="1", parent_id=None),
        "2": CachedCategory(source_id="2", parent_id="1"),
        "3": CachedCategory(source_id="3", parent_id="2"),
    }

    assert resolve_chain("3", graph, {}) == ["3", "2", "1"]
    assert resolve_chain("3", graph, {"1": "sink-1"}) == ["3", "2"]
    assert resolve_chain("1", graph, {"1": "sink-1"}) == []

def test_resolve_chain_detects_cycles():
    graph = {
        "1": CachedCategory(source_id="1", parent_id="2"),
        "2": CachedCategory(source_id="2", parent_id="1"),
    }

    with pytest.raises(CircularReferenceError):
        resolve_chain("1", graph, {})

def test_resolve_chain_missing_parent():
    graph = {"2": CachedCategory(source_id="2", parent_id="99")}

    with pytest.raises(KeyError):
        resolve_chain("2", graph, {})

@pytest.mark.parametrize("priority,expected", [(9, 0), (0, 9), (5, 4), (42, 0), (-3, 9), (None, 9)])
def test_to_celery_priority(priority, expected):
    assert to_celery_priority(priority) == expected

def test_priority_queue_names():
    names = priority_queue_names("sync_jobs")

    assert names[0] == "sync_jobs"
    assert names[-1] == "sync_jobs:9"
    assert len(names) == 10

def test_retry_countdown_doubles():
    assert [retry_countdown(n) for n in range(3)] == [
        retry_countdown(0), retry_countdown(0) * 2, retry_countdown(0) * 4,
    ]

def test_snapshot_cache_expires(monkeypatch):
    now = [100.0]
    monkeypatch.setattr("catalog_sync.services.source_cache_service.monotonic", lambda: now[0])
    cache = ConfigSnapshotCache(ttl_seconds=10)

    cache.set("t1", "categories", {"1": "a"})
    assert cache.get("t1", "categories") == {"1": "a"}
    assert cache.get("t2", "categories") is None

    now[0] = 111.0
    assert cache.get("t1", "categories") is None

async def test_snapshot_cache_loads_once():
    cache = ConfigSnapshotCache(ttl_seconds=60)
    loads = []

    async def loader():
        loads.append(1)
        return {"5": "x"}

    assert await cache.get_or_load("t1", "units", loader) == {"5": "x"}
    assert await cache.get_or_load("t1", "units", loader) == {"5": "x"}
    assert len(loads) == 1

    cache.invalidate("t1")
    await cache.get_or_load("t1", "units", loader)
    assert len(loads) == 2

async def test_rate_limiter_waits_for_a_free_slot(monkeypatch):
    now = [0.0]
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        now[0] += seconds

    monkeypatch.setattr("catalog_sync.utils.rate_limiter.monotonic", lambda: now[0])
    monkeypatch.setattr("catalog_sync.utils.rate_limiter.asyncio.sleep", fake_sleep)
    limiter = RateLimiter(max_requests=2, time_window=10)

    await limiter.acquire()
    await limiter.acquire()
    assert sleeps == []

    await limiter.acquire()
    assert sleeps == [10]
