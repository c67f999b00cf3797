# tests/test_job_runner.py
import pytest

from catalog_sync.core.exceptions import SourceAPIError, SyncError, TransientNetworkError, ValidationError
from catalog_sync.models.database import Tenant
from catalog_sync.models.source import SourceStockEntry
from catalog_sync.models.sync import SyncStatus, SyncType
from catalog_sync.services.job_runner import JobRunner
from catalog_sync.services.job_service import JobService, build_job_payload

TENANT_ID = "tenant-1"

@pytest.fixture
def runner(session_factory, settings, fake_source, fake_sink):
    return JobRunner(
        session_factory=session_factory,
        settings=settings,
        source_factory=lambda payload: fake_source,
        sink_factory=lambda payload: fake_sink,
    )

@pytest.fixture
async def stock_job(db, tenant):
    job = await JobService(db).create_job(TENANT_ID, SyncType.STOCK, priority=3)
    return build_job_payload(job, tenant)

async def load_job(session_factory, job_id):
    async with session_factory() as session:
        return await JobService(session).get_job(job_id)

async def test_completed_job_records_results(runner, stock_job, session_factory, fake_source, fake_sink):
    fake_source.stock = [SourceStockEntry.model_validate({"variationId": 1, "warehouseId": 1, "stockNet": 4})]

    result = await runner.run(stock_job)

    assert result.success
    assert result.items_skipped == 1
    job = await load_job(session_factory, stock_job.job_id)
    assert job.status == SyncStatus.COMPLETED.value
    assert job.attempts == 1
    assert job.started_at is not None
    assert job.completed_at is not None
    assert job.job_metadata["items_skipped"] == 1
    assert job.job_metadata["errors"] == []
    assert fake_source.closed and fake_sink.closed

async def test_redelivered_completed_job_is_ignored(runner, stock_job, session_factory):
    await runner.run(stock_job)

    assert await runner.run(stock_job) is None
    job = await load_job(session_factory, stock_job.job_id)
    assert job.attempts == 1

async def test_domain_error_fails_job_and_propagates(runner, stock_job, session_factory, fake_source):
    fake_source.stock_error = SourceAPIError("stock endpoint down", status_code=500)

    with pytest.raises(SourceAPIError):
        await runner.run(stock_job)

    job = await load_job(session_factory, stock_job.job_id)
    assert job.status == SyncStatus.FAILED.value
    assert "stock endpoint down" in job.error_message
    assert fake_source.closed

async def test_unexpected_error_is_wrapped(runner, stock_job, session_factory, fake_source):
    fake_source.stock_error = RuntimeError("boom")

    with pytest.raises(SyncError):
        await runner.run(stock_job)

    job = await load_job(session_factory, stock_job.job_id)
    assert job.status == SyncStatus.FAILED.value
    assert job.error_message == "RuntimeError: boom"

async def test_retry_after_failure_increments_attempts(runner, stock_job, session_factory, fake_source):
    fake_source.stock_error = SourceAPIError("flaky", status_code=502)
    with pytest.raises(SourceAPIError):
        await runner.run(stock_job)

    fake_source.stock_error = None
    await runner.run(stock_job)

    job = await load_job(session_factory, stock_job.job_id)
    assert job.status == SyncStatus.COMPLETED.value
    assert job.attempts == 2
    assert job.error_message is None

async def test_missing_job_is_a_validation_error(runner, db, tenant):
    job = await JobService(db).create_job(TENANT_ID, SyncType.STOCK)
    payload = build_job_payload(job, tenant).model_copy(update={"job_id": "missing"})

    with pytest.raises(ValidationError):
        await runner.run(payload)

async def test_unknown_tenant_fails_the_job(runner, db, tenant, session_factory):
    job = await JobService(db).create_job(TENANT_ID, SyncType.STOCK)
    ghost = Tenant(
        id="ghost",
        name="Gone",
        source_url="https://erp.example.com",
        source_username="api",
        source_password="secret",
        sink_url="https://shop.example.com",
        sink_client_id="client",
        sink_client_secret="client-secret",
    )
    payload = build_job_payload(job, ghost)

    with pytest.raises(ValidationError):
        await runner.run(payload)

    assert (await load_job(session_factory, job.id)).status == SyncStatus.FAILED.value

async def test_failure_with_retry_left_keeps_the_pair_blocked(runner, stock_job, session_factory, fake_source):
    fake_source.stock_error = TransientNetworkError("connection reset")

    with pytest.raises(TransientNetworkError):
        await runner.run(stock_job, will_retry=True)

    job = await load_job(session_factory, stock_job.job_id)
    assert job.status == SyncStatus.PENDING.value
    assert "connection reset" in job.error_message
    async with session_factory() as session:
        assert await JobService(session).has_active_job(TENANT_ID, SyncType.STOCK)

    with pytest.raises(TransientNetworkError):
        await runner.run(stock_job, will_retry=False)

    job = await load_job(session_factory, stock_job.job_id)
    assert job.status == SyncStatus.FAILED.value
    assert job.attempts == 2
    async with session_factory() as session:
        assert not await JobService(session).has_active_job(TENANT_ID, SyncType.STOCK)

async def test_validation_error_fails_even_with_retry_left(runner, db, tenant, session_factory):
    job = await JobService(db).create_job(TENANT_ID, SyncType.STOCK)
    payload = build_job_payload(job, tenant).model_copy(update={"tenant_id": "ghost"})

    with pytest.raises(ValidationError):
        await runner.run(payload, will_retry=True)

    assert (await load_job(session_factory, job.id)).status == SyncStatus.FAILED.value
