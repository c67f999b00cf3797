from typing import Any, Callable, Dict, Optional
import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from catalog_sync.clients.sink_client import SinkClient
from catalog_sync.clients.source_client import SourceClient
from catalog_sync.config.database import get_session_factory
from catalog_sync.config.settings import Settings, get_settings
from catalog_sync.core.exceptions import CatalogSyncException, SyncError, ValidationError
from catalog_sync.models.sync import JobPayload, SyncResult, SyncStatus, SyncType
from catalog_sync.processors.config_sync_processor import ConfigSyncProcessor
from catalog_sync.processors.product_sync_processor import ProductSyncProcessor
from catalog_sync.processors.stock_sync_processor import StockSyncProcessor
from catalog_sync.services.job_service import JobService
from catalog_sync.services.source_cache_service import ConfigSnapshotCache

logger = structlog.get_logger()

# Errors kept on the job row and in its metadata
MAX_STORED_ERRORS = 50

def default_source_factory(payload: JobPayload) -> SourceClient:
    return SourceClient(payload.source_url, payload.source_credentials)

def default_sink_factory(payload: JobPayload) -> SinkClient:
    return SinkClient(payload.sink_url, payload.sink_credentials)

class JobRunner:
    """Runs one queued sync job end to end and records the outcome on its row"""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        settings: Optional[Settings] = None,
        source_factory: Callable[[JobPayload], Any] = default_source_factory,
        sink_factory: Callable[[JobPayload], Any] = default_sink_factory,
        snapshot_cache: Optional[ConfigSnapshotCache] = None,
    ):
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self.source_factory = source_factory
        self.sink_factory = sink_factory
        self.snapshot_cache = snapshot_cache or ConfigSnapshotCache(self.settings.CONFIG_CACHE_TTL_SECONDS)

    async def _dispatch(self, db, payload: JobPayload, source, sink) -> SyncResult:
        sync_type = SyncType(payload.sync_type)
        if sync_type == SyncType.CONFIG:
            return await ConfigSyncProcessor(db, source, sink, self.settings).process(payload)
        if sync_type in (SyncType.FULL_PRODUCT, SyncType.PRODUCT_DELTA):
            processor = ProductSyncProcessor(db, source, sink, self.settings, snapshot_cache=self.snapshot_cache)
            return await processor.process(payload, full_sync=sync_type == SyncType.FULL_PRODUCT)
        if sync_type == SyncType.STOCK:
            return await StockSyncProcessor(db, source, sink, self.settings).process(payload)
        raise ValidationError(f"Unsupported sync type {sync_type}")

    @staticmethod
    def _metadata(result: SyncResult) -> Dict[str, Any]:
        metadata = result.model_dump(mode="json", exclude={"errors"})
        metadata["errors"] = [error.model_dump(mode="json") for error in result.errors[:MAX_STORED_ERRORS]]
        metadata["errors_truncated"] = len(result.errors) > MAX_STORED_ERRORS
        return metadata

    async def _record_failure(self, jobs: JobService, job_id: str, error: Exception, will_retry: bool) -> None:
        message = f"{type(error).__name__}: {error}"
        if will_retry and not isinstance(error, ValidationError):
            await jobs.mark_retrying(job_id, message)
        else:
            await jobs.mark_failed(job_id, message)

    async def run(self, payload: JobPayload, will_retry: bool = False) -> Optional[SyncResult]:
        """Returns None when the job was already completed by an earlier delivery.

        With will_retry the row goes back to pending on failure so the
        pair stays blocked for new jobs until the queued retry has run.
        """
        with structlog.contextvars.bound_contextvars(
            job_id=payload.job_id,
            tenant_id=payload.tenant_id,
            sync_type=SyncType(payload.sync_type).value,
        ):
            async with self.session_factory() as db:
                jobs = JobService(db)
                job = await jobs.get_job(payload.job_id)
                if job is None:
                    raise ValidationError(f"Sync job {payload.job_id} not found")
                if job.status == SyncStatus.COMPLETED.value:
                    logger.info("Job already completed, ignoring redelivery")
                    return None

                await jobs.mark_processing(payload.job_id)
                logger.info("Processing sync job", attempt=job.attempts)

                source = self.source_factory(payload)
                sink = self.sink_factory(payload)
                try:
                    result = await self._dispatch(db, payload, source, sink)
                except CatalogSyncException as e:
                    await db.rollback()
                    await self._record_failure(jobs, payload.job_id, e, will_retry)
                    logger.error("❌ Sync job failed", error=str(e), error_type=type(e).__name__)
                    raise
                except Exception as e:
                    await db.rollback()
                    await self._record_failure(jobs, payload.job_id, e, will_retry)
                    logger.exception("❌ Sync job aborted")
                    raise SyncError(f"Sync job {payload.job_id} aborted: {e}") from e
                finally:
                    await source.close()
                    await sink.close()

                await jobs.mark_completed(
                    payload.job_id,
                    result.items_processed,
                    result.items_failed,
                    metadata=self._metadata(result),
                )
                logger.info(
                    "✅ Sync job completed",
                    success=result.success,
                    processed=result.items_processed,
                    failed=result.items_failed,
                )
                return result

async def run_sync_job(payload: JobPayload, will_retry: bool = False, **runner_kwargs: Any) -> Optional[SyncResult]:
    return await JobRunner(**runner_kwargs).run(payload, will_retry=will_retry)
