import asyncio
import structlog

from catalog_sync.config.database import dispose_database, get_session_factory
from catalog_sync.tasks.celery_app import celery_app
from catalog_sync.tasks.queue import recover_stalled_jobs as recover_stalled
from catalog_sync.services.scheduler_service import SyncScheduler

logger = structlog.get_logger()

def _run_with_session(work):
    """Run `work(db)` in a fresh event loop with its own session"""

    async def runner():
        try:
            async with get_session_factory()() as db:
                return await work(db)
        finally:
            await dispose_database()

    return asyncio.run(runner())

@celery_app.task
def run_scheduler_cycle():
    """Periodic task: turn due schedules into queued jobs"""

    async def work(db):
        cycle = await SyncScheduler(db).check_and_create_jobs()
        if cycle.failed:
            logger.warning("Scheduler cycle had failures", cycle_id=cycle.cycle_id, failed=cycle.failed)
        return cycle.model_dump()

    return _run_with_session(work)

@celery_app.task
def cleanup_old_jobs(days: int = None):

    async def work(db):
        return await SyncScheduler(db).cleanup_old_jobs(days)

    return _run_with_session(work)

@celery_app.task
def health_check():

    async def work(db):
        return await SyncScheduler(db).health_check()

    return _run_with_session(work)

@celery_app.task
def recover_stalled_jobs(minutes: int = None):

    async def work(db):
        recovered = await recover_stalled(db, minutes)
        if not recovered:
            logger.debug("No stalled jobs found")
        return {"recovered": recovered}

    return _run_with_session(work)
