"""
tasks.py

Celery tasks. The approval maintenance sweep runs here on the beat schedule
when it is not run inside the API process.
"""
import asyncio
import logging

from watchroute.core.celery_app import celery_app
from watchroute.core.redis_client import get_redis_sync
from watchroute.services.errors import PersistenceError

logger = logging.getLogger(__name__)

MAINTENANCE_LOCK_KEY = "approval_maintenance_lock"
MAINTENANCE_LOCK_TTL = 1800


@celery_app.task(bind=True, max_retries=3, default_retry_delay=300)
def run_approval_maintenance(self):
    from watchroute.services.workflow import WatchlistWorkflow

    # One sweep at a time across workers
    lock_acquired = False
    try:
        r_lock = get_redis_sync()
        if r_lock.set(MAINTENANCE_LOCK_KEY, "1", nx=True, ex=MAINTENANCE_LOCK_TTL):
            lock_acquired = True
        else:
            logger.info("[ApprovalMaintenance] Another worker is sweeping, skipping")
            return {"skipped": True}
    except Exception as e:
        logger.warning(f"[ApprovalMaintenance] Redis lock unavailable ({e}); sweeping without lock")

    async def _run():
        # Not started: only the gate, store and dispatch wiring are used
        workflow = WatchlistWorkflow()
        return await workflow.run_maintenance()

    try:
        result = asyncio.run(_run())
    except PersistenceError as e:
        logger.error(f"[ApprovalMaintenance] Sweep failed, retrying: {e}")
        raise self.retry(exc=e)
    finally:
        if lock_acquired:
            try:
                get_redis_sync().delete(MAINTENANCE_LOCK_KEY)
            except Exception as e:
                logger.warning(f"[ApprovalMaintenance] Could not release lock: {e}")
    logger.info(f"[ApprovalMaintenance] Celery sweep result: {result}")
    return result
