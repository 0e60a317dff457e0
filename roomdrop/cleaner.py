from apscheduler.schedulers.background import BackgroundScheduler

from roomdrop.config import CLEANUP_INTERVAL_MINUTES
from roomdrop.core.exceptions import PersistenceError
from roomdrop.db import ensure_connection, session_scope
from roomdrop.services.sweeper import sweep_expired_rooms
from roomdrop.storage import get_object_store


def run_sweep_job(metrics, logger) -> int:
    if not ensure_connection():
        logger.warning("event=cleanup_skipped reason=database_unreachable")
        return 0
    try:
        with session_scope() as session:
            deleted = sweep_expired_rooms(session, get_object_store())
    except PersistenceError as e:
        # Retries are exhausted inside the sweep; the next run tries again
        logger.error("Database error in cleanup job: %s (%r)", e, e.__cause__)
        return 0
    except Exception as e:
        logger.error("Unexpected error in cleanup job: %s", str(e))
        return 0
    if deleted:
        metrics.record_sweep(deleted)
        logger.info("event=cleanup_deleted count=%s", deleted)
    return deleted


def start_cleaner(metrics, logger):
    scheduler = BackgroundScheduler()
    scheduler.add_job(run_sweep_job, "interval", args=(metrics, logger), minutes=CLEANUP_INTERVAL_MINUTES)
    scheduler.start()
    return scheduler
