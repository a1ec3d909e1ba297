# Periodic lifecycle sweep
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
import logging

from config import settings
from database import SessionLocal
from services.lifecycle import sweep

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler()


def run_sweep(notifier=None):
    db = SessionLocal()
    try:
        return sweep(db, notifier=notifier)
    except Exception:
        db.rollback()
        logger.exception("Lifecycle sweep failed")
        raise
    finally:
        db.close()


def start_scheduler(notifier=None):
    """Run the sweep once now, then every SWEEP_INTERVAL_SECONDS."""
    try:
        run_sweep(notifier)
    except Exception:
        logger.error("Initial lifecycle sweep failed; continuing with scheduled runs")

    scheduler.add_job(
        run_sweep,
        trigger=IntervalTrigger(seconds=settings.SWEEP_INTERVAL_SECONDS),
        kwargs={"notifier": notifier},
        id="event_lifecycle_sweep",
        name="Advance event statuses",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started; lifecycle sweep every {settings.SWEEP_INTERVAL_SECONDS}s")


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
