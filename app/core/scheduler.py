import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.jobstores.memory import MemoryJobStore

from app.core.config import settings

logger = logging.getLogger(__name__)

INBOUND_POLL_JOB_ID = "crm_inbound_poll"

scheduler = BackgroundScheduler(
    jobstores={"default": MemoryJobStore()},
    job_defaults={"coalesce": True, "max_instances": 1},
)


def _run_inbound_poll():
    """Scheduled job: pull leads from every active CRM integration."""
    from app.services.inbound_sync_service import InboundSyncService

    try:
        InboundSyncService.sync_all_companies()
    except Exception as e:
        logger.error(f"Scheduled inbound poll failed: {e}")


def add_inbound_poll_job(interval_minutes: int | None = None):
    return scheduler.add_job(
        _run_inbound_poll,
        trigger="interval",
        minutes=interval_minutes or settings.CRM_POLL_INTERVAL_MINUTES,
        id=INBOUND_POLL_JOB_ID,
        replace_existing=True,
    )


def start_scheduler():
    """Register the inbound poll job and start the scheduler."""
    add_inbound_poll_job()
    scheduler.start()
    logger.info(f"APScheduler started: inbound CRM poll every {settings.CRM_POLL_INTERVAL_MINUTES} min")


def shutdown_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("APScheduler shut down")
