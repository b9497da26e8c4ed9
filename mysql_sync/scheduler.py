import signal
from typing import Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import SyncConfiguration
from .errors import SyncError
from .job import SyncJob
from .logger import get_logger

logger = get_logger(__name__)

JOB_ID = "mysql_sync"


def trigger_scheduled_sync(job: SyncJob, config: SyncConfiguration) -> bool:
    """Run one sync; a failed run is logged and the schedule carries on."""
    logger.info("Triggering scheduled sync")
    try:
        outcome = job.run(config)
    except SyncError as e:
        logger.error(f"Scheduled sync failed at step '{e.step}': {e}")
        return False
    logger.info(f"Scheduled sync completed: {outcome.artifact_path}")
    return True


def build_scheduler(config: SyncConfiguration, job: Optional[SyncJob] = None,
                    scheduler: Optional[BlockingScheduler] = None) -> BlockingScheduler:
    job = job or SyncJob()
    scheduler = scheduler or BlockingScheduler(timezone=config.timezone)
    scheduler.add_job(
        trigger_scheduled_sync,
        trigger=CronTrigger.from_crontab(config.schedule, timezone=config.timezone),
        args=[job, config],
        id=JOB_ID,
        name="MySQL dump-and-restore sync",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info(f"Scheduled sync with schedule: '{config.schedule}' ({config.timezone})")
    return scheduler


def run_scheduler(config: SyncConfiguration, job: Optional[SyncJob] = None, run_now: bool = False) -> None:
    """Block, running the sync on its cron schedule until SIGTERM/SIGINT."""
    job = job or SyncJob()
    scheduler = build_scheduler(config, job)

    def _shutdown(signum, frame):
        logger.info(f"Received {signal.Signals(signum).name}, stopping scheduler …")
        job.runner.terminate_all()
        scheduler.shutdown(wait=False)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    if run_now:
        logger.info("Running initial sync …")
        trigger_scheduled_sync(job, config)

    scheduler.start()
