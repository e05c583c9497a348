"""
The sync job: credential pre-flight, retries, and scheduling.

SyncJob counts successful and failed invocations for the lifetime of the process.
The counters start at zero on every restart and are never persisted; they only
feed the "consistently failing" warning.
"""

import logging
import typing

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import SyncConfig
from .sync import sync_with_failover

logger = logging.getLogger(__name__)

JOB_ID = "directorySync"

# warn after this many failures in a row without any success, and on every multiple
FAILURE_WARNING_PERIOD = 7


def is_executable(config: SyncConfig) -> bool:
    """
    Pre-flight check: can a sync run with this configuration?

    Missing registry credentials mean the sync is switched off, which is not an error.
    Write-to-file runs need no registry at all, mock runs need its URL but no credentials.
    """
    if config.write_to_file:
        return True
    if not config.directory_url:
        logger.warning("No registry URL configured, sync is disabled")
        return False
    if config.mock:
        return True
    if not config.has_credentials:
        logger.warning("No registry token, user name or password configured, sync is disabled")
        return False
    return True


class SyncJob:
    """
    Runs the retry loop around a sync pass and tracks how invocations went.

    Attributes:
        success_count: Invocations that ended in a successful pass.
        failure_count: Invocations in which every attempt failed.
    """

    def __init__(
        self,
        config: SyncConfig,
        run_pass: typing.Callable[[], bool],
        sleep: typing.Optional[typing.Callable[[float], None]] = None,
    ):
        self.config = config
        self.run_pass = run_pass
        self.sleep = sleep
        self.success_count = 0
        self.failure_count = 0

    def is_consistently_failing(self) -> bool:
        return (
            self.success_count == 0
            and self.failure_count >= FAILURE_WARNING_PERIOD
            and self.failure_count % FAILURE_WARNING_PERIOD == 0
        )

    def execute(self) -> bool:
        """One invocation: pre-flight, then up to ``retry_max`` passes."""
        if not is_executable(self.config):
            return False
        kwargs = {"sleep": self.sleep} if self.sleep is not None else {}
        succeeded = sync_with_failover(
            self.run_pass,
            self.config.retry_max,
            self.config.retry_interval,
            **kwargs,
        )
        if succeeded:
            self.success_count += 1
        else:
            self.failure_count += 1
            if self.is_consistently_failing():
                logger.warning(
                    f"Sync has failed {self.failure_count} times without a single success; "
                    "check the registry and source configuration"
                )
        logger.info(f"Sync job: {self.success_count} succeeded, {self.failure_count} failed")
        return succeeded


def build_scheduler(job: SyncJob, cron: str, scheduler: typing.Optional[BlockingScheduler] = None) -> BlockingScheduler:
    """
    Schedule ``job`` on a UNIX cron expression.

    ``max_instances=1`` keeps runs single-flight: a trigger that fires while a pass
    is still running is skipped, not queued.
    """
    scheduler = scheduler if scheduler is not None else BlockingScheduler()
    trigger = CronTrigger.from_crontab(cron)
    scheduler.add_job(
        job.execute,
        trigger=trigger,
        id=JOB_ID,
        name="Directory sync",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info(f"Scheduled directory sync with cron '{cron}'")
    return scheduler


def run(job: SyncJob) -> bool:
    """Run once when no cron expression is configured, otherwise block on the schedule."""
    cron = job.config.timer_cron.strip()
    if not cron:
        return job.execute()
    scheduler = build_scheduler(job, cron)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
    return True
