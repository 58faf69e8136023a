# workers/scheduler.py
import asyncio
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from leasecycle.core.database import CONTRACT_INDEXES, db_manager
from leasecycle.core.log_config import configure_logging
from leasecycle.core.scheduler_decorators import SCHEDULED_TASKS
from leasecycle.workers import tasks  # noqa: F401  registers scheduled actors

logger = logging.getLogger(__name__)
_scheduler_started = False


def build_scheduler() -> AsyncIOScheduler:
    """Register every scheduled actor; each job only sends the actor message."""
    scheduler = AsyncIOScheduler(timezone="UTC")

    for task in SCHEDULED_TASKS:
        actor = task["func"]
        job_id = task["job_id"]
        trigger_args = task["trigger_args"]

        scheduler.add_job(lambda a=actor: a.send(),
                          trigger=task["trigger"],
                          id=job_id,
                          name=job_id,
                          coalesce=True,
                          misfire_grace_time=600,
                          max_instances=1,
                          replace_existing=True,
                          **trigger_args)
        logger.info(f"Registered job: {job_id} ({trigger_args})")
    return scheduler


async def start_scheduler():
    """Ensure indexes, load scheduled tasks, and start APScheduler."""
    global _scheduler_started
    if _scheduler_started:
        logger.warning("Scheduler already running, skipping duplicate start")
        return
    _scheduler_started = True

    await db_manager.initialize()
    await db_manager.create_indexes(CONTRACT_INDEXES)
    logger.info(f"Database health: {await db_manager.health_check()}")

    scheduler = build_scheduler()
    scheduler.start()
    now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    for job in scheduler.get_jobs():
        next_run = job.next_run_time.strftime("%Y-%m-%d %H:%M:%S") if job.next_run_time else "-"
        logger.info(f"{job.name} next run at {next_run} (now {now})")

    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        scheduler.shutdown()
        await db_manager.close()
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(start_scheduler())
