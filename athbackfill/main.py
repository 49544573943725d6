"""Main entry point for running the ATH backfill."""

import asyncio
import signal

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from . import config, db
from .backfill import BackfillJob, format_progress


async def run_once(job: BackfillJob) -> None:
    """Run one backfill with the configured defaults and log its summary."""
    progress = await job.start(
        concurrency=config.BACKFILL_CONCURRENCY,
        force_refresh=config.BACKFILL_FORCE_REFRESH,
    )
    config.logger.info("%s summary\n%s", config.JOB_NAME, format_progress(progress))


async def main() -> None:
    """Run the backfill once, or periodically until a stop signal arrives."""
    await db.init_db()
    job = BackfillJob()

    stop_event = asyncio.Event()

    def request_stop() -> None:
        job.stop()
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        asyncio.get_running_loop().add_signal_handler(sig, request_stop)

    if not config.BACKFILL_INTERVAL:
        await run_once(job)
        return

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_once,
        "interval",
        seconds=config.BACKFILL_INTERVAL,
        args=(job,),
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    config.logger.info(
        "%s scheduled every %s",
        config.JOB_NAME,
        config.format_interval(config.BACKFILL_INTERVAL),
    )
    await run_once(job)

    await stop_event.wait()
    scheduler.shutdown(wait=False)
    while job.running:
        await asyncio.sleep(0.5)
    config.logger.info("%s stopped", config.JOB_NAME)
