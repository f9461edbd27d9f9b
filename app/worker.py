"""Lesson scheduler worker.

RUN:  python -m app.worker          (loop, one batch per interval)
      python -m app.worker --once   (single batch, for an external cron)

Same image as the API, different command:
  api:    uvicorn app.main:app --host 0.0.0.0 --port 8000
  worker: python -m app.worker

THE LOOP
---------
Batches are aligned to the top of the hour in SCHEDULER_TIMEZONE, because
selection matches the user's preferred hour against the clock: a batch
that drifted to 09:59 and then slept an hour would skip 10:00 entirely.
An interval that does not divide an hour is slept in full between batches.

A batch that raises (database down) is logged and the loop keeps going;
the next hour's batch will pick the ledger back up.
"""

from __future__ import annotations

import argparse
import asyncio
import datetime
import logging

from app.container import services
from app.core.config import SETTINGS
from app.core.logging import setup_logging
from app.db.engine import lifespan_db
from app.db.redis import lifespan_redis

logger = logging.getLogger("worker")


def seconds_until_next_run(now: datetime.datetime, interval: int) -> float:
    """Seconds to sleep so the next batch starts on an interval boundary."""
    if interval <= 0:
        raise ValueError("interval must be positive")
    if 3600 % interval:
        return float(interval)
    elapsed = (now.minute * 60 + now.second + now.microsecond / 1_000_000) % interval
    return interval - elapsed


async def run_once() -> None:
    report = await services.scheduler.run()
    logger.info(
        "Batch %s finished  delivered=%d failed=%d",
        report.run_id,
        report.delivered,
        report.failed,
    )


async def run_worker(interval: int) -> None:
    logger.info(
        "Worker started: lesson batches every %ds in %s",
        interval,
        SETTINGS.scheduler_timezone,
    )
    while True:
        try:
            await run_once()
        except Exception:
            logger.exception("Lesson batch failed")
        now = datetime.datetime.now(datetime.UTC)
        await asyncio.sleep(seconds_until_next_run(now, interval))


async def main(once: bool) -> None:
    async with lifespan_db():
        async with lifespan_redis():
            try:
                if once:
                    await run_once()
                else:
                    await run_worker(SETTINGS.scheduler_interval_seconds)
            finally:
                await services.aclose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="SkillBoost lesson scheduler")
    parser.add_argument("--once", action="store_true", help="run one batch and exit")
    args = parser.parse_args()

    setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
    asyncio.run(main(args.once))
