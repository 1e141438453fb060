#!/usr/bin/env python3
"""Cron wrapper: one sweep over due leads.

    */5 * * * * cd /path/to/repo && .venv/bin/python run_sweep.py
"""

import asyncio
from datetime import datetime
from dotenv import load_dotenv

load_dotenv()

import structlog

from sequencer.core.db import DEFAULT_DB_PATH, init_db
from sequencer.outreach.scheduler import run_sweep

log = structlog.get_logger()


async def main():
    start_time = datetime.now()
    log.info("sweep_run_started", time=start_time.isoformat())

    # Ensure SQLite database exists
    init_db(DEFAULT_DB_PATH)

    try:
        results = await run_sweep()
        results.pop("details")
        log.info("sweep_run_completed", **results)
    except Exception as e:
        log.error("sweep_run_failed", error=str(e))
        raise

    elapsed = (datetime.now() - start_time).total_seconds()
    log.info("sweep_run_elapsed", elapsed_seconds=elapsed)


if __name__ == "__main__":
    asyncio.run(main())
