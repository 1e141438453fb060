"""Periodic sweep trigger."""

import asyncio
from pathlib import Path
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from sequencer.core.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from sequencer.core.db import DEFAULT_DB_PATH
from sequencer.outreach.scheduler import run_sweep
from sequencer.outreach.sender import MailTransport

log = structlog.get_logger()

SWEEP_JOB_ID = "run_sweep"


async def sweep_job(
    db_path: Path,
    config_path: Path,
    settings: Settings,
    transport: Optional[MailTransport] = None,
) -> Optional[dict]:
    """One scheduled sweep. Failures are logged, the next tick runs regardless."""
    try:
        result = await run_sweep(db_path, config_path, settings=settings, transport=transport)
        if result["processed"] > 0:
            log.info(
                "scheduled_sweep_done",
                processed=result["processed"],
                sent=result["sent"],
                errors=result["errors"],
            )
        return result
    except Exception as e:
        log.error("scheduled_sweep_failed", error=str(e))
        return None


def build_scheduler(
    db_path: Path = DEFAULT_DB_PATH,
    config_path: Path = DEFAULT_CONFIG_PATH,
    settings: Optional[Settings] = None,
    transport: Optional[MailTransport] = None,
) -> AsyncIOScheduler:
    """Scheduler with a single interval job; overlapping ticks are coalesced."""
    settings = settings or load_settings(config_path)

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        sweep_job,
        "interval",
        minutes=settings.sweep.interval_minutes,
        id=SWEEP_JOB_ID,
        args=[db_path, config_path, settings, transport],
        max_instances=1,
        coalesce=True,
    )
    return scheduler


async def serve(
    db_path: Path = DEFAULT_DB_PATH,
    config_path: Path = DEFAULT_CONFIG_PATH,
    settings: Optional[Settings] = None,
) -> None:
    """Run a sweep now, then every ``sweep.interval_minutes`` until cancelled."""
    settings = settings or load_settings(config_path)

    await sweep_job(db_path, config_path, settings)

    scheduler = build_scheduler(db_path, config_path, settings)
    scheduler.start()
    log.info("trigger_started", interval_minutes=settings.sweep.interval_minutes)

    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        log.info("trigger_stopped")
