from datetime import timedelta
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from sequencer.core.config import Settings, SweepConfig
from sequencer.outreach.trigger import SWEEP_JOB_ID, build_scheduler, sweep_job


def test_build_scheduler_registers_single_interval_job():
    settings = Settings(sweep=SweepConfig(interval_minutes=7))

    scheduler = build_scheduler(Path("test.db"), Path("config"), settings)
    job = scheduler.get_job(SWEEP_JOB_ID)

    assert job is not None
    assert job.trigger.interval == timedelta(minutes=7)
    assert job.max_instances == 1
    assert job.coalesce is True
    assert len(scheduler.get_jobs()) == 1


@pytest.mark.asyncio
async def test_sweep_job_logs_and_survives_failure():
    with patch("sequencer.outreach.trigger.run_sweep", new_callable=AsyncMock) as mock_sweep:
        mock_sweep.side_effect = RuntimeError("database is locked")

        result = await sweep_job(Path("test.db"), Path("config"), Settings())

    assert result is None


@pytest.mark.asyncio
async def test_sweep_job_returns_summary():
    summary = {"processed": 0, "sent": 0, "errors": 0}
    with patch("sequencer.outreach.trigger.run_sweep", new_callable=AsyncMock) as mock_sweep:
        mock_sweep.return_value = summary

        result = await sweep_job(Path("test.db"), Path("config"), Settings())

    assert result == summary
