"""Stage delay resolution: tenant override, then global default, then 7 days."""

import json
import sqlite3
from datetime import timedelta
from pathlib import Path

import structlog
from pydantic import BaseModel, ValidationError

from sequencer.core.config import TimingEntry, TimingUnit
from sequencer.core.db import DEFAULT_TENANT, get_timing_policy, save_timing_policy
from sequencer.core.errors import ConfigurationMissing

log = structlog.get_logger()


class Delay(BaseModel):
    amount: int
    unit: TimingUnit = "days"

    def to_timedelta(self) -> timedelta:
        if self.unit == "minutes":
            return timedelta(minutes=self.amount)
        if self.unit == "hours":
            return timedelta(hours=self.amount)
        return timedelta(days=self.amount)


FALLBACK_DELAY = Delay(amount=7, unit="days")


def _lookup(db_path: Path, owner: str, stage: str) -> Delay:
    entries = get_timing_policy(db_path, owner)
    if entries is None:
        raise ConfigurationMissing(f"No timing policy for '{owner}'")

    for raw in entries:
        if raw.get("stage") != stage:
            continue
        entry = TimingEntry(**raw)
        return Delay(amount=entry.delay, unit=entry.unit)

    raise ConfigurationMissing(f"Timing policy '{owner}' has no entry for stage '{stage}'")


def resolve_delay(db_path: Path, tenant_id: str, stage: str) -> Delay:
    """Resolve the delay before a stage is sent.

    Never raises: missing or unreadable policy degrades to the global
    default and then to FALLBACK_DELAY.
    """
    for owner in (tenant_id, DEFAULT_TENANT):
        try:
            return _lookup(db_path, owner, stage)
        except ConfigurationMissing as e:
            log.debug("timing_policy_missing", owner=owner, stage=stage, reason=str(e))
        except (sqlite3.Error, json.JSONDecodeError, ValidationError, TypeError) as e:
            log.warning("timing_policy_unreadable", owner=owner, stage=stage, error=str(e))

    log.info("timing_fallback_used", tenant_id=tenant_id, stage=stage,
             amount=FALLBACK_DELAY.amount, unit=FALLBACK_DELAY.unit)
    return FALLBACK_DELAY


def save_policy(db_path: Path, tenant_id: str, entries: list[TimingEntry]) -> None:
    """Validate and store a timing policy. One record per tenant."""
    stages = [entry.stage for entry in entries]
    if len(set(stages)) != len(stages):
        raise ValueError(f"Duplicate stages in timing policy for '{tenant_id}': {stages}")
    save_timing_policy(db_path, tenant_id, [entry.model_dump() for entry in entries])
    log.info("timing_policy_saved", tenant_id=tenant_id, stages=len(entries))
