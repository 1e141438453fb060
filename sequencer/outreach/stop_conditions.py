"""Gate evaluated before every send attempt.

Pure: reads a lead and its history, never writes. The caller commits
whatever transition the verdict implies.
"""

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from sequencer.outreach.models import HistoryEntry, Lead, StopReason


class Verdict(BaseModel):
    stop: bool = False
    reason: Optional[StopReason] = None

    @classmethod
    def proceed(cls) -> "Verdict":
        return cls()

    @classmethod
    def halt(cls, reason: StopReason) -> "Verdict":
        return cls(stop=True, reason=reason)


def _has_replied(lead: Lead) -> bool:
    if lead.replied_at is None:
        return False
    if lead.enrolled_at is None:
        return True
    return lead.replied_at >= lead.enrolled_at


def _sequence_finished(lead: Lead, history: list[HistoryEntry], stages: list[str]) -> bool:
    if lead.step is not None and lead.step > len(stages):
        return True
    if lead.stage != stages[-1]:
        return False
    return any(entry.success and entry.stage == lead.stage for entry in history)


def _failure_streak(history: list[HistoryEntry]) -> list[HistoryEntry]:
    """Trailing run of failed attempts, oldest first."""
    streak = []
    for entry in reversed(history):
        if entry.success:
            break
        streak.append(entry)
    streak.reverse()
    return streak


def _budget_exhausted(
    history: list[HistoryEntry],
    error_budget: int,
    max_retry_hours: Optional[int],
    now: Optional[datetime],
) -> bool:
    streak = _failure_streak(history)
    if not streak:
        return False
    if error_budget > 0 and len(streak) >= error_budget:
        return True
    if max_retry_hours is not None and now is not None:
        return now - streak[0].sent_at >= timedelta(hours=max_retry_hours)
    return False


def should_continue(
    lead: Lead,
    history: list[HistoryEntry],
    stages: list[str],
    error_budget: int,
    max_retry_hours: Optional[int] = None,
    now: Optional[datetime] = None,
) -> Verdict:
    """Decide whether the lead's sequence may advance.

    Reasons are checked in priority order: replied, sequence complete,
    manual deactivation, error budget. First match wins.
    """
    if _has_replied(lead):
        return Verdict.halt(StopReason.REPLIED)
    if _sequence_finished(lead, history, stages):
        return Verdict.halt(StopReason.SEQUENCE_COMPLETE)
    if not lead.automation_enabled:
        return Verdict.halt(StopReason.MANUAL)
    if _budget_exhausted(history, error_budget, max_retry_hours, now):
        return Verdict.halt(StopReason.ERROR_BUDGET_EXHAUSTED)
    return Verdict.proceed()
