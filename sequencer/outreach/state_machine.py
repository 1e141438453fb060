"""Per-lead sequence state and its legal transitions.

NotEnrolled -> Active -> {Completed, Stopped}; Quarantined is a side
exit for leads whose stored state breaks the sequencing invariants.

Every transition is a single UPDATE conditioned on the version that was
read, so concurrent sweeps cannot lose each other's writes. History rows
and draft consumption are written in the same transaction.
"""

import sqlite3
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Optional
from uuid import uuid4

import structlog

from sequencer.core.db import (
    format_ts,
    get_connection,
    get_lead_by_id,
    mark_draft_consumed,
    utcnow,
)
from sequencer.core.errors import ConcurrentClaimLost, SequenceInvariantViolation
from sequencer.outreach.models import Lead, LeadStatus, StopReason
from sequencer.outreach.timing import resolve_delay

log = structlog.get_logger()


def _to_db(value):
    if isinstance(value, datetime):
        return format_ts(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def _reload(db_path: Path, lead_id: int) -> Lead:
    row = get_lead_by_id(db_path, lead_id)
    if row is None:
        raise ValueError(f"Lead {lead_id} not found")
    return Lead.from_row(row)


def _commit(
    db_path: Path,
    lead: Lead,
    updates: dict,
    history: Optional[dict] = None,
    draft_id: Optional[int] = None,
) -> Lead:
    """Apply updates if the lead still has the version we read."""
    assignments = ", ".join(f"{column} = ?" for column in updates)
    values = [_to_db(value) for value in updates.values()]

    conn = get_connection(db_path)
    try:
        with conn:
            cursor = conn.execute(
                f"UPDATE leads SET {assignments}, version = version + 1 WHERE id = ? AND version = ?",
                (*values, lead.id, lead.version)
            )
            if cursor.rowcount != 1:
                raise ConcurrentClaimLost(lead.id)

            if history is not None:
                conn.execute(
                    """
                    INSERT INTO send_history
                    (lead_id, stage, step, subject, success, error, message_id, source, sent_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (lead.id, history["stage"], history["step"], history.get("subject"),
                     1 if history["success"] else 0, history.get("error"),
                     history.get("message_id"), history.get("source"),
                     format_ts(history["sent_at"]))
                )

            if draft_id is not None and not mark_draft_consumed(conn, draft_id):
                log.warning("draft_already_consumed", lead_id=lead.id, draft_id=draft_id)
    except sqlite3.IntegrityError as e:
        raise SequenceInvariantViolation(lead.id, f"history write rejected: {e}") from e
    finally:
        conn.close()

    return _reload(db_path, lead.id)


def next_stage(stages: list[str], stage: str) -> Optional[str]:
    index = stages.index(stage)
    return stages[index + 1] if index + 1 < len(stages) else None


def check_invariants(lead: Lead, stages: list[str]) -> None:
    """Raise SequenceInvariantViolation if the stored state is inconsistent."""
    if lead.active and lead.next_scheduled_at is None:
        raise SequenceInvariantViolation(lead.id, "active without next_scheduled_at")
    if lead.stopped_reason is not None and lead.active:
        raise SequenceInvariantViolation(lead.id, "stopped_reason set on an active lead")
    if lead.status == LeadStatus.ACTIVE:
        if lead.stage not in stages:
            raise SequenceInvariantViolation(lead.id, f"unknown stage '{lead.stage}'")
        if lead.step != stages.index(lead.stage) + 1:
            raise SequenceInvariantViolation(
                lead.id, f"step {lead.step} does not match stage '{lead.stage}'"
            )


def enroll_lead(
    db_path: Path,
    lead_id: int,
    stages: list[str],
    now: Optional[datetime] = None,
) -> Optional[Lead]:
    """Start the sequence at the first stage.

    Returns the enrolled lead, or None if the lead is missing or was
    already enrolled.
    """
    row = get_lead_by_id(db_path, lead_id)
    if row is None:
        return None
    lead = Lead.from_row(row)
    if lead.status != LeadStatus.NOT_ENROLLED:
        log.info("enroll_skipped", lead_id=lead_id, status=lead.status.value)
        return None

    now = now or utcnow()
    first = stages[0]
    delay = resolve_delay(db_path, lead.tenant_id, first)

    lead = _commit(db_path, lead, {
        "status": LeadStatus.ACTIVE,
        "stage": first,
        "step": 1,
        "active": True,
        "next_scheduled_at": now + delay.to_timedelta(),
        "stopped_reason": None,
        "enrolled_at": now,
    })
    log.info("lead_enrolled", lead_id=lead.id, stage=first,
             next_scheduled_at=format_ts(lead.next_scheduled_at))
    return lead


def claim_lead(db_path: Path, lead: Lead, now: datetime, claim_window: timedelta) -> Lead:
    """Claim a due lead for this worker by pushing its next send past the claim window.

    Raises ConcurrentClaimLost if another worker got there first.
    """
    claimed_until = now + claim_window
    conn = get_connection(db_path)
    try:
        with conn:
            cursor = conn.execute(
                """
                UPDATE leads
                SET next_scheduled_at = ?, claim_token = ?, claimed_until = ?,
                    version = version + 1
                WHERE id = ? AND version = ?
                AND active = 1 AND status = 'active'
                AND next_scheduled_at <= ?
                """,
                (format_ts(claimed_until), uuid4().hex, format_ts(claimed_until),
                 lead.id, lead.version, format_ts(now))
            )
    finally:
        conn.close()

    if cursor.rowcount != 1:
        raise ConcurrentClaimLost(lead.id, f"Lead {lead.id} already claimed")

    log.debug("lead_claimed", lead_id=lead.id, claimed_until=format_ts(claimed_until))
    return _reload(db_path, lead.id)


def record_success(
    db_path: Path,
    lead: Lead,
    stages: list[str],
    subject: str,
    now: datetime,
    source: Optional[str] = None,
    draft_id: Optional[int] = None,
    message_id: Optional[str] = None,
    thread_id: Optional[str] = None,
) -> Lead:
    """Record a delivered send and advance to the next stage, or complete."""
    upcoming = next_stage(stages, lead.stage)

    updates = {
        "last_sent_at": now,
        "last_message_id": message_id,
        "claim_token": None,
        "claimed_until": None,
    }
    if thread_id and not lead.thread_id:
        updates["thread_id"] = thread_id

    if upcoming is None:
        updates.update({
            "status": LeadStatus.COMPLETED,
            "active": False,
            "next_scheduled_at": None,
            "stopped_reason": None,
        })
    else:
        delay = resolve_delay(db_path, lead.tenant_id, upcoming)
        updates.update({
            "stage": upcoming,
            "step": lead.step + 1,
            "next_scheduled_at": now + delay.to_timedelta(),
        })

    history = {
        "stage": lead.stage,
        "step": lead.step,
        "subject": subject,
        "success": True,
        "message_id": message_id,
        "source": source,
        "sent_at": now,
    }
    updated = _commit(db_path, lead, updates, history=history, draft_id=draft_id)

    if upcoming is None:
        log.info("lead_completed", lead_id=lead.id, final_stage=lead.stage)
    else:
        log.info("lead_advanced", lead_id=lead.id, sent_stage=lead.stage,
                 next_stage=upcoming, next_scheduled_at=format_ts(updated.next_scheduled_at))
    return updated


def record_failure(
    db_path: Path,
    lead: Lead,
    subject: Optional[str],
    error: str,
    now: datetime,
    retry_backoff: timedelta,
) -> Lead:
    """Record a rejected send. Stage and step stay; retry after the backoff."""
    history = {
        "stage": lead.stage,
        "step": lead.step,
        "subject": subject,
        "success": False,
        "error": error,
        "sent_at": now,
    }
    updated = _commit(db_path, lead, {
        "next_scheduled_at": now + retry_backoff,
        "claim_token": None,
        "claimed_until": None,
    }, history=history)
    log.warning("send_failure_recorded", lead_id=lead.id, stage=lead.stage, error=error,
                retry_at=format_ts(updated.next_scheduled_at))
    return updated


def stop_lead(db_path: Path, lead: Lead, reason: StopReason, now: Optional[datetime] = None) -> Lead:
    """Commit a terminal transition for a stop verdict.

    SEQUENCE_COMPLETE lands in Completed with no stopped_reason; every
    other reason lands in Stopped.
    """
    if reason == StopReason.SEQUENCE_COMPLETE:
        updates = {"status": LeadStatus.COMPLETED, "stopped_reason": None}
    else:
        updates = {"status": LeadStatus.STOPPED, "stopped_reason": reason}

    updates.update({
        "active": False,
        "next_scheduled_at": None,
        "claim_token": None,
        "claimed_until": None,
    })
    updated = _commit(db_path, lead, updates)
    log.info("lead_stopped", lead_id=lead.id, reason=reason.value, status=updated.status.value,
             at=format_ts(now or utcnow()))
    return updated


def quarantine_lead(db_path: Path, lead: Lead, detail: str) -> Lead:
    """Park a lead with inconsistent state. Never picked up again automatically."""
    updated = _commit(db_path, lead, {
        "status": LeadStatus.QUARANTINED,
        "active": False,
        "next_scheduled_at": None,
        "stopped_reason": None,
        "claim_token": None,
        "claimed_until": None,
    })
    log.error("lead_quarantined", lead_id=lead.id, detail=detail)
    return updated


def pause_lead(db_path: Path, lead_id: int, now: Optional[datetime] = None) -> bool:
    """Manually stop a lead's sequence. False if missing or already terminal."""
    row = get_lead_by_id(db_path, lead_id)
    if row is None:
        return False
    lead = Lead.from_row(row)
    if lead.is_terminal:
        return False
    stop_lead(db_path, lead, StopReason.MANUAL, now)
    return True


def force_advance(
    db_path: Path,
    lead_id: int,
    stages: list[str],
    now: Optional[datetime] = None,
) -> Optional[Lead]:
    """Skip the current stage without sending and make the next one due now.

    On the last stage the sequence completes. Returns None unless the
    lead is active.
    """
    row = get_lead_by_id(db_path, lead_id)
    if row is None:
        return None
    lead = Lead.from_row(row)
    if lead.status != LeadStatus.ACTIVE:
        return None
    check_invariants(lead, stages)

    now = now or utcnow()
    upcoming = next_stage(stages, lead.stage)
    if upcoming is None:
        updates = {
            "status": LeadStatus.COMPLETED,
            "active": False,
            "next_scheduled_at": None,
            "stopped_reason": None,
        }
    else:
        updates = {"stage": upcoming, "step": lead.step + 1, "next_scheduled_at": now}
    updates.update({"claim_token": None, "claimed_until": None})

    updated = _commit(db_path, lead, updates)
    log.info("lead_force_advanced", lead_id=lead.id, skipped_stage=lead.stage,
             next_stage=upcoming)
    return updated
