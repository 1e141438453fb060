"""Sweep dispatch for due leads."""

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

import structlog

from sequencer.core.config import DEFAULT_CONFIG_PATH, Settings, load_settings
from sequencer.core.db import (
    DEFAULT_DB_PATH,
    format_ts,
    get_due_leads,
    get_history,
    get_leads_by_status,
    get_tenant_settings,
    record_reply,
    utcnow,
)
from sequencer.core.errors import (
    ConcurrentClaimLost,
    ContentUnavailable,
    SequenceInvariantViolation,
    TransportFailure,
)
from sequencer.outreach.content import render_content, sender_display_name
from sequencer.outreach.models import HistoryEntry, Lead, LeadStatus
from sequencer.outreach.sender import ComposioGmailTransport, MailTransport
from sequencer.outreach.state_machine import (
    check_invariants,
    claim_lead,
    quarantine_lead,
    record_failure,
    record_success,
    stop_lead,
)
from sequencer.outreach.stop_conditions import should_continue

log = structlog.get_logger()


async def check_replies(db_path: Path, transport: MailTransport, concurrency: int = 5) -> list[str]:
    """Check all active leads with a Gmail thread for replies.

    At most ``concurrency`` thread lookups are in flight at once.
    Returns list of emails that replied.
    """
    active_leads = [
        lead for lead in get_leads_by_status(db_path, LeadStatus.ACTIVE.value)
        if lead["thread_id"] and not lead["replied_at"]
    ]
    semaphore = asyncio.Semaphore(concurrency)

    async def check(lead) -> Optional[str]:
        async with semaphore:
            sent = sum(1 for row in get_history(db_path, lead["id"]) if row["success"])
            try:
                has_reply = await transport.check_for_reply(lead["thread_id"], sent)
            except Exception as e:
                log.error("reply_check_failed", email=lead["email"], error=str(e))
                return None

        if has_reply:
            log.info("reply_detected", lead_id=lead["id"], email=lead["email"])
            record_reply(db_path, lead["id"])
            return lead["email"]
        return None

    results = await asyncio.gather(*(check(lead) for lead in active_leads))
    return [email for email in results if email]


def _detail(lead: Lead, outcome: str, success: bool = False, **extra) -> dict:
    detail = {
        "lead_id": lead.id,
        "name": lead.name,
        "email": lead.email,
        "success": success,
        "outcome": outcome,
        "stage": lead.stage,
        "next_stage": None,
        "next_due": None,
        "reason": None,
        "error": None,
    }
    detail.update(extra)
    return detail


async def process_lead(
    db_path: Path,
    lead: Lead,
    settings: Settings,
    transport: MailTransport,
    now: datetime,
    clock: Callable[[], datetime] = utcnow,
) -> dict:
    """Drive one due lead through claim, stop check, content, send and commit.

    ``now`` is the time the lead was found due. The claim window and every
    committed timestamp are read from ``clock`` when they are taken, never
    earlier than ``now``.

    Returns a detail dict whose ``outcome`` is one of sent, completed,
    failed, stopped, skipped, claim_lost or quarantined.
    """
    stages = settings.sequence.stages
    claim_window = timedelta(minutes=settings.sweep.claim_window_minutes)

    claimed_at = max(now, clock())
    try:
        lead = claim_lead(db_path, lead, claimed_at, claim_window)
    except ConcurrentClaimLost:
        log.debug("claim_lost", lead_id=lead.id)
        return _detail(lead, "claim_lost")

    history = [HistoryEntry.from_row(row) for row in get_history(db_path, lead.id)]
    verdict = should_continue(
        lead, history, stages, settings.sequence.error_budget,
        max_retry_hours=settings.sequence.max_retry_hours, now=claimed_at,
    )
    if verdict.stop:
        stopped = stop_lead(db_path, lead, verdict.reason, claimed_at)
        outcome = "completed" if stopped.status == LeadStatus.COMPLETED else "stopped"
        return _detail(lead, outcome, reason=verdict.reason.value)

    try:
        check_invariants(lead, stages)
    except SequenceInvariantViolation as e:
        quarantine_lead(db_path, lead, e.detail)
        return _detail(lead, "quarantined", error=e.detail)

    try:
        content = render_content(db_path, lead.tenant_id, lead, lead.stage, settings)
    except ContentUnavailable as e:
        log.warning("content_unavailable", lead_id=lead.id, tenant_id=lead.tenant_id,
                    stage=lead.stage)
        return _detail(lead, "skipped", error=str(e))

    tenant = get_tenant_settings(db_path, lead.tenant_id)
    from_name = sender_display_name(lead, tenant, settings)

    try:
        result = await asyncio.wait_for(
            transport.send(
                to=lead.email,
                subject=content.subject,
                body=content.body,
                from_name=from_name,
                thread_id=lead.thread_id,
                message_id=lead.last_message_id,
            ),
            timeout=settings.sweep.send_timeout_seconds,
        )
    except (TransportFailure, asyncio.TimeoutError) as e:
        error = str(e) or f"send timed out after {settings.sweep.send_timeout_seconds:g}s"
        finished_at = max(claimed_at, clock())
        failed = record_failure(
            db_path, lead, content.subject, error, finished_at,
            timedelta(minutes=settings.sequence.retry_backoff_minutes),
        )

        history = [HistoryEntry.from_row(row) for row in get_history(db_path, failed.id)]
        verdict = should_continue(
            failed, history, stages, settings.sequence.error_budget,
            max_retry_hours=settings.sequence.max_retry_hours, now=finished_at,
        )
        if verdict.stop:
            stop_lead(db_path, failed, verdict.reason, finished_at)
            return _detail(lead, "stopped", reason=verdict.reason.value, error=error)

        return _detail(lead, "failed", error=error, next_stage=failed.stage,
                       next_due=format_ts(failed.next_scheduled_at))

    result = result or {}
    finished_at = max(claimed_at, clock())
    try:
        updated = record_success(
            db_path, lead, stages, content.subject, finished_at,
            source=content.source.value,
            draft_id=content.draft_id,
            message_id=result.get("message_id"),
            thread_id=result.get("thread_id"),
        )
    except SequenceInvariantViolation as e:
        # Stage already recorded as sent; the transaction rolled back
        quarantine_lead(db_path, lead, e.detail)
        return _detail(lead, "quarantined", error=e.detail)

    if updated.status == LeadStatus.COMPLETED:
        return _detail(lead, "completed", success=True)
    return _detail(lead, "sent", success=True, next_stage=updated.stage,
                   next_due=format_ts(updated.next_scheduled_at))


def _summarize(details: list[dict]) -> dict:
    results = {
        "processed": len(details),
        "sent": 0,
        "failed": 0,
        "stopped": 0,
        "completed": 0,
        "skipped": 0,
        "quarantined": 0,
        "errors": 0,
        "details": details,
    }
    for detail in details:
        outcome = detail["outcome"]
        if detail["success"]:
            results["sent"] += 1
        if outcome in ("failed", "stopped", "completed", "quarantined"):
            results[outcome] += 1
        elif outcome in ("skipped", "claim_lost"):
            results["skipped"] += 1
        elif outcome == "error":
            results["errors"] += 1
    return results


async def run_sweep(
    db_path: Path = DEFAULT_DB_PATH,
    config_path: Path = DEFAULT_CONFIG_PATH,
    settings: Optional[Settings] = None,
    transport: Optional[MailTransport] = None,
    now: Optional[datetime] = None,
    clock: Callable[[], datetime] = utcnow,
) -> dict:
    """Run one sweep over due leads.

    1. Check for replies
    2. Claim and process due leads, a bounded number at a time
    3. Tally outcomes

    ``now`` selects which leads are due. Claims and commits are stamped
    from ``clock`` as each lead is handled.

    Returns summary dict.
    """
    settings = settings or load_settings(config_path)
    transport = transport or ComposioGmailTransport(settings.gmail.connected_account_id)
    now = now or clock()

    if settings.sweep.check_replies:
        replied = await check_replies(db_path, transport, settings.sweep.concurrency)
        if replied:
            log.info("replies_recorded", count=len(replied))

    due = [Lead.from_row(row) for row in get_due_leads(db_path, now, settings.sweep.batch_size)]
    log.info("sweep_started", due=len(due), at=format_ts(now))

    semaphore = asyncio.Semaphore(settings.sweep.concurrency)

    async def worker(lead: Lead) -> dict:
        async with semaphore:
            try:
                return await process_lead(db_path, lead, settings, transport, now, clock)
            except ConcurrentClaimLost:
                log.info("commit_lost", lead_id=lead.id)
                return _detail(lead, "claim_lost")
            except Exception as e:
                log.error("lead_processing_failed", lead_id=lead.id, email=lead.email,
                          error=str(e))
                return _detail(lead, "error", error=str(e))

    details = await asyncio.gather(*(worker(lead) for lead in due))
    results = _summarize(list(details))

    log.info(
        "sweep_complete",
        processed=results["processed"],
        sent=results["sent"],
        failed=results["failed"],
        stopped=results["stopped"],
        completed=results["completed"],
        skipped=results["skipped"],
        quarantined=results["quarantined"],
        errors=results["errors"],
    )
    return results
