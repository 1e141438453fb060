import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from sequencer.core.config import SequenceConfig, Settings, SweepConfig, TimingEntry
from sequencer.core.db import (
    DEFAULT_TENANT,
    get_connection,
    get_history,
    get_lead_by_id,
    get_pending_draft,
    init_db,
    insert_draft,
    insert_lead,
    record_reply,
    set_automation_enabled,
    upsert_template,
    utcnow,
)
from sequencer.core.errors import TransportFailure
from sequencer.outreach.models import Lead, LeadStatus, StopReason
from sequencer.outreach.scheduler import check_replies, run_sweep
from sequencer.outreach.state_machine import enroll_lead, pause_lead
from sequencer.outreach.timing import save_policy

STAGES = ["intro", "followup-1", "followup-2"]
T0 = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


class FakeTransport:
    def __init__(self, fail_for=(), crash_for=(), delay=0.0, replied=False):
        self.fail_for = set(fail_for)
        self.crash_for = set(crash_for)
        self.delay = delay
        self.replied = replied
        self.sent = []

    async def send(self, to, subject, body, from_name, thread_id=None, message_id=None):
        if self.delay:
            await asyncio.sleep(self.delay)
        if to in self.fail_for:
            raise TransportFailure("mailbox rejected")
        if to in self.crash_for:
            raise RuntimeError("transport exploded")
        self.sent.append({"to": to, "subject": subject, "body": body, "from_name": from_name,
                          "thread_id": thread_id})
        return {"thread_id": thread_id or f"thread-{to}", "message_id": f"msg-{len(self.sent)}"}

    async def check_for_reply(self, thread_id, our_message_count):
        return self.replied


def _settings(stages=STAGES, **sweep) -> Settings:
    sweep.setdefault("check_replies", False)
    return Settings(sequence=SequenceConfig(stages=stages), sweep=SweepConfig(**sweep))


def _setup(db_path: Path, leads: int = 1, intro_delay: int = 0, intro_unit: str = "minutes",
           templates: bool = True) -> list[int]:
    init_db(db_path)
    save_policy(db_path, DEFAULT_TENANT, [
        TimingEntry(stage="intro", delay=intro_delay, unit=intro_unit),
        TimingEntry(stage="followup-1", delay=2, unit="days"),
        TimingEntry(stage="followup-2", delay=3, unit="days"),
    ])
    if templates:
        for stage in STAGES:
            upsert_template(db_path, "", stage, f"{stage} for {{{{COMPANY_NAME}}}}",
                            body="Hi {{NAME}}")

    lead_ids = []
    for i in range(leads):
        lead_id = insert_lead(db_path, "acme", f"lead{i}@example.com", f"Lead {i}", company="Acme")
        enroll_lead(db_path, lead_id, STAGES, now=T0)
        lead_ids.append(lead_id)
    return lead_ids


def _load(db_path: Path, lead_id: int) -> Lead:
    return Lead.from_row(get_lead_by_id(db_path, lead_id))


async def _sweep_at(db_path: Path, settings=None, transport=None, now: datetime = T0) -> dict:
    """Run a sweep whose clock is frozen at ``now``."""
    return await run_sweep(db_path, settings=settings or _settings(), transport=transport,
                           now=now, clock=lambda: now)


@pytest.mark.asyncio
async def test_no_send_before_delay_elapses():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path, intro_delay=1, intro_unit="days")
        transport = FakeTransport()

        result = await _sweep_at(db_path, settings=_settings(), transport=transport,
                                 now=T0 + timedelta(hours=23))

        assert result["processed"] == 0
        assert transport.sent == []
        assert get_history(db_path, lead_id) == []


@pytest.mark.asyncio
async def test_send_after_delay_advances_stage():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path, intro_delay=1, intro_unit="days")
        transport = FakeTransport()
        now = T0 + timedelta(days=1, minutes=1)

        result = await _sweep_at(db_path, settings=_settings(), transport=transport, now=now)

        assert result["sent"] == 1
        assert transport.sent[0]["subject"] == "intro for Acme"
        assert transport.sent[0]["body"] == "Hi Lead 0"

        history = get_history(db_path, lead_id)
        assert len(history) == 1
        assert history[0]["stage"] == "intro"
        assert history[0]["success"] == 1

        lead = _load(db_path, lead_id)
        assert lead.stage == "followup-1"
        assert lead.step == 2
        assert lead.next_scheduled_at == now + timedelta(days=2)
        assert get_lead_by_id(db_path, lead_id)["claim_token"] is None

        detail = result["details"][0]
        assert detail["outcome"] == "sent"
        assert detail["next_stage"] == "followup-1"


@pytest.mark.asyncio
async def test_recorded_reply_stops_without_sending():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        record_reply(db_path, lead_id, T0 + timedelta(minutes=30))
        transport = FakeTransport()

        result = await _sweep_at(db_path, settings=_settings(), transport=transport,
                                 now=T0 + timedelta(hours=1))

        assert result["stopped"] == 1
        assert transport.sent == []
        lead = _load(db_path, lead_id)
        assert lead.status == LeadStatus.STOPPED
        assert lead.stopped_reason == StopReason.REPLIED
        assert lead.active is False
        assert get_history(db_path, lead_id) == []


@pytest.mark.asyncio
async def test_error_budget_exhausted_after_five_failures():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        transport = FakeTransport(fail_for={"lead0@example.com"})
        settings = _settings()

        for attempt in range(4):
            result = await _sweep_at(db_path, settings=settings, transport=transport,
                                     now=T0 + timedelta(minutes=11 * attempt))
            assert result["failed"] == 1
            assert _load(db_path, lead_id).status == LeadStatus.ACTIVE

        result = await _sweep_at(db_path, settings=settings, transport=transport,
                                 now=T0 + timedelta(minutes=44))

        assert result["stopped"] == 1
        lead = _load(db_path, lead_id)
        assert lead.status == LeadStatus.STOPPED
        assert lead.stopped_reason == StopReason.ERROR_BUDGET_EXHAUSTED
        assert lead.stage == "intro"

        history = get_history(db_path, lead_id)
        assert len(history) == 5
        assert all(row["success"] == 0 for row in history)


@pytest.mark.asyncio
async def test_final_stage_completes_sequence():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        transport = FakeTransport()
        settings = _settings()

        await _sweep_at(db_path, settings=settings, transport=transport, now=T0)
        await _sweep_at(db_path, settings=settings, transport=transport,
                        now=T0 + timedelta(days=2, minutes=1))
        result = await _sweep_at(db_path, settings=settings, transport=transport,
                                 now=T0 + timedelta(days=5, minutes=2))

        assert result["completed"] == 1
        assert result["sent"] == 1

        lead = _load(db_path, lead_id)
        assert lead.status == LeadStatus.COMPLETED
        assert lead.active is False
        assert lead.stopped_reason is None
        assert lead.next_scheduled_at is None
        assert [row["stage"] for row in get_history(db_path, lead_id)] == STAGES

        # Follow-ups reuse the first thread
        assert transport.sent[1]["thread_id"] == "thread-lead0@example.com"


@pytest.mark.asyncio
async def test_concurrent_sweeps_send_once_per_stage():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        lead_ids = _setup(db_path, leads=5)
        transport = FakeTransport(delay=0.01)
        settings = _settings()

        first, second = await asyncio.gather(
            _sweep_at(db_path, settings=settings, transport=transport, now=T0),
            _sweep_at(db_path, settings=settings, transport=transport, now=T0),
        )

        assert first["sent"] + second["sent"] == 5
        assert len(transport.sent) == 5
        for lead_id in lead_ids:
            successes = [row for row in get_history(db_path, lead_id) if row["success"]]
            assert len(successes) == 1
            assert _load(db_path, lead_id).stage == "followup-1"


@pytest.mark.asyncio
async def test_one_lead_failing_does_not_abort_batch():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        lead_ids = _setup(db_path, leads=4)
        transport = FakeTransport(fail_for={"lead1@example.com"},
                                  crash_for={"lead2@example.com"})

        result = await _sweep_at(db_path, settings=_settings(), transport=transport, now=T0)

        assert result["processed"] == 4
        assert result["sent"] == 2
        assert result["failed"] == 1
        assert result["errors"] == 1
        assert _load(db_path, lead_ids[0]).stage == "followup-1"
        assert _load(db_path, lead_ids[3]).stage == "followup-1"
        assert _load(db_path, lead_ids[1]).next_scheduled_at == T0 + timedelta(minutes=10)
        # Crashed lead stays claimed until the window passes
        assert _load(db_path, lead_ids[2]).next_scheduled_at == T0 + timedelta(minutes=15)


@pytest.mark.asyncio
async def test_send_timeout_takes_failure_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        transport = FakeTransport(delay=1.0)

        result = await _sweep_at(db_path, settings=_settings(send_timeout_seconds=0.05),
                                 transport=transport, now=T0)

        assert result["failed"] == 1
        history = get_history(db_path, lead_id)
        assert history[0]["success"] == 0
        assert "timed out" in history[0]["error"]
        assert _load(db_path, lead_id).stage == "intro"


@pytest.mark.asyncio
async def test_inconsistent_lead_is_quarantined():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        conn = get_connection(db_path)
        with conn:
            conn.execute("UPDATE leads SET stage = 'bogus' WHERE id = ?", (lead_id,))
        conn.close()
        transport = FakeTransport()

        result = await _sweep_at(db_path, settings=_settings(), transport=transport, now=T0)

        assert result["quarantined"] == 1
        assert transport.sent == []
        lead = _load(db_path, lead_id)
        assert lead.status == LeadStatus.QUARANTINED
        assert lead.active is False

        again = await _sweep_at(db_path, settings=_settings(), transport=transport,
                                now=T0 + timedelta(days=30))
        assert again["processed"] == 0


@pytest.mark.asyncio
async def test_missing_content_skips_without_consuming_step():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path, templates=False)
        transport = FakeTransport()

        result = await _sweep_at(db_path, settings=_settings(), transport=transport, now=T0)

        assert result["skipped"] == 1
        assert result["details"][0]["outcome"] == "skipped"
        lead = _load(db_path, lead_id)
        assert lead.stage == "intro"
        assert lead.step == 1
        assert lead.next_scheduled_at == T0 + timedelta(minutes=15)
        assert get_history(db_path, lead_id) == []


@pytest.mark.asyncio
async def test_stopped_lead_is_never_touched():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        pause_lead(db_path, lead_id)
        before = dict(get_lead_by_id(db_path, lead_id))
        transport = FakeTransport()

        for days in (0, 1, 10):
            await _sweep_at(db_path, settings=_settings(), transport=transport,
                            now=T0 + timedelta(days=days))

        assert dict(get_lead_by_id(db_path, lead_id)) == before
        assert transport.sent == []


@pytest.mark.asyncio
async def test_draft_used_then_consumed():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        insert_draft(db_path, "acme", lead_id, "intro", "custom subject", "custom body")
        transport = FakeTransport()

        await _sweep_at(db_path, settings=_settings(), transport=transport, now=T0)

        assert transport.sent[0]["subject"] == "custom subject"
        assert get_pending_draft(db_path, lead_id, "intro") is None
        assert get_history(db_path, lead_id)[0]["source"] == "draft"


@pytest.mark.asyncio
async def test_failed_send_leaves_draft_pending():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        insert_draft(db_path, "acme", lead_id, "intro", "custom subject", "custom body")
        transport = FakeTransport(fail_for={"lead0@example.com"})

        await _sweep_at(db_path, settings=_settings(), transport=transport, now=T0)

        assert get_pending_draft(db_path, lead_id, "intro") is not None


@pytest.mark.asyncio
async def test_history_only_grows():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        transport = FakeTransport(fail_for={"lead0@example.com"})
        settings = _settings()

        seen = []
        for attempt in range(3):
            await _sweep_at(db_path, settings=settings, transport=transport,
                            now=T0 + timedelta(minutes=11 * attempt))
            rows = [dict(row) for row in get_history(db_path, lead_id)]
            assert rows[:len(seen)] == seen
            assert len(rows) == len(seen) + 1
            seen = rows


@pytest.mark.asyncio
async def test_batch_size_limits_sweep():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        _setup(db_path, leads=3)
        transport = FakeTransport()

        result = await _sweep_at(db_path, settings=_settings(batch_size=2),
                                 transport=transport, now=T0)

        assert result["processed"] == 2


@pytest.mark.asyncio
async def test_check_replies_records_reply_and_sweep_stops():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        settings = _settings(check_replies=True)

        await _sweep_at(db_path, settings=settings, transport=FakeTransport(), now=T0)

        replied = await check_replies(db_path, FakeTransport(replied=True))
        assert replied == ["lead0@example.com"]
        assert _load(db_path, lead_id).replied_at is not None

        transport = FakeTransport(replied=True)
        result = await _sweep_at(db_path, settings=settings, transport=transport,
                                 now=T0 + timedelta(days=2, minutes=1))

        assert result["stopped"] == 1
        assert transport.sent == []
        assert _load(db_path, lead_id).stopped_reason == StopReason.REPLIED


class HeldTransport(FakeTransport):
    """Holds the first send open until released."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def send(self, to, subject, body, from_name, thread_id=None, message_id=None):
        if not self.started.is_set():
            self.started.set()
            await self.release.wait()
        return await super().send(to, subject, body, from_name, thread_id, message_id)


@pytest.mark.asyncio
async def test_late_claim_blocks_overlapping_sweep():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        transport = HeldTransport()
        settings = _settings()
        start = utcnow()

        # First sweep found the lead due long before it got to claim it
        first = asyncio.create_task(run_sweep(db_path, settings=settings, transport=transport,
                                              now=start - timedelta(minutes=20)))
        await asyncio.wait_for(transport.started.wait(), timeout=5)

        second = await run_sweep(db_path, settings=settings, transport=transport, now=start)
        transport.release.set()
        first = await first

        assert second["processed"] == 0
        assert first["sent"] == 1
        assert len(transport.sent) == 1
        successes = [row for row in get_history(db_path, lead_id) if row["success"]]
        assert len(successes) == 1


@pytest.mark.asyncio
async def test_deactivated_lead_stops_as_manual():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        assert set_automation_enabled(db_path, lead_id, False)
        transport = FakeTransport()

        result = await _sweep_at(db_path, transport=transport, now=T0)

        assert result["stopped"] == 1
        detail = result["details"][0]
        assert detail["reason"] == "manual"
        assert detail["error"] is None
        assert transport.sent == []
        lead = _load(db_path, lead_id)
        assert lead.status == LeadStatus.STOPPED
        assert lead.stopped_reason == StopReason.MANUAL


@pytest.mark.asyncio
async def test_completion_verdict_is_not_reported_as_error():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        [lead_id] = _setup(db_path)
        transport = FakeTransport()

        await _sweep_at(db_path, transport=transport, now=T0)
        # Sequence shortened to one stage while the lead waits on the second
        result = await _sweep_at(db_path, settings=_settings(stages=["intro"]),
                                 transport=transport, now=T0 + timedelta(days=2, minutes=1))

        assert result["completed"] == 1
        detail = result["details"][0]
        assert detail["outcome"] == "completed"
        assert detail["reason"] == "sequence_complete"
        assert detail["error"] is None
        assert _load(db_path, lead_id).status == LeadStatus.COMPLETED
        assert len(transport.sent) == 1


class ReplyCountingTransport(FakeTransport):
    def __init__(self, replied_thread):
        super().__init__()
        self.replied_thread = replied_thread
        self.in_flight = 0
        self.peak = 0

    async def check_for_reply(self, thread_id, our_message_count):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return thread_id == self.replied_thread


@pytest.mark.asyncio
async def test_check_replies_runs_bounded_concurrently():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        lead_ids = _setup(db_path, leads=6)
        await _sweep_at(db_path, transport=FakeTransport(), now=T0)

        transport = ReplyCountingTransport("thread-lead3@example.com")
        replied = await check_replies(db_path, transport, concurrency=2)

        assert replied == ["lead3@example.com"]
        assert transport.peak == 2
        assert _load(db_path, lead_ids[3]).replied_at is not None
        assert _load(db_path, lead_ids[0]).replied_at is None
