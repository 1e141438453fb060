"""SQLite database operations."""

import json
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

DEFAULT_DB_PATH = Path("data/sequencer.db")

# Reserved owner of the global-default timing policy
DEFAULT_TENANT = "__default__"
# tenant_id of templates shared by every tenant
GLOBAL_TEMPLATE_TENANT = ""

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so stored values compare correctly as text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Get a database connection with row factory."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize database with schema."""
    conn = get_connection(db_path)

    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS leads (
            id INTEGER PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            email TEXT NOT NULL,
            name TEXT NOT NULL,
            company TEXT,
            owner_name TEXT,
            location TEXT,
            sender_identity TEXT,

            -- Sequence state
            status TEXT NOT NULL DEFAULT 'not_enrolled',
            stage TEXT,
            step INTEGER,
            active INTEGER NOT NULL DEFAULT 0,
            next_scheduled_at TEXT,
            stopped_reason TEXT,
            automation_enabled INTEGER NOT NULL DEFAULT 1,
            version INTEGER NOT NULL DEFAULT 0,

            -- Sweep claims
            claim_token TEXT,
            claimed_until TEXT,

            -- Gmail threading
            thread_id TEXT,
            last_message_id TEXT,

            -- Timing
            imported_at TEXT,
            enrolled_at TEXT,
            last_sent_at TEXT,
            replied_at TEXT,

            UNIQUE (tenant_id, email)
        );

        CREATE TABLE IF NOT EXISTS send_history (
            id INTEGER PRIMARY KEY,
            lead_id INTEGER NOT NULL REFERENCES leads(id),
            stage TEXT NOT NULL,
            step INTEGER NOT NULL,
            subject TEXT,
            success INTEGER NOT NULL,
            error TEXT,
            message_id TEXT,
            source TEXT,
            sent_at TEXT NOT NULL
        );

        CREATE TRIGGER IF NOT EXISTS send_history_no_update
        BEFORE UPDATE ON send_history
        BEGIN
            SELECT RAISE(ABORT, 'send_history is append-only');
        END;

        CREATE TRIGGER IF NOT EXISTS send_history_no_delete
        BEFORE DELETE ON send_history
        BEGIN
            SELECT RAISE(ABORT, 'send_history is append-only');
        END;

        -- At most one successful send per stage per lead
        CREATE UNIQUE INDEX IF NOT EXISTS idx_send_history_once
            ON send_history(lead_id, stage) WHERE success = 1;

        CREATE TABLE IF NOT EXISTS timing_policies (
            tenant_id TEXT PRIMARY KEY,
            entries TEXT NOT NULL,
            updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS content_templates (
            id INTEGER PRIMARY KEY,
            tenant_id TEXT NOT NULL DEFAULT '',
            stage TEXT NOT NULL,
            subject TEXT NOT NULL,
            content_prompt TEXT NOT NULL DEFAULT '',
            body TEXT NOT NULL DEFAULT '',
            signature TEXT NOT NULL DEFAULT '',
            media TEXT NOT NULL DEFAULT '',
            active INTEGER NOT NULL DEFAULT 1,
            updated_at TEXT,
            UNIQUE (tenant_id, stage)
        );

        CREATE TABLE IF NOT EXISTS generated_drafts (
            id INTEGER PRIMARY KEY,
            tenant_id TEXT NOT NULL,
            lead_id INTEGER NOT NULL REFERENCES leads(id),
            stage TEXT NOT NULL,
            subject TEXT,
            body TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL,
            consumed_at TEXT
        );

        CREATE TABLE IF NOT EXISTS tenant_settings (
            tenant_id TEXT PRIMARY KEY,
            company_name TEXT NOT NULL DEFAULT '',
            service TEXT NOT NULL DEFAULT '',
            industry TEXT NOT NULL DEFAULT '',
            sender_name TEXT NOT NULL DEFAULT '',
            sender_email TEXT NOT NULL DEFAULT '',
            website_url TEXT NOT NULL DEFAULT '',
            default_sender_identity TEXT NOT NULL DEFAULT 'company'
        );

        CREATE INDEX IF NOT EXISTS idx_leads_status ON leads(status);
        CREATE INDEX IF NOT EXISTS idx_leads_due ON leads(active, next_scheduled_at);
        CREATE INDEX IF NOT EXISTS idx_send_history_lead ON send_history(lead_id);
        CREATE INDEX IF NOT EXISTS idx_drafts_lookup ON generated_drafts(lead_id, stage, status);
    """)

    conn.commit()
    conn.close()


def insert_lead(
    db_path: Path,
    tenant_id: str,
    email: str,
    name: str,
    company: Optional[str] = None,
    owner_name: Optional[str] = None,
    location: Optional[str] = None,
    sender_identity: Optional[str] = None,
) -> Optional[int]:
    """Insert a lead. Returns lead_id or None if duplicate within the tenant."""
    conn = get_connection(db_path)
    try:
        cursor = conn.execute(
            """
            INSERT INTO leads (tenant_id, email, name, company, owner_name, location,
                               sender_identity, imported_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (tenant_id, email, name, company, owner_name, location,
             sender_identity, format_ts(utcnow()))
        )
        conn.commit()
        return cursor.lastrowid
    except sqlite3.IntegrityError:
        return None
    finally:
        conn.close()


def get_lead_by_id(db_path: Path, lead_id: int) -> Optional[sqlite3.Row]:
    """Get a lead by ID."""
    conn = get_connection(db_path)
    cursor = conn.execute("SELECT * FROM leads WHERE id = ?", (lead_id,))
    row = cursor.fetchone()
    conn.close()
    return row


def get_lead_by_email(
    db_path: Path, email: str, tenant_id: Optional[str] = None
) -> Optional[sqlite3.Row]:
    """Get a lead by email, optionally restricted to one tenant."""
    conn = get_connection(db_path)
    if tenant_id is None:
        cursor = conn.execute("SELECT * FROM leads WHERE email = ? ORDER BY id", (email,))
    else:
        cursor = conn.execute(
            "SELECT * FROM leads WHERE email = ? AND tenant_id = ?", (email, tenant_id)
        )
    row = cursor.fetchone()
    conn.close()
    return row


def get_leads_by_status(db_path: Path, status: str) -> list[sqlite3.Row]:
    """Get all leads with a given status."""
    conn = get_connection(db_path)
    cursor = conn.execute("SELECT * FROM leads WHERE status = ? ORDER BY id", (status,))
    rows = cursor.fetchall()
    conn.close()
    return rows


def get_due_leads(db_path: Path, now: datetime, limit: int) -> list[sqlite3.Row]:
    """Get active leads whose next send is due, oldest first."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        """
        SELECT * FROM leads
        WHERE active = 1
        AND status = 'active'
        AND next_scheduled_at IS NOT NULL
        AND next_scheduled_at <= ?
        ORDER BY next_scheduled_at
        LIMIT ?
        """,
        (format_ts(now), limit)
    )
    rows = cursor.fetchall()
    conn.close()
    return rows


def get_history(db_path: Path, lead_id: int) -> list[sqlite3.Row]:
    """Get a lead's send history in append order."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        "SELECT * FROM send_history WHERE lead_id = ? ORDER BY id", (lead_id,)
    )
    rows = cursor.fetchall()
    conn.close()
    return rows


def record_reply(db_path: Path, lead_id: int, replied_at: Optional[datetime] = None) -> bool:
    """Flag that a reply arrived for a lead. Keeps the earliest reply time."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        "UPDATE leads SET replied_at = COALESCE(replied_at, ?) WHERE id = ?",
        (format_ts(replied_at or utcnow()), lead_id)
    )
    conn.commit()
    conn.close()
    return cursor.rowcount == 1


def set_automation_enabled(db_path: Path, lead_id: int, enabled: bool) -> bool:
    """Toggle the manual-deactivation flag read by the stop-condition check."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        "UPDATE leads SET automation_enabled = ? WHERE id = ?",
        (1 if enabled else 0, lead_id)
    )
    conn.commit()
    conn.close()
    return cursor.rowcount == 1


def save_timing_policy(db_path: Path, tenant_id: str, entries: list[dict]) -> None:
    """Create or replace a tenant's timing policy."""
    conn = get_connection(db_path)
    conn.execute(
        """
        INSERT INTO timing_policies (tenant_id, entries, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(tenant_id) DO UPDATE SET
            entries = excluded.entries,
            updated_at = excluded.updated_at
        """,
        (tenant_id, json.dumps(entries), format_ts(utcnow()))
    )
    conn.commit()
    conn.close()


def get_timing_policy(db_path: Path, tenant_id: str) -> Optional[list[dict]]:
    """Get a tenant's timing entries, or None if the tenant has no policy."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        "SELECT entries FROM timing_policies WHERE tenant_id = ?", (tenant_id,)
    )
    row = cursor.fetchone()
    conn.close()
    if row is None:
        return None
    return json.loads(row["entries"])


def upsert_template(
    db_path: Path,
    tenant_id: str,
    stage: str,
    subject: str,
    body: str = "",
    content_prompt: str = "",
    signature: str = "",
    media: str = "",
    active: bool = True,
) -> int:
    """Write a content template, updating in place on (tenant_id, stage)."""
    conn = get_connection(db_path)
    try:
        conn.execute(
            """
            INSERT INTO content_templates
            (tenant_id, stage, subject, body, content_prompt, signature, media, active, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tenant_id, stage) DO UPDATE SET
                subject = excluded.subject,
                body = excluded.body,
                content_prompt = excluded.content_prompt,
                signature = excluded.signature,
                media = excluded.media,
                active = excluded.active,
                updated_at = excluded.updated_at
            """,
            (tenant_id, stage, subject, body, content_prompt, signature, media,
             1 if active else 0, format_ts(utcnow()))
        )
        conn.commit()
        cursor = conn.execute(
            "SELECT id FROM content_templates WHERE tenant_id = ? AND stage = ?",
            (tenant_id, stage)
        )
        return cursor.fetchone()["id"]
    finally:
        conn.close()


def get_template(db_path: Path, tenant_id: str, stage: str) -> Optional[sqlite3.Row]:
    """Get the active template owned by exactly this tenant for a stage."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        """
        SELECT * FROM content_templates
        WHERE tenant_id = ? AND stage = ? AND active = 1
        """,
        (tenant_id, stage)
    )
    row = cursor.fetchone()
    conn.close()
    return row


def save_tenant_settings(db_path: Path, tenant_id: str, **fields) -> None:
    """Create or update a tenant's sender settings."""
    allowed = {
        "company_name", "service", "industry", "sender_name",
        "sender_email", "website_url", "default_sender_identity",
    }
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unknown tenant settings: {sorted(unknown)}")

    columns = ["tenant_id", *fields]
    placeholders = ", ".join("?" for _ in columns)
    updates = ", ".join(f"{name} = excluded.{name}" for name in fields)
    conflict = f"DO UPDATE SET {updates}" if updates else "DO NOTHING"

    conn = get_connection(db_path)
    conn.execute(
        f"""
        INSERT INTO tenant_settings ({", ".join(columns)})
        VALUES ({placeholders})
        ON CONFLICT(tenant_id) {conflict}
        """,
        (tenant_id, *fields.values())
    )
    conn.commit()
    conn.close()


def get_tenant_settings(db_path: Path, tenant_id: str) -> Optional[sqlite3.Row]:
    """Get a tenant's sender settings."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        "SELECT * FROM tenant_settings WHERE tenant_id = ?", (tenant_id,)
    )
    row = cursor.fetchone()
    conn.close()
    return row


def insert_draft(
    db_path: Path,
    tenant_id: str,
    lead_id: int,
    stage: str,
    subject: str,
    body: str,
) -> int:
    """Store a generated draft, superseding older pending drafts for the same stage."""
    conn = get_connection(db_path)
    try:
        with conn:
            conn.execute(
                """
                UPDATE generated_drafts SET status = 'superseded'
                WHERE lead_id = ? AND stage = ? AND status = 'pending'
                """,
                (lead_id, stage)
            )
            cursor = conn.execute(
                """
                INSERT INTO generated_drafts (tenant_id, lead_id, stage, subject, body, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (tenant_id, lead_id, stage, subject, body, format_ts(utcnow()))
            )
        return cursor.lastrowid
    finally:
        conn.close()


def get_pending_draft(db_path: Path, lead_id: int, stage: str) -> Optional[sqlite3.Row]:
    """Get the newest unconsumed draft for a lead and stage."""
    conn = get_connection(db_path)
    cursor = conn.execute(
        """
        SELECT * FROM generated_drafts
        WHERE lead_id = ? AND stage = ? AND status = 'pending'
        ORDER BY id DESC
        LIMIT 1
        """,
        (lead_id, stage)
    )
    row = cursor.fetchone()
    conn.close()
    return row


def mark_draft_consumed(conn: sqlite3.Connection, draft_id: int) -> bool:
    """Consume a pending draft on an open connection. False if already consumed."""
    cursor = conn.execute(
        """
        UPDATE generated_drafts SET status = 'consumed', consumed_at = ?
        WHERE id = ? AND status = 'pending'
        """,
        (format_ts(utcnow()), draft_id)
    )
    return cursor.rowcount == 1


def consume_draft(db_path: Path, draft_id: int) -> bool:
    """Mark a draft consumed. Returns False if it was not pending."""
    conn = get_connection(db_path)
    try:
        with conn:
            return mark_draft_consumed(conn, draft_id)
    finally:
        conn.close()


def count_sent_today(db_path: Path) -> int:
    """Count successful sends today (UTC)."""
    conn = get_connection(db_path)
    today = utcnow().date().isoformat()
    cursor = conn.execute(
        "SELECT COUNT(*) FROM send_history WHERE success = 1 AND substr(sent_at, 1, 10) = ?",
        (today,)
    )
    count = cursor.fetchone()[0]
    conn.close()
    return count


def get_pipeline_stats(db_path: Path, now: Optional[datetime] = None) -> dict:
    """Get pipeline statistics."""
    conn = get_connection(db_path)

    stats = {}

    cursor = conn.execute(
        "SELECT status, COUNT(*) as count FROM leads GROUP BY status"
    )
    for row in cursor.fetchall():
        stats[row["status"]] = row["count"]

    cursor = conn.execute(
        """
        SELECT COUNT(*) FROM leads
        WHERE active = 1 AND status = 'active' AND next_scheduled_at <= ?
        """,
        (format_ts(now or utcnow()),)
    )
    stats["due"] = cursor.fetchone()[0]

    cursor = conn.execute(
        "SELECT stopped_reason, COUNT(*) as count FROM leads "
        "WHERE stopped_reason IS NOT NULL GROUP BY stopped_reason"
    )
    stats["stopped_reasons"] = {row["stopped_reason"]: row["count"] for row in cursor.fetchall()}

    conn.close()

    stats["sent_today"] = count_sent_today(db_path)
    return stats
