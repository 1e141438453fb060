"""Lead sequencing state as read from the store."""

import sqlite3
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class LeadStatus(str, Enum):
    NOT_ENROLLED = "not_enrolled"
    ACTIVE = "active"
    COMPLETED = "completed"
    STOPPED = "stopped"
    QUARANTINED = "quarantined"


TERMINAL_STATUSES = {LeadStatus.COMPLETED, LeadStatus.STOPPED, LeadStatus.QUARANTINED}


class StopReason(str, Enum):
    REPLIED = "replied"
    SEQUENCE_COMPLETE = "sequence_complete"
    MANUAL = "manual"
    ERROR_BUDGET_EXHAUSTED = "error_budget_exhausted"


class Lead(BaseModel):
    id: int
    tenant_id: str
    email: str
    name: str
    company: Optional[str] = None
    owner_name: Optional[str] = None
    location: Optional[str] = None
    sender_identity: Optional[str] = None

    status: LeadStatus = LeadStatus.NOT_ENROLLED
    stage: Optional[str] = None
    step: Optional[int] = None
    active: bool = False
    next_scheduled_at: Optional[datetime] = None
    stopped_reason: Optional[StopReason] = None
    automation_enabled: bool = True
    version: int = 0

    thread_id: Optional[str] = None
    last_message_id: Optional[str] = None
    enrolled_at: Optional[datetime] = None
    last_sent_at: Optional[datetime] = None
    replied_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Lead":
        return cls.model_validate(dict(row))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class HistoryEntry(BaseModel):
    stage: str
    step: int
    sent_at: datetime
    subject: Optional[str] = None
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None
    source: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "HistoryEntry":
        return cls.model_validate(dict(row))
