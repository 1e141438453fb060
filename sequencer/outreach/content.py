"""Subject/body resolution for a lead at a stage.

An unconsumed AI draft wins; otherwise the tenant's template (or the
global one) is rendered with lead and sender variables.
"""

import sqlite3
from enum import Enum
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel

from sequencer.core.config import Settings, render_template
from sequencer.core.db import (
    GLOBAL_TEMPLATE_TENANT,
    consume_draft,
    get_lead_by_id,
    get_pending_draft,
    get_template,
    get_tenant_settings,
)
from sequencer.core.errors import ContentUnavailable
from sequencer.outreach.models import Lead

log = structlog.get_logger()


class ContentSource(str, Enum):
    DRAFT = "draft"
    TEMPLATE = "template"


class ResolvedContent(BaseModel):
    stage: str
    subject: str
    body: str
    source: ContentSource
    draft_id: Optional[int] = None
    template_id: Optional[int] = None


def author_name(lead: Lead) -> str:
    return lead.owner_name or lead.name or "Team"


def sender_display_name(lead: Lead, tenant: Optional[sqlite3.Row], settings: Settings) -> str:
    """Name shown as the sender: the author, or the tenant's configured sender."""
    identity = lead.sender_identity or (tenant["default_sender_identity"] if tenant else "company")
    if identity == "author":
        return author_name(lead)
    if tenant and tenant["sender_name"]:
        return tenant["sender_name"]
    return settings.gmail.from_name


def build_variables(lead: Lead, tenant: Optional[sqlite3.Row], settings: Settings) -> dict:
    """Template variables recognised in subjects, bodies, media and signatures."""
    return {
        "NAME": lead.name or "there",
        "LEAD_NAME": lead.name or "there",
        "OWNER_NAME": author_name(lead),
        "COMPANY_NAME": lead.company or "your company",
        "LOCATION": lead.location or "your area",
        "EMAIL": lead.email,
        "SENDER_NAME": sender_display_name(lead, tenant, settings),
        "SENDER_EMAIL": tenant["sender_email"] if tenant else "",
        "COMPANY_SERVICE": tenant["service"] if tenant else "",
        "TARGET_INDUSTRY": tenant["industry"] if tenant else "",
        "WEBSITE_URL": tenant["website_url"] if tenant else "",
    }


def find_template(db_path: Path, tenant_id: str, stage: str) -> sqlite3.Row:
    """Tenant template for the stage, falling back to the global one."""
    template = get_template(db_path, tenant_id, stage)
    if template is None and tenant_id != GLOBAL_TEMPLATE_TENANT:
        template = get_template(db_path, GLOBAL_TEMPLATE_TENANT, stage)
    if template is None:
        raise ContentUnavailable(tenant_id, stage)
    return template


def _assemble(*parts: str) -> str:
    return "\n\n".join(part.strip() for part in parts if part and part.strip())


def render_content(
    db_path: Path,
    tenant_id: str,
    lead: Lead,
    stage: str,
    settings: Settings,
) -> ResolvedContent:
    """Render content without consuming anything. Same state, same bytes."""
    tenant = get_tenant_settings(db_path, tenant_id)
    variables = build_variables(lead, tenant, settings)

    draft = get_pending_draft(db_path, lead.id, stage)
    if draft is not None and (draft["subject"] or "").strip() and (draft["body"] or "").strip():
        return ResolvedContent(
            stage=stage,
            subject=render_template(draft["subject"].strip(), variables),
            body=render_template(draft["body"].strip(), variables),
            source=ContentSource.DRAFT,
            draft_id=draft["id"],
        )

    template = find_template(db_path, tenant_id, stage)
    return ResolvedContent(
        stage=stage,
        subject=render_template(template["subject"], variables).strip(),
        body=_assemble(
            render_template(template["body"], variables),
            render_template(template["media"], variables),
            render_template(template["signature"], variables),
        ),
        source=ContentSource.TEMPLATE,
        template_id=template["id"],
    )


def resolve_content(
    db_path: Path,
    tenant_id: str,
    lead_id: int,
    stage: str,
    settings: Settings,
    consume: bool = True,
) -> ResolvedContent:
    """Resolve subject/body for a lead at a stage.

    A draft used here is marked consumed when ``consume`` is set. Raises
    ContentUnavailable when neither a draft nor a template exists.
    """
    row = get_lead_by_id(db_path, lead_id)
    if row is None or row["tenant_id"] != tenant_id:
        raise ValueError(f"Lead {lead_id} not found for tenant '{tenant_id}'")

    content = render_content(db_path, tenant_id, Lead.from_row(row), stage, settings)

    if consume and content.draft_id is not None:
        if not consume_draft(db_path, content.draft_id):
            log.warning("draft_already_consumed", lead_id=lead_id, draft_id=content.draft_id)

    log.debug("content_resolved", lead_id=lead_id, stage=stage, source=content.source.value)
    return content
