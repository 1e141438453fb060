"""AI draft generation using Claude."""

import json
from pathlib import Path
from typing import Optional

import anthropic
import structlog

from sequencer.core.config import Settings, render_template
from sequencer.core.db import (
    get_lead_by_id,
    get_leads_by_status,
    get_pending_draft,
    get_tenant_settings,
    insert_draft,
)
from sequencer.core.errors import ContentUnavailable
from sequencer.outreach.content import build_variables, find_template
from sequencer.outreach.models import Lead, LeadStatus

log = structlog.get_logger()


def build_system_prompt(tenant: Optional[dict], stage: str) -> str:
    """Build the system prompt for Claude."""
    tenant = tenant or {}
    company = tenant.get("company_name") or "our company"
    service = tenant.get("service") or "our services"
    industry = tenant.get("industry") or "local businesses"

    return f"""You are writing one email in a multi-step cold outreach sequence.

## Context about the sender:
Company: {company}
Service: {service}
Target industry: {industry}

## This email:
Sequence stage: {stage}

## Rules:
- Plain text, no markdown
- Short paragraphs, under 150 words in total
- Reference the recipient's business specifically, never generically
- One clear, low-friction ask
- No greeting line and no signature; those are added separately
- Absolutely NO em-dashes

## Output format:
Return a JSON object with exactly two fields:
- "subject": A 3-8 word subject line
- "body": The email body
"""


def _parse_response(response_text: str) -> dict:
    """Parse the model's JSON reply, tolerating markdown code fences."""
    response_text = response_text.strip()
    if response_text.startswith("```"):
        response_text = response_text.split("```")[1]
        if response_text.startswith("json"):
            response_text = response_text[4:]
        response_text = response_text.strip()
    return json.loads(response_text)


async def generate_draft(
    db_path: Path,
    tenant_id: str,
    lead_id: int,
    stage: str,
    prompt: str,
    settings: Settings,
) -> Optional[int]:
    """Generate a draft for a lead's stage and store it as pending.

    ``prompt`` is the template's content prompt; lead and sender
    variables are substituted into it. Returns the draft id, or None
    when generation fails (the template is used instead).
    """
    row = get_lead_by_id(db_path, lead_id)
    if row is None:
        log.warning("draft_lead_missing", lead_id=lead_id)
        return None
    lead = Lead.from_row(row)

    tenant = get_tenant_settings(db_path, tenant_id)
    variables = build_variables(lead, tenant, settings)
    user_message = f"""{render_template(prompt, variables)}

Recipient:
Name: {variables["NAME"]}
Business: {variables["COMPANY_NAME"]}
Location: {variables["LOCATION"]}

Remember: Return valid JSON with "subject" and "body" fields."""

    system_prompt = build_system_prompt(dict(tenant) if tenant else None, stage)

    log.info("generating_draft", lead_id=lead_id, stage=stage)

    response_text = ""
    try:
        client = anthropic.AsyncAnthropic()

        response = await client.messages.create(
            model=settings.composer.model,
            max_tokens=settings.composer.max_tokens,
            system=system_prompt,
            messages=[{"role": "user", "content": user_message}]
        )

        response_text = response.content[0].text
        result = _parse_response(response_text)

        subject = (result.get("subject") or "").strip()
        body = (result.get("body") or "").strip()
        if not subject or not body:
            log.warning("draft_incomplete", lead_id=lead_id, stage=stage)
            return None

    except json.JSONDecodeError as e:
        log.error("json_parse_error", error=str(e), response=response_text[:200])
        return None
    except Exception as e:
        log.error("claude_error", error=str(e))
        return None

    draft_id = insert_draft(db_path, tenant_id, lead_id, stage, subject, body)
    log.info("draft_generated", lead_id=lead_id, stage=stage, draft_id=draft_id, subject=subject)
    return draft_id


async def pregenerate_drafts(db_path: Path, settings: Settings) -> dict:
    """Fill drafts for active leads whose current stage has a content prompt.

    Returns dict with generated, skipped and failed counts.
    """
    results = {"generated": 0, "skipped": 0, "failed": 0}

    for row in get_leads_by_status(db_path, LeadStatus.ACTIVE.value):
        lead = Lead.from_row(row)
        if lead.stage is None or get_pending_draft(db_path, lead.id, lead.stage):
            results["skipped"] += 1
            continue

        try:
            template = find_template(db_path, lead.tenant_id, lead.stage)
        except ContentUnavailable:
            results["skipped"] += 1
            continue

        if not template["content_prompt"]:
            results["skipped"] += 1
            continue

        draft_id = await generate_draft(
            db_path, lead.tenant_id, lead.id, lead.stage, template["content_prompt"], settings
        )
        if draft_id is None:
            results["failed"] += 1
        else:
            results["generated"] += 1

    log.info("drafts_pregenerated", **results)
    return results
