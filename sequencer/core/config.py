"""Configuration loading and models."""

import os
import re
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, field_validator

DEFAULT_STAGES = [
    "intro",
    "followup-1",
    "followup-2",
    "followup-3",
    "followup-4",
    "followup-5",
    "followup-6",
]

TimingUnit = Literal["minutes", "hours", "days"]


class TimingEntry(BaseModel):
    stage: str
    delay: int = 7
    unit: TimingUnit = "days"
    description: str = "Send after 7 days"


class SequenceConfig(BaseModel):
    stages: list[str] = DEFAULT_STAGES
    retry_backoff_minutes: int = 10
    error_budget: int = 5
    max_retry_hours: Optional[int] = None  # None disables ageing out

    @field_validator("stages")
    @classmethod
    def _stages_unique(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("sequence.stages must not be empty")
        if len(set(value)) != len(value):
            raise ValueError(f"sequence.stages must be unique: {value}")
        return value


class SweepConfig(BaseModel):
    batch_size: int = 20
    concurrency: int = 5
    claim_window_minutes: int = 15
    send_timeout_seconds: float = 30
    interval_minutes: int = 5
    check_replies: bool = True


class GmailConfig(BaseModel):
    from_name: str = "Team"
    connected_account_id: str = ""  # Composio connected account ID


class ComposerConfig(BaseModel):
    model: str = "claude-opus-4-5-20251101"
    max_tokens: int = 800


class Settings(BaseModel):
    sequence: SequenceConfig = SequenceConfig()
    sweep: SweepConfig = SweepConfig()
    gmail: GmailConfig = GmailConfig()
    composer: ComposerConfig = ComposerConfig()
    default_timing: list[TimingEntry] = []


class TenantConfig(BaseModel):
    """Tenant settings plus its timing override, as written in tenants.yaml."""
    tenant_id: str
    company_name: str = ""
    service: str = ""
    industry: str = ""
    sender_name: str = ""
    sender_email: str = ""
    website_url: str = ""
    default_sender_identity: Literal["company", "author"] = "company"
    timing: list[TimingEntry] = []


DEFAULT_CONFIG_PATH = Path("config")


def load_settings(config_path: Path = DEFAULT_CONFIG_PATH) -> Settings:
    """Load settings from YAML file."""
    settings_file = config_path / "settings.yaml"

    if not settings_file.exists():
        settings = Settings()
    else:
        with open(settings_file) as f:
            data = yaml.safe_load(f) or {}
        settings = Settings(**data)

    # Env vars fill in values the YAML leaves empty
    if not settings.gmail.connected_account_id:
        env_account_id = os.environ.get("COMPOSIO_CONNECTED_ACCOUNT_ID", "")
        if env_account_id:
            settings.gmail.connected_account_id = env_account_id

    env_model = os.environ.get("ANTHROPIC_MODEL", "")
    if env_model:
        settings.composer.model = env_model

    return settings


def render_template(template: str, variables: dict) -> str:
    """Render a template with {{VARIABLE}} substitution."""
    result = template
    for key, value in variables.items():
        result = result.replace(f"{{{{{key}}}}}", str(value) if value else "")
    return result


def load_tenants(config_path: Path = DEFAULT_CONFIG_PATH) -> list[TenantConfig]:
    """Load tenant settings and timing overrides from tenants.yaml."""
    tenants_file = config_path / "tenants.yaml"
    if not tenants_file.exists():
        return []
    with open(tenants_file) as f:
        data = yaml.safe_load(f) or {}
    return [TenantConfig(**item) for item in data.get("tenants", [])]


class EmailTemplate(BaseModel):
    """Content template for one stage, optionally tenant-specific."""
    stage: str
    tenant_id: str = ""
    subject: str
    body: str
    content_prompt: str = ""
    signature: str = ""
    media: str = ""
    active: bool = True


def load_templates(config_path: Path = DEFAULT_CONFIG_PATH) -> list[EmailTemplate]:
    """Load and parse templates.md into a list of EmailTemplate objects.

    Each template is a YAML frontmatter block (stage, optional tenant,
    content_prompt, signature, media) followed by a body whose first
    line is ``subject: ...``.
    """
    templates_file = config_path / "templates.md"

    if not templates_file.exists():
        return []

    content = templates_file.read_text()

    sections = re.split(r'^---\s*$', content, flags=re.MULTILINE)

    templates = []
    # Process pairs of (frontmatter, body)
    i = 1
    while i < len(sections) - 1:
        frontmatter = sections[i].strip()
        body = sections[i + 1].strip()

        if not frontmatter:
            i += 2
            continue

        meta = yaml.safe_load(frontmatter)
        if not meta or "stage" not in meta:
            i += 2
            continue

        lines = body.split('\n')
        subject = ""
        body_start = 0
        for idx, line in enumerate(lines):
            if line.startswith('subject:'):
                subject = line.replace('subject:', '').strip()
                body_start = idx + 1
                break

        body_content = '\n'.join(lines[body_start:]).strip()

        templates.append(EmailTemplate(
            stage=meta["stage"],
            tenant_id=meta.get("tenant") or "",
            subject=subject,
            body=body_content,
            content_prompt=(meta.get("content_prompt") or "").strip(),
            signature=(meta.get("signature") or "").strip(),
            media=(meta.get("media") or "").strip(),
            active=meta.get("active", True),
        ))

        i += 2

    return templates
