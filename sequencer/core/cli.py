"""Command-line interface for the outreach sequencer."""

import asyncio
import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
import structlog

from sequencer.core.config import (
    DEFAULT_CONFIG_PATH,
    Settings,
    load_settings,
    load_templates,
    load_tenants,
)
from sequencer.core.db import (
    DEFAULT_DB_PATH,
    DEFAULT_TENANT,
    get_history,
    get_lead_by_email,
    get_lead_by_id,
    get_pipeline_stats,
    init_db,
    record_reply,
    save_tenant_settings,
    set_automation_enabled,
    upsert_template,
)
from sequencer.core.errors import SequencerError
from sequencer.outreach.composer import pregenerate_drafts
from sequencer.outreach.importer import import_leads
from sequencer.outreach.models import Lead
from sequencer.outreach.scheduler import run_sweep
from sequencer.outreach.state_machine import enroll_lead, force_advance, pause_lead
from sequencer.outreach.timing import save_policy
from sequencer.outreach.trigger import serve as serve_forever

# Configure structlog for CLI output
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer()
    ]
)

log = structlog.get_logger()

LEADS_FOLDER = Path("leads")
PROCESSED_FOLDER = LEADS_FOLDER / "processed"

db_option = click.option("--db", "db_path", type=click.Path(), default=str(DEFAULT_DB_PATH),
                         help="Database path")
config_option = click.option("--config", "config_path", type=click.Path(),
                             default=str(DEFAULT_CONFIG_PATH), help="Config directory path")
tenant_option = click.option("--tenant", "tenant_id", default=DEFAULT_TENANT,
                             help="Tenant id")


def import_from_leads_folder(db_path: Path, tenant_id: str) -> dict:
    """Import all Excel files from /leads folder and move to /processed."""
    LEADS_FOLDER.mkdir(exist_ok=True)
    PROCESSED_FOLDER.mkdir(exist_ok=True)

    total_imported = 0
    total_skipped = 0
    files_processed = []

    # Find all Excel files
    excel_files = list(LEADS_FOLDER.glob("*.xlsx"))

    for excel_path in excel_files:
        click.echo(f"Importing {excel_path.name}...")

        try:
            result = import_leads(excel_path, db_path, tenant_id)
        except (ValueError, OSError) as e:
            click.echo(f"  ✗ Error: {e}")
            continue

        total_imported += result["imported"]
        total_skipped += result["skipped"]

        # Move to processed folder with timestamp
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        dest = PROCESSED_FOLDER / f"{excel_path.stem}_{timestamp}{excel_path.suffix}"
        shutil.move(str(excel_path), str(dest))

        files_processed.append(excel_path.name)
        click.echo(f"  → Imported {result['imported']}, skipped {result['skipped']}")

    return {
        "imported": total_imported,
        "skipped": total_skipped,
        "files": files_processed,
    }


def _find_lead(db: Path, ref: str, tenant_id: Optional[str] = None):
    """Look a lead up by numeric id or by email."""
    if ref.isdigit():
        return get_lead_by_id(db, int(ref))
    return get_lead_by_email(db, ref.strip().lower(), tenant_id)


def _require_lead(db: Path, ref: str, tenant_id: Optional[str] = None):
    lead = _find_lead(db, ref, tenant_id)
    if lead is None:
        raise click.ClickException(f"Lead not found: {ref}")
    return lead


def _seed_default_timing(db: Path, settings: Settings) -> bool:
    if not settings.default_timing:
        return False
    save_policy(db, DEFAULT_TENANT, settings.default_timing)
    return True


@click.group(invoke_without_command=True)
@click.pass_context
def cli(ctx):
    """Outreach sequencer - multi-tenant drip email CLI.

    Just run 'python run.py' to run one sweep over due leads.
    """
    if ctx.invoked_subcommand is None:
        # Default behavior: one sweep
        ctx.invoke(sweep)


@cli.command()
@db_option
@config_option
def init(db_path: str, config_path: str):
    """Create the database and store the default timing policy."""
    db = Path(db_path)
    init_db(db)
    click.echo(f"Database ready: {db}")

    if _seed_default_timing(db, load_settings(Path(config_path))):
        click.echo("Default timing policy saved")


@cli.command()
@db_option
@config_option
def seed(db_path: str, config_path: str):
    """Load timing policies, templates and tenant settings from config."""
    db = Path(db_path)
    config = Path(config_path)

    init_db(db)
    settings = load_settings(config)

    if _seed_default_timing(db, settings):
        click.echo(f"Default timing: {len(settings.default_timing)} stage(s)")

    for tenant in load_tenants(config):
        fields = tenant.model_dump(exclude={"tenant_id", "timing"})
        save_tenant_settings(db, tenant.tenant_id, **fields)
        if tenant.timing:
            save_policy(db, tenant.tenant_id, tenant.timing)
        click.echo(f"Tenant {tenant.tenant_id}: settings saved, {len(tenant.timing)} timing override(s)")

    templates = load_templates(config)
    for template in templates:
        upsert_template(
            db,
            template.tenant_id,
            template.stage,
            template.subject,
            body=template.body,
            content_prompt=template.content_prompt,
            signature=template.signature,
            media=template.media,
            active=template.active,
        )
    click.echo(f"Templates: {len(templates)} upserted")


@cli.command("import")
@click.argument("excel_path", type=click.Path(exists=True), required=False)
@db_option
@tenant_option
def import_command(excel_path: Optional[str], db_path: str, tenant_id: str):
    """Import leads from an Excel file, or from every file in /leads."""
    db = Path(db_path)
    init_db(db)

    if excel_path:
        result = import_leads(Path(excel_path), db, tenant_id)
        click.echo(f"Imported {result['imported']}, skipped {result['skipped']}")
        return

    result = import_from_leads_folder(db, tenant_id)
    if result["files"]:
        click.echo(f"\nImported {result['imported']} leads from {len(result['files'])} file(s)")
        click.echo("Files moved to leads/processed/")
    else:
        click.echo("No new files in /leads folder")


@cli.command()
@click.argument("lead_ref")
@db_option
@config_option
@tenant_option
def enroll(lead_ref: str, db_path: str, config_path: str, tenant_id: str):
    """Enroll a lead (id or email) at the first stage."""
    db = Path(db_path)
    init_db(db)
    settings = load_settings(Path(config_path))

    row = _require_lead(db, lead_ref, tenant_id)
    lead = enroll_lead(db, row["id"], settings.sequence.stages)
    if lead is None:
        click.echo(f"Not enrolled: {row['email']} is already {row['status']}")
        return
    click.echo(f"Enrolled {lead.email} at {lead.stage}, first send {lead.next_scheduled_at}")


@cli.command()
@click.argument("lead_ref")
@db_option
@tenant_option
def pause(lead_ref: str, db_path: str, tenant_id: str):
    """Stop a lead's sequence manually."""
    db = Path(db_path)
    init_db(db)

    row = _require_lead(db, lead_ref, tenant_id)
    if pause_lead(db, row["id"]):
        click.echo(f"Stopped {row['email']} (manual)")
    else:
        click.echo(f"Nothing to stop: {row['email']} is {row['status']}")


@cli.command()
@click.argument("lead_ref")
@db_option
@tenant_option
def deactivate(lead_ref: str, db_path: str, tenant_id: str):
    """Turn automation off for a lead. The next sweep stops it as manual."""
    db = Path(db_path)
    init_db(db)

    row = _require_lead(db, lead_ref, tenant_id)
    set_automation_enabled(db, row["id"], False)
    click.echo(f"Automation off for {row['email']}")


@cli.command()
@click.argument("lead_ref")
@db_option
@tenant_option
def reactivate(lead_ref: str, db_path: str, tenant_id: str):
    """Turn automation back on for a lead that has not been stopped yet."""
    db = Path(db_path)
    init_db(db)

    row = _require_lead(db, lead_ref, tenant_id)
    if Lead.from_row(row).is_terminal:
        click.echo(f"Cannot reactivate: {row['email']} is {row['status']}")
        return
    set_automation_enabled(db, row["id"], True)
    click.echo(f"Automation on for {row['email']}")


@cli.command()
@click.argument("lead_ref")
@db_option
@config_option
@tenant_option
def advance(lead_ref: str, db_path: str, config_path: str, tenant_id: str):
    """Skip the lead's current stage and make the next one due now."""
    db = Path(db_path)
    init_db(db)
    settings = load_settings(Path(config_path))

    row = _require_lead(db, lead_ref, tenant_id)
    try:
        lead = force_advance(db, row["id"], settings.sequence.stages)
    except SequencerError as e:
        raise click.ClickException(str(e))

    if lead is None:
        click.echo(f"Not active: {row['email']} is {row['status']}")
    elif lead.active:
        click.echo(f"Advanced {lead.email} to {lead.stage}, due now")
    else:
        click.echo(f"Sequence completed for {lead.email}")


@cli.command()
@click.argument("lead_ref")
@db_option
@tenant_option
def reply(lead_ref: str, db_path: str, tenant_id: str):
    """Record that a lead replied. The next sweep stops the sequence."""
    db = Path(db_path)
    init_db(db)

    row = _require_lead(db, lead_ref, tenant_id)
    record_reply(db, row["id"])
    click.echo(f"Reply recorded for {row['email']}")


@cli.command()
@db_option
@config_option
def sweep(db_path: str, config_path: str):
    """Run one sweep over due leads."""
    db = Path(db_path)
    config = Path(config_path)

    init_db(db)

    click.echo("=" * 40)
    click.echo("Sweeping due leads...")
    click.echo("=" * 40 + "\n")

    result = asyncio.run(run_sweep(db, config))

    for detail in result["details"]:
        mark = "✓" if detail["success"] else "·"
        line = f"  {mark} {detail['email']} [{detail['stage']}] {detail['outcome']}"
        if detail["next_stage"]:
            line += f" → {detail['next_stage']} at {detail['next_due']}"
        if detail.get("reason") and detail["outcome"] == "stopped":
            line += f": {detail['reason']}"
        if detail["error"]:
            line += f" ({detail['error']})"
        click.echo(line)

    # Summary
    click.echo("\n" + "=" * 40)
    click.echo("SUMMARY")
    click.echo("=" * 40)
    click.echo(f"Processed:   {result['processed']}")
    click.echo(f"Sent:        {result['sent']}")
    click.echo(f"Failed:      {result['failed']}")
    click.echo(f"Stopped:     {result['stopped']}")
    click.echo(f"Completed:   {result['completed']}")
    click.echo(f"Skipped:     {result['skipped']}")
    click.echo(f"Quarantined: {result['quarantined']}")
    click.echo(f"Errors:      {result['errors']}")


@cli.command()
@db_option
@config_option
def serve(db_path: str, config_path: str):
    """Run the sweep every sweep.interval_minutes until interrupted."""
    db = Path(db_path)
    config = Path(config_path)

    init_db(db)
    settings = load_settings(config)
    click.echo(f"Sweeping every {settings.sweep.interval_minutes} minute(s). Ctrl+C to stop.")

    try:
        asyncio.run(serve_forever(db, config, settings))
    except KeyboardInterrupt:
        click.echo("\nStopped")


@cli.command()
@db_option
@config_option
def drafts(db_path: str, config_path: str):
    """Pre-generate AI drafts for leads whose stage has a content prompt."""
    db = Path(db_path)
    init_db(db)
    settings = load_settings(Path(config_path))

    result = asyncio.run(pregenerate_drafts(db, settings))
    click.echo(f"Drafts generated: {result['generated']}")
    click.echo(f"Skipped: {result['skipped']}")
    click.echo(f"Failed: {result['failed']}")


@cli.command()
@db_option
@click.option("--lead", "lead_ref", type=str, default=None,
              help="Check specific lead by id or email")
def status(db_path: str, lead_ref: Optional[str]):
    """Show pipeline status."""
    db = Path(db_path)
    init_db(db)

    if lead_ref:
        # Show specific lead
        lead = _find_lead(db, lead_ref)
        if not lead:
            click.echo(f"Lead not found: {lead_ref}")
            return

        click.echo(f"\nLead: {lead['email']} (#{lead['id']}, tenant {lead['tenant_id']})")
        click.echo(f"  Name: {lead['name']}")
        click.echo(f"  Company: {lead['company'] or 'N/A'}")
        click.echo(f"  Status: {lead['status']}")
        if lead['stage']:
            click.echo(f"  Stage: {lead['stage']} (step {lead['step']})")
        if lead['stopped_reason']:
            click.echo(f"  Stopped: {lead['stopped_reason']}")
        if not lead['automation_enabled']:
            click.echo("  Automation: off")
        if lead['last_sent_at']:
            click.echo(f"  Last sent: {lead['last_sent_at']}")
        if lead['next_scheduled_at']:
            click.echo(f"  Next send: {lead['next_scheduled_at']}")

        history = get_history(db, lead["id"])
        if history:
            click.echo("  History:")
            for entry in history:
                mark = "✓" if entry["success"] else "✗"
                click.echo(f"    {mark} {entry['sent_at']} {entry['stage']} {entry['error'] or entry['subject'] or ''}")
        return

    # Show overall stats
    stats = get_pipeline_stats(db)

    click.echo("\nPipeline Status")
    click.echo("───────────────")
    click.echo(f"Not enrolled:          {stats.get('not_enrolled', 0)}")
    click.echo(f"Active sequences:      {stats.get('active', 0)}")
    click.echo(f"  - Due now:           {stats.get('due', 0)}")
    click.echo(f"Completed:             {stats.get('completed', 0)}")
    click.echo(f"Stopped:               {stats.get('stopped', 0)}")
    for reason, count in sorted(stats["stopped_reasons"].items()):
        click.echo(f"  - {reason}: {count}")
    click.echo(f"Quarantined:           {stats.get('quarantined', 0)}")
    click.echo("───────────────")
    click.echo(f"Sent today: {stats.get('sent_today', 0)}")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
