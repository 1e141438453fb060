"""Core infrastructure: CLI, config, database, errors."""

from sequencer.core.config import (
    Settings,
    SequenceConfig,
    SweepConfig,
    GmailConfig,
    ComposerConfig,
    TimingEntry,
    TenantConfig,
    load_settings,
    load_tenants,
    load_templates,
    render_template,
)
from sequencer.core.db import (
    init_db,
    insert_lead,
    get_lead_by_email,
    get_lead_by_id,
    get_leads_by_status,
    get_due_leads,
    get_history,
    record_reply,
    save_timing_policy,
    upsert_template,
    save_tenant_settings,
    get_pipeline_stats,
)
from sequencer.core.errors import (
    SequencerError,
    ConfigurationMissing,
    ContentUnavailable,
    TransportFailure,
    ConcurrentClaimLost,
    SequenceInvariantViolation,
)
