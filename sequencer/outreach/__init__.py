"""Outreach sequencing: timing, content, stop checks, state, sweep, send."""

from sequencer.outreach.timing import Delay, resolve_delay, save_policy
from sequencer.outreach.content import ContentSource, ResolvedContent, render_content, resolve_content
from sequencer.outreach.stop_conditions import Verdict, should_continue
from sequencer.outreach.state_machine import enroll_lead, pause_lead, force_advance
from sequencer.outreach.scheduler import run_sweep, check_replies
from sequencer.outreach.sender import MailTransport, ComposioGmailTransport
from sequencer.outreach.composer import generate_draft, pregenerate_drafts
from sequencer.outreach.importer import import_leads
