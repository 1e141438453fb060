"""Outreach sequencing engine: timed multi-stage drip campaigns per tenant."""
