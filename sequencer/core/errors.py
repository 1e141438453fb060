"""Error taxonomy for the sequencing engine."""

from typing import Optional


class SequencerError(Exception):
    """Base class for sequencing errors."""


class ConfigurationMissing(SequencerError):
    """No timing policy or template configured; callers degrade to a default."""


class ContentUnavailable(SequencerError):
    """No usable content for a stage. The step is not consumed."""

    def __init__(self, tenant_id: str, stage: str):
        self.tenant_id = tenant_id
        self.stage = stage
        super().__init__(f"No active template for stage '{stage}' (tenant '{tenant_id}')")


class TransportFailure(SequencerError):
    """The mail transport rejected the send or timed out."""


class ConcurrentClaimLost(SequencerError):
    """Another worker changed the lead since it was read."""

    def __init__(self, lead_id: int, message: Optional[str] = None):
        self.lead_id = lead_id
        super().__init__(message or f"Lead {lead_id} was modified concurrently")


class SequenceInvariantViolation(SequencerError):
    """Lead state contradicts the sequencing invariants."""

    def __init__(self, lead_id: int, detail: str):
        self.lead_id = lead_id
        self.detail = detail
        super().__init__(f"Lead {lead_id}: {detail}")
