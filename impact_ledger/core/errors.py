"""
Error taxonomy for the impact ledger.

Each error maps to one propagation rule:
- ValidationError: rejected immediately, nothing recorded
- ExternalServiceError: request aborted, no usage event written
- LedgerWriteError: event persisted but aggregates lagging, closed by a sweep
- ReconciliationMismatch: client estimate disagrees with the server figure
"""


class ImpactLedgerError(Exception):
    """Base class for all impact ledger errors."""


class ValidationError(ImpactLedgerError, ValueError):
    """Raised for bad token counts, unknown models or malformed input."""


class ConfigurationError(ValidationError):
    """Raised when a supported model cannot be counted accurately."""


class ExternalServiceError(ImpactLedgerError):
    """Raised when the AI completion service fails or times out."""


class LedgerWriteError(ImpactLedgerError):
    """An event was persisted but its aggregate fan-out failed."""

    def __init__(self, message: str, event_id: str):
        super().__init__(message)
        self.event_id = event_id


class ReconciliationMismatch(ImpactLedgerError):
    """Client-side provisional figure disagrees with the authoritative one."""

    def __init__(self, message: str, provisional, authoritative):
        super().__init__(message)
        self.provisional = provisional
        self.authoritative = authoritative
