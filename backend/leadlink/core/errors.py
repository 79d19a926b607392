"""
Error taxonomy for the attribution engine.
"""

from __future__ import annotations

from typing import Optional


class LeadLinkError(Exception):
    """Base class for all engine errors."""


class InvalidAddress(LeadLinkError):
    """Destination address could not be normalized to a phone number."""

    def __init__(self, raw: Optional[str], reason: str = "invalid phone number format"):
        self.raw = raw
        self.reason = reason
        super().__init__(f"{reason}: {raw!r}")


class ExternalServiceError(LeadLinkError):
    """A call to the CRM failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: object = None):
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class ExternalTransient(ExternalServiceError):
    """Timeout, no response, 5xx or 429. Retried until the budget runs out."""


class ExternalPermanent(ExternalServiceError):
    """4xx other than 429, or an unusable response. Never retried."""


class StoreUnavailable(LeadLinkError):
    """The click store could not be reached or rejected the operation."""
