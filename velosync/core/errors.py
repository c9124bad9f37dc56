from __future__ import annotations

from datetime import datetime


class VelosyncError(Exception):
    """Base error for velosync."""


class AdmissionDenied(VelosyncError):
    """A rate scope is exhausted; carries the scope and when it resets."""

    def __init__(self, scope: str, reset_at: datetime, *, limit: int, tier: str | None = None) -> None:
        super().__init__(f"{scope} exhausted until {reset_at.isoformat()}")
        self.scope = scope
        self.reset_at = reset_at
        self.limit = limit
        self.tier = tier


class WebhookRejected(VelosyncError):
    """Inbound webhook failed verification or validation."""


class UpstreamError(VelosyncError):
    """Upstream API call failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientUpstreamFailure(UpstreamError):
    """Network, timeout, throttling or 5xx failure; safe to retry later."""


class PermanentJobFailure(VelosyncError):
    """Malformed payload or a resource that is permanently gone; never retried."""


class CredentialsMissingError(PermanentJobFailure):
    """No usable access token is stored for the subject."""


class UnknownJobKindError(PermanentJobFailure):
    """Job kind has no handler."""
