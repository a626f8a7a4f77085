"""Exception taxonomy for publish cycles.

Each error carries a short machine-readable ``reason`` next to its message.
Handlers at the HTTP edge map the class to a status code and the reason to the
response body.
"""

from __future__ import annotations


class LedgerPinError(Exception):
    """Base class for all domain errors."""

    reason: str = "Error"

    def __init__(self, message: str | None = None, *, reason: str | None = None) -> None:
        if reason is not None:
            self.reason = reason
        super().__init__(message or self.reason)


class AuthError(LedgerPinError):
    """Raised when a wallet signature cannot be verified.

    Every failure uses the same reason and message so callers cannot tell a
    malformed key from a wrong signature.
    """

    reason = "BadCredentials"

    def __init__(self) -> None:
        super().__init__("Wallet authentication failed", reason=self.reason)


class AdmissionError(LedgerPinError):
    """Raised when a publish request cannot be admitted."""

    reason = "InsufficientFunds"


class StagingError(LedgerPinError):
    """Raised when content cannot be written to the staging area."""

    reason = "IOFailure"


class PaymentError(LedgerPinError):
    """Raised when a payment proof cannot be evaluated."""

    reason = "Rejected"


class NotFoundError(LedgerPinError):
    """Raised for content addresses or cycles that do not exist."""

    reason = "UnknownAddress"
