"""SQLAlchemy models for the LedgerPin service."""

from .publish import PaymentClaim, PublishCycle
from .staging import StagingEntry
from .wallet import WalletAccount

__all__ = [
    "PaymentClaim",
    "PublishCycle",
    "StagingEntry",
    "WalletAccount",
]
