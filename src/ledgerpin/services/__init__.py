"""Business logic services for the LedgerPin application."""

from .crypto import CryptoService
from .identity import WalletIdentityResolver
from .ledger import LedgerGateway
from .publish import PublishCoordinator
from .replay import ReplayProtectionService
from .stager import ContentStager

__all__ = [
    "CryptoService",
    "ContentStager",
    "LedgerGateway",
    "PublishCoordinator",
    "ReplayProtectionService",
    "WalletIdentityResolver",
]
