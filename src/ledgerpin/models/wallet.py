"""SQLAlchemy model for wallet-backed identities."""

from __future__ import annotations

from datetime import datetime

import base58
from sqlalchemy import DateTime, LargeBinary
from sqlalchemy.orm import Mapped, mapped_column

from ledgerpin.db.session import Base
from ledgerpin.db.time import utcnow


class WalletAccount(Base):
    """Account identity keyed by the BLAKE3 hash of an Ed25519 wallet key.

    Rows are created on first successful authentication and never deleted;
    the public key is immutable once associated with an account.
    """

    __tablename__ = "wallet_account"

    account_id: Mapped[bytes] = mapped_column(LargeBinary(32), primary_key=True)
    pubkey: Mapped[bytes] = mapped_column(LargeBinary(32), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    @property
    def pubkey_b58(self) -> str:
        """Return the wallet address in Solana's base58 form."""
        return base58.b58encode(self.pubkey).decode("ascii")

    @property
    def account_id_hex(self) -> str:
        """Return the account identifier as a hex string."""
        return self.account_id.hex()
