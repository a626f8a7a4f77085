"""SQLAlchemy model for staged content."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column

from ledgerpin.db.session import Base
from ledgerpin.db.time import utcnow

STAGING_STATE_STAGED = "staged"
STAGING_STATE_FINALIZED = "finalized"
STAGING_STATE_RECLAIMED = "reclaimed"


class StagingEntry(Base):
    """One row per content address held in, or reclaimed from, the store."""

    __tablename__ = "staging_entry"

    address: Mapped[str] = mapped_column(String(128), primary_key=True)
    owner_account_id: Mapped[bytes] = mapped_column(
        LargeBinary(32),
        ForeignKey("wallet_account.account_id"),
        nullable=False,
        index=True,
    )
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    state: Mapped[str] = mapped_column(
        String(16), nullable=False, default=STAGING_STATE_STAGED, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reclaimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_live(self) -> bool:
        """Return True while the content is physically present in the store."""
        return self.state in (STAGING_STATE_STAGED, STAGING_STATE_FINALIZED)
