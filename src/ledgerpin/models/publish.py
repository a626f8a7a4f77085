"""SQLAlchemy model for publish cycles."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, LargeBinary, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ledgerpin.db.session import Base
from ledgerpin.db.time import utcnow

CYCLE_STATE_REQUESTED = "requested"
CYCLE_STATE_ADMISSION_CHECKED = "admission_checked"
CYCLE_STATE_STAGED = "staged"
CYCLE_STATE_AWAITING_PAYMENT = "awaiting_payment"
CYCLE_STATE_FINALIZED = "finalized"
CYCLE_STATE_RECLAIMED = "reclaimed"
CYCLE_STATE_REJECTED = "rejected"
CYCLE_STATE_INSUFFICIENT_FUNDS = "insufficient_funds"
CYCLE_STATE_LEDGER_UNAVAILABLE = "ledger_unavailable"
CYCLE_STATE_STAGING_FAILED = "staging_failed"

TERMINAL_CYCLE_STATES = frozenset(
    {
        CYCLE_STATE_FINALIZED,
        CYCLE_STATE_RECLAIMED,
        CYCLE_STATE_REJECTED,
        CYCLE_STATE_INSUFFICIENT_FUNDS,
        CYCLE_STATE_LEDGER_UNAVAILABLE,
        CYCLE_STATE_STAGING_FAILED,
    }
)


class PublishCycle(Base):
    """State-machine record for one publish attempt."""

    __tablename__ = "publish_cycle"
    __table_args__ = (Index("ix_publish_cycle_address_state", "content_address", "state"),)

    cycle_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    account_id: Mapped[bytes] = mapped_column(
        LargeBinary(32),
        ForeignKey("wallet_account.account_id"),
        nullable=False,
        index=True,
    )
    tree_ref: Mapped[str] = mapped_column(Text, nullable=False)
    content_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str] = mapped_column(String(24), nullable=False, default=CYCLE_STATE_REQUESTED)
    transaction_ref: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_CYCLE_STATES


class PaymentClaim(Base):
    """Reservation of a ledger transaction by the cycle it pays for.

    The primary key makes the reservation atomic: a second cycle inserting the
    same reference fails with an integrity error instead of racing the first
    one through the ledger check.
    """

    __tablename__ = "payment_claim"

    transaction_ref: Mapped[str] = mapped_column(String(128), primary_key=True)
    cycle_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("publish_cycle.cycle_id"),
        nullable=False,
        index=True,
    )
    claimed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
