"""Two-phase publish coordination.

A cycle is admitted only if the wallet holds the minimum balance, then its
content is staged unpinned and the caller is told how to pay. Content is
pinned only after the ledger gateway confirms a finalized payment signed by
the cycle's wallet; a rejected proof reclaims the staged data immediately and
abandoned cycles are reclaimed by the TTL sweep.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerpin.core.errors import AdmissionError, NotFoundError, PaymentError, StagingError
from ledgerpin.core.settings import settings
from ledgerpin.models import PaymentClaim, PublishCycle, WalletAccount
from ledgerpin.models.publish import (
    CYCLE_STATE_ADMISSION_CHECKED,
    CYCLE_STATE_AWAITING_PAYMENT,
    CYCLE_STATE_FINALIZED,
    CYCLE_STATE_INSUFFICIENT_FUNDS,
    CYCLE_STATE_LEDGER_UNAVAILABLE,
    CYCLE_STATE_RECLAIMED,
    CYCLE_STATE_REJECTED,
    CYCLE_STATE_REQUESTED,
    CYCLE_STATE_STAGED,
    CYCLE_STATE_STAGING_FAILED,
)
from ledgerpin.services.crypto import CryptoService
from ledgerpin.services.identity import AuthChallenge, WalletIdentityResolver
from ledgerpin.services.ledger import (
    ConfirmationStatus,
    LedgerError,
    LedgerGateway,
    LedgerUnavailableError,
    TransactionConfirmation,
    get_ledger_gateway,
)
from ledgerpin.services.stager import ContentStager, FinalizeResult
from ledgerpin.services.store import build_content_store
from ledgerpin.services.tree import TreeSource
from ledgerpin.utils.backoff import BackoffPolicy, load_backoff_policy, retry_async

logger = logging.getLogger(__name__)


class PublishStatus(str, Enum):
    """Statuses reported to callers of the publish operations."""

    INSUFFICIENT_FUNDS = "InsufficientFunds"
    STAGING_FAILED = "StagingFailed"
    AWAITING_PAYMENT = "AwaitingPayment"
    PENDING = "Pending"
    REJECTED = "Rejected"
    FINALIZED = "Finalized"
    UNAVAILABLE = "Unavailable"
    RECLAIMED = "Reclaimed"


_TERMINAL_STATUS = {
    CYCLE_STATE_FINALIZED: PublishStatus.FINALIZED,
    CYCLE_STATE_REJECTED: PublishStatus.REJECTED,
    CYCLE_STATE_RECLAIMED: PublishStatus.RECLAIMED,
    CYCLE_STATE_INSUFFICIENT_FUNDS: PublishStatus.INSUFFICIENT_FUNDS,
    CYCLE_STATE_STAGING_FAILED: PublishStatus.STAGING_FAILED,
    CYCLE_STATE_LEDGER_UNAVAILABLE: PublishStatus.UNAVAILABLE,
}


@dataclass(frozen=True)
class PaymentInstructions:
    """What the wallet must pay to finalize a staged address."""

    recipient: str
    amount_lamports: int
    memo: str | None


@dataclass(frozen=True)
class PaymentProof:
    """Evidence checked against the ledger; never stored."""

    transaction_ref: str
    claimed_signer: bytes
    claimed_amount: int
    min_required_amount: int


@dataclass(frozen=True)
class PublishOutcome:
    """Result of one publish operation."""

    status: PublishStatus
    cycle_id: str | None = None
    content_address: str | None = None
    detail: str | None = None
    payment: PaymentInstructions | None = None
    gateway_url: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


class PublishCoordinator:
    """Drive publish cycles through admission, staging, payment and finalization."""

    def __init__(
        self,
        gateway: LedgerGateway,
        stager: ContentStager,
        *,
        resolver: WalletIdentityResolver | None = None,
        backoff: BackoffPolicy | None = None,
        min_balance: int | None = None,
        price: int | None = None,
        require_memo: bool | None = None,
    ) -> None:
        self.gateway = gateway
        self.stager = stager
        self.resolver = resolver or WalletIdentityResolver()
        self.backoff = backoff or load_backoff_policy()
        self.min_balance = settings.min_balance_lamports if min_balance is None else min_balance
        self.price = settings.publish_price_lamports if price is None else price
        self.require_memo = (
            settings.require_payment_memo if require_memo is None else require_memo
        )

    def payment_instructions(self, address: str) -> PaymentInstructions:
        return PaymentInstructions(
            recipient=self.gateway.config.payment_recipient,
            amount_lamports=self.price,
            memo=address if self.require_memo else None,
        )

    def _transition(self, db: Session, cycle: PublishCycle, state: str, detail: str | None = None) -> None:
        logger.info("Cycle %s: %s -> %s", cycle.cycle_id, cycle.state, state)
        cycle.state = state
        if detail is not None:
            cycle.detail = detail
        db.commit()

    async def _balance_with_retry(self, public_key: bytes) -> int:
        return await retry_async(
            lambda: self.gateway.get_balance(public_key),
            self.backoff,
            retry_on=(LedgerUnavailableError,),
        )

    async def _confirm_with_retry(self, proof: PaymentProof, memo: str | None) -> TransactionConfirmation:
        async def attempt() -> TransactionConfirmation:
            result = await self.gateway.confirm_transaction(
                proof.transaction_ref,
                proof.claimed_signer,
                proof.min_required_amount,
                memo=memo,
            )
            if result.status is ConfirmationStatus.UNAVAILABLE:
                raise LedgerUnavailableError(result.reason or "ledger unavailable")
            return result

        try:
            return await retry_async(attempt, self.backoff, retry_on=(LedgerUnavailableError,))
        except LedgerUnavailableError as exc:
            return TransactionConfirmation(ConfirmationStatus.UNAVAILABLE, str(exc))

    async def _admit(self, account: WalletAccount) -> None:
        """Require the wallet to hold the minimum balance.

        Raises:
            AdmissionError: ``InsufficientFunds`` below the minimum, or
                ``LedgerUnavailable`` when the balance cannot be read.
        """
        try:
            balance = await self._balance_with_retry(account.pubkey)
        except LedgerError as exc:
            raise AdmissionError(str(exc), reason="LedgerUnavailable") from exc
        if balance < self.min_balance:
            raise AdmissionError(
                f"Insufficient balance: wallet holds {balance} lamports, "
                f"at least {self.min_balance} required"
            )

    async def start_publish(
        self,
        db: Session,
        challenge: AuthChallenge,
        source: TreeSource,
        *,
        tree_ref: str | None = None,
    ) -> PublishOutcome:
        """Authenticate, check admission and stage content for payment.

        Raises:
            AuthError: If the wallet signature does not verify.
        """
        account = self.resolver.authenticate(db, challenge)
        cycle = PublishCycle(
            cycle_id=uuid.uuid4().hex,
            account_id=account.account_id,
            tree_ref=tree_ref or source.describe(),
            state=CYCLE_STATE_REQUESTED,
        )
        db.add(cycle)
        db.commit()

        try:
            await self._admit(account)
        except AdmissionError as exc:
            if exc.reason == "LedgerUnavailable":
                self._transition(db, cycle, CYCLE_STATE_LEDGER_UNAVAILABLE, str(exc))
                return PublishOutcome(
                    PublishStatus.UNAVAILABLE,
                    cycle_id=cycle.cycle_id,
                    detail="Ledger unavailable; retry later",
                )
            self._transition(db, cycle, CYCLE_STATE_INSUFFICIENT_FUNDS, str(exc))
            return PublishOutcome(
                PublishStatus.INSUFFICIENT_FUNDS, cycle_id=cycle.cycle_id, detail=str(exc)
            )
        self._transition(db, cycle, CYCLE_STATE_ADMISSION_CHECKED)

        try:
            entry = await self.stager.stage(db, account.account_id, source)
        except StagingError as exc:
            logger.warning("Cycle %s staging failed: %s", cycle.cycle_id, exc)
            db.rollback()
            self._transition(db, cycle, CYCLE_STATE_STAGING_FAILED, f"{exc.reason}: {exc}")
            return PublishOutcome(
                PublishStatus.STAGING_FAILED, cycle_id=cycle.cycle_id, detail=str(exc)
            )

        cycle.content_address = entry.address
        self._transition(db, cycle, CYCLE_STATE_STAGED)
        self._transition(db, cycle, CYCLE_STATE_AWAITING_PAYMENT)
        return PublishOutcome(
            PublishStatus.AWAITING_PAYMENT,
            cycle_id=cycle.cycle_id,
            content_address=entry.address,
            payment=self.payment_instructions(entry.address),
            gateway_url=self.stager.store.gateway_url(entry.address),
        )

    def _find_cycle(
        self,
        db: Session,
        content_address: str,
        *,
        account_id: bytes | None,
        cycle_id: str | None,
    ) -> PublishCycle:
        query = db.query(PublishCycle).filter(PublishCycle.content_address == content_address)
        if account_id is not None:
            query = query.filter(PublishCycle.account_id == account_id)
        if cycle_id is not None:
            query = query.filter(PublishCycle.cycle_id == cycle_id)
        cycles = query.order_by(PublishCycle.created_at.desc()).all()
        if not cycles:
            raise NotFoundError(f"No publish cycle for {content_address}")
        for cycle in cycles:
            if cycle.state == CYCLE_STATE_AWAITING_PAYMENT:
                return cycle
        return cycles[0]

    def _claim_transaction(
        self, db: Session, transaction_ref: str, cycle_id: str
    ) -> PublishCycle | None:
        """Reserve `transaction_ref` for one cycle before the ledger is asked.

        A claim left behind by a cycle that ended without finalizing is taken
        over. Returns None once the reference belongs to `cycle_id`, otherwise
        the cycle holding it.
        """
        holder: PublishCycle | None = None
        for _ in range(3):
            claim = db.get(PaymentClaim, transaction_ref, populate_existing=True)
            if claim is None:
                db.add(PaymentClaim(transaction_ref=transaction_ref, cycle_id=cycle_id))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    continue
                return None
            if claim.cycle_id == cycle_id:
                return None

            holder = db.get(PublishCycle, claim.cycle_id, populate_existing=True)
            if holder is not None and (
                not holder.is_terminal or holder.state == CYCLE_STATE_FINALIZED
            ):
                return holder
            if self._release_claim(db, transaction_ref, claim.cycle_id):
                logger.info("Transaction %s freed from ended cycle %s", transaction_ref, claim.cycle_id)
        return holder or db.get(PublishCycle, cycle_id)

    def _release_claim(self, db: Session, transaction_ref: str, cycle_id: str) -> bool:
        result = db.execute(
            delete(PaymentClaim).where(
                PaymentClaim.transaction_ref == transaction_ref,
                PaymentClaim.cycle_id == cycle_id,
            )
        )
        db.commit()
        return result.rowcount == 1

    def _others_awaiting(self, db: Session, cycle: PublishCycle) -> bool:
        return (
            db.query(PublishCycle)
            .filter(
                PublishCycle.content_address == cycle.content_address,
                PublishCycle.state == CYCLE_STATE_AWAITING_PAYMENT,
                PublishCycle.cycle_id != cycle.cycle_id,
            )
            .first()
            is not None
        )

    async def _reject(self, db: Session, cycle: PublishCycle, reason: str) -> PublishOutcome:
        cycle_address = cycle.content_address or ""
        self._transition(db, cycle, CYCLE_STATE_REJECTED, reason)
        if self._others_awaiting(db, cycle):
            logger.info("Keeping %s staged for other awaiting cycles", cycle_address)
        else:
            try:
                await self.stager.reclaim(db, cycle_address)
            except StagingError as exc:
                logger.warning("Reclaim after rejection failed for %s: %s", cycle_address, exc)
        return PublishOutcome(
            PublishStatus.REJECTED,
            cycle_id=cycle.cycle_id,
            content_address=cycle_address,
            detail=reason,
        )

    async def confirm_publish(
        self,
        db: Session,
        content_address: str,
        transaction_ref: str,
        *,
        account_id: bytes | None = None,
        cycle_id: str | None = None,
    ) -> PublishOutcome:
        """Verify a payment and finalize the staged content on confirmation.

        Raises:
            NotFoundError: If no cycle matches the address (and account).
            PaymentError: If the transaction reference is malformed.
        """
        try:
            transaction_ref = CryptoService.validate_transaction_ref(transaction_ref)
        except ValueError as exc:
            raise PaymentError(str(exc), reason="InvalidReference") from exc

        cycle = self._find_cycle(db, content_address, account_id=account_id, cycle_id=cycle_id)
        if cycle.state in _TERMINAL_STATUS:
            return PublishOutcome(
                _TERMINAL_STATUS[cycle.state],
                cycle_id=cycle.cycle_id,
                content_address=content_address,
                detail=cycle.detail,
            )
        if cycle.state != CYCLE_STATE_AWAITING_PAYMENT:
            raise NotFoundError(f"No publish cycle awaiting payment for {content_address}")

        account = db.get(WalletAccount, cycle.account_id)
        if account is None:
            raise NotFoundError(f"No account for cycle {cycle.cycle_id}")

        holder = self._claim_transaction(db, transaction_ref, cycle.cycle_id)
        if holder is not None:
            if holder.state == CYCLE_STATE_FINALIZED:
                return await self._reject(db, cycle, "transaction_already_used")
            return PublishOutcome(
                PublishStatus.PENDING,
                cycle_id=cycle.cycle_id,
                content_address=content_address,
                detail="transaction_in_use",
            )
        proof = PaymentProof(
            transaction_ref=transaction_ref,
            claimed_signer=account.pubkey,
            claimed_amount=self.price,
            min_required_amount=self.price,
        )
        memo = content_address if self.require_memo else None
        result = await self._confirm_with_retry(proof, memo)

        if result.status is ConfirmationStatus.CONFIRMED:
            cycle.transaction_ref = transaction_ref
            try:
                outcome = await self.stager.finalize(db, content_address)
            except NotFoundError:
                self._transition(db, cycle, CYCLE_STATE_RECLAIMED, "content reclaimed before payment")
                return PublishOutcome(
                    PublishStatus.RECLAIMED,
                    cycle_id=cycle.cycle_id,
                    content_address=content_address,
                    detail="Content was reclaimed before the payment was confirmed",
                )
            except StagingError as exc:
                db.rollback()
                logger.warning("Cycle %s pin failed: %s", cycle.cycle_id, exc)
                return PublishOutcome(
                    PublishStatus.UNAVAILABLE,
                    cycle_id=cycle.cycle_id,
                    content_address=content_address,
                    detail="Store unavailable; retry later",
                )
            self._transition(db, cycle, CYCLE_STATE_FINALIZED, None)
            return PublishOutcome(
                PublishStatus.FINALIZED,
                cycle_id=cycle.cycle_id,
                content_address=content_address,
                gateway_url=self.stager.store.gateway_url(content_address),
                extra={"already_finalized": outcome is FinalizeResult.ALREADY_FINALIZED},
            )

        if result.status is ConfirmationStatus.REJECTED:
            cycle.transaction_ref = transaction_ref
            return await self._reject(db, cycle, result.reason or "rejected")

        # An unsettled reference stays free for the cycle it actually pays for.
        self._release_claim(db, transaction_ref, cycle.cycle_id)
        status = (
            PublishStatus.PENDING
            if result.status is ConfirmationStatus.PENDING
            else PublishStatus.UNAVAILABLE
        )
        return PublishOutcome(
            status,
            cycle_id=cycle.cycle_id,
            content_address=content_address,
            detail=result.reason,
        )

    async def reclaim_expired(self, db: Session, *, now: datetime | None = None) -> list[str]:
        """Reclaim expired staged content and close the cycles waiting on it."""
        reclaimed = await self.stager.sweep_expired(db, now=now)
        if reclaimed:
            cycles = (
                db.query(PublishCycle)
                .filter(
                    PublishCycle.content_address.in_(reclaimed),
                    PublishCycle.state == CYCLE_STATE_AWAITING_PAYMENT,
                )
                .all()
            )
            for cycle in cycles:
                cycle.state = CYCLE_STATE_RECLAIMED
                cycle.detail = "staging ttl expired"
            db.commit()
        return reclaimed

    def entry_status(self, db: Session, content_address: str) -> dict[str, Any]:
        entry = self.stager.get_entry(db, content_address)
        return {
            "content_address": entry.address,
            "state": entry.state,
            "size_bytes": entry.size_bytes,
            "created_at": entry.created_at,
            "expires_at": entry.expires_at,
            "finalized_at": entry.finalized_at,
            "gateway_url": self.stager.store.gateway_url(entry.address),
        }


_COORDINATOR: PublishCoordinator | None = None


def get_publish_coordinator() -> PublishCoordinator:
    """Return the process-wide coordinator bound to the shared ledger gateway."""
    global _COORDINATOR
    if _COORDINATOR is None:
        _COORDINATOR = PublishCoordinator(
            get_ledger_gateway(), ContentStager(build_content_store())
        )
    return _COORDINATOR


async def close_publish_coordinator() -> None:
    """Close the shared coordinator's store client, if one was created."""
    global _COORDINATOR
    if _COORDINATOR is not None:
        await _COORDINATOR.stager.store.close()
        _COORDINATOR = None
