"""Publish endpoints for the LedgerPin API."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from ledgerpin.core.errors import AuthError, NotFoundError, PaymentError
from ledgerpin.core.security import verify_signature
from ledgerpin.core.settings import LAMPORTS_PER_SOL, settings
from ledgerpin.db.session import get_db
from ledgerpin.schemas.publish import (
    ConfirmPublishRequest,
    PaymentInstructionsResponse,
    PublishChallengeRequest,
    PublishChallengeResponse,
    PublishOutcomeResponse,
    SignedRequest,
    StagingEntryResponse,
    StartPublishRequest,
)
from ledgerpin.services.crypto import CryptoService
from ledgerpin.services.identity import AuthChallenge
from ledgerpin.services.publish import (
    PublishCoordinator,
    PublishOutcome,
    PublishStatus,
    get_publish_coordinator,
)
from ledgerpin.services.replay import ReplayProtectionService, get_replay_service
from ledgerpin.services.tree import TreeSource, TreeSourceError, open_tree_source

router = APIRouter(prefix="/publish", tags=["publish"])
crypto_service = CryptoService()

STATUS_CODES: dict[PublishStatus, int] = {
    PublishStatus.AWAITING_PAYMENT: status.HTTP_201_CREATED,
    PublishStatus.FINALIZED: status.HTTP_200_OK,
    PublishStatus.PENDING: status.HTTP_202_ACCEPTED,
    PublishStatus.INSUFFICIENT_FUNDS: status.HTTP_402_PAYMENT_REQUIRED,
    PublishStatus.REJECTED: status.HTTP_402_PAYMENT_REQUIRED,
    PublishStatus.RECLAIMED: status.HTTP_410_GONE,
    PublishStatus.STAGING_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
    PublishStatus.UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_coordinator_dep() -> PublishCoordinator:
    return get_publish_coordinator()


def get_replay_service_dep() -> ReplayProtectionService:
    return get_replay_service()


def get_repository_root() -> str:
    """Directory that tree references are resolved under."""
    return settings.repository_root


SessionDep = Annotated[Session, Depends(get_db)]
CoordinatorDep = Annotated[PublishCoordinator, Depends(get_coordinator_dep)]
ReplayServiceDep = Annotated[ReplayProtectionService, Depends(get_replay_service_dep)]
RepositoryRootDep = Annotated[str, Depends(get_repository_root)]


def _bad_credentials() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=AuthError.reason,
    )


def _authorize(
    intent: str,
    payload: SignedRequest,
    replay_service: ReplayProtectionService,
) -> AuthChallenge:
    """Check the signed challenge and consume its nonce.

    Every decoding, challenge or signature failure yields the same 401.
    """
    try:
        public_key = crypto_service.decode_public_key(payload.pubkey)
        signature = crypto_service.decode_signature(payload.signature)
        nonce_hex = crypto_service.validate_publish_challenge(intent, public_key, payload.message)
    except ValueError as err:
        raise _bad_credentials() from err

    challenge = AuthChallenge(
        message=payload.message.encode("utf-8"),
        public_key=public_key,
        signature=signature,
    )
    if not verify_signature(challenge.public_key, challenge.message, challenge.signature):
        raise _bad_credentials()

    if not replay_service.register_replay(
        public_key.hex(), nonce_hex, settings.challenge_ttl_seconds
    ):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Challenge has already been used",
        )
    return challenge


def _to_response(outcome: PublishOutcome) -> PublishOutcomeResponse:
    payment = None
    if outcome.payment is not None:
        payment = PaymentInstructionsResponse(
            recipient=outcome.payment.recipient,
            amount_lamports=outcome.payment.amount_lamports,
            amount_sol=outcome.payment.amount_lamports / LAMPORTS_PER_SOL,
            memo=outcome.payment.memo,
        )
    return PublishOutcomeResponse(
        status=outcome.status.value,
        cycle_id=outcome.cycle_id,
        content_address=outcome.content_address,
        detail=outcome.detail,
        payment=payment,
        gateway_url=outcome.gateway_url,
    )


@router.post("/challenge", response_model=PublishChallengeResponse)
async def request_challenge(payload: PublishChallengeRequest) -> PublishChallengeResponse:
    """Issue a short-lived message the wallet must sign for one publish step."""
    try:
        public_key = crypto_service.decode_public_key(payload.pubkey)
    except ValueError as err:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(err),
        ) from err

    challenge = crypto_service.issue_publish_challenge(payload.intent, public_key)
    return PublishChallengeResponse(message=challenge.message, expires_at=challenge.expires_at)


@router.post("/start", response_model=PublishOutcomeResponse)
async def start_publish(
    payload: StartPublishRequest,
    response: Response,
    db: SessionDep,
    coordinator: CoordinatorDep,
    replay_service: ReplayServiceDep,
    repository_root: RepositoryRootDep,
) -> PublishOutcomeResponse:
    """Check the wallet balance and stage the referenced tree for payment.

    Returns:
        The cycle outcome; ``AwaitingPayment`` carries payment instructions
    """
    challenge = _authorize("start", payload, replay_service)

    try:
        source: TreeSource = open_tree_source(
            repository_root, payload.tree_ref.repository, payload.tree_ref.revision
        )
    except TreeSourceError as err:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(err),
        ) from err

    try:
        outcome = await coordinator.start_publish(
            db,
            challenge,
            source,
            tree_ref=f"{payload.tree_ref.repository}@{payload.tree_ref.revision}",
        )
    except AuthError as err:
        raise _bad_credentials() from err

    response.status_code = STATUS_CODES[outcome.status]
    return _to_response(outcome)


@router.post("/confirm", response_model=PublishOutcomeResponse)
async def confirm_publish(
    payload: ConfirmPublishRequest,
    response: Response,
    db: SessionDep,
    coordinator: CoordinatorDep,
    replay_service: ReplayServiceDep,
) -> PublishOutcomeResponse:
    """Verify a payment transaction and pin the staged content when it checks out."""
    challenge = _authorize("confirm", payload, replay_service)

    try:
        account = coordinator.resolver.authenticate(db, challenge)
        outcome = await coordinator.confirm_publish(
            db,
            payload.content_address,
            payload.transaction_ref,
            account_id=account.account_id,
            cycle_id=payload.cycle_id,
        )
    except AuthError as err:
        raise _bad_credentials() from err
    except NotFoundError as err:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(err),
        ) from err
    except PaymentError as err:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(err),
        ) from err

    response.status_code = STATUS_CODES[outcome.status]
    return _to_response(outcome)


@router.get("/{content_address}", response_model=StagingEntryResponse)
async def get_publish_status(
    content_address: str,
    db: SessionDep,
    coordinator: CoordinatorDep,
) -> StagingEntryResponse:
    """Return the lifecycle state of a content address."""
    try:
        entry = coordinator.entry_status(db, content_address)
    except NotFoundError as err:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(err),
        ) from err
    return StagingEntryResponse(**entry)
