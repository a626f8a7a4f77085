"""Publish-related Pydantic schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class PublishChallengeRequest(BaseModel):
    """Request to obtain a message to sign before a publish step."""

    pubkey: str = Field(..., description="Wallet public key, base58 or hex (32 bytes)")
    intent: Literal["start", "confirm"] = Field(..., description="Publish step to authorize")


class PublishChallengeResponse(BaseModel):
    """Challenge message the wallet must sign."""

    message: str = Field(..., description="Exact UTF-8 message to sign")
    expires_at: int = Field(..., description="Unix timestamp after which the message is refused")


class SignedRequest(BaseModel):
    """Wallet proof shared by all state-changing publish requests."""

    pubkey: str = Field(..., description="Wallet public key, base58 or hex (32 bytes)")
    signature: str = Field(..., description="Ed25519 signature over message, base58 or hex")
    message: str = Field(..., description="Challenge message previously issued by the server")


class TreeRef(BaseModel):
    """Repository snapshot to publish."""

    repository: str = Field(..., min_length=1, description="Repository path like owner/name")
    revision: str = Field("HEAD", min_length=1, description="Git revision for git repositories")


class StartPublishRequest(SignedRequest):
    tree_ref: TreeRef


class ConfirmPublishRequest(SignedRequest):
    content_address: str = Field(..., description="Address returned by the start step")
    transaction_ref: str = Field(..., description="Base58 ledger transaction signature")
    cycle_id: str | None = Field(None, description="Cycle to confirm; newest awaiting if omitted")


class PaymentInstructionsResponse(BaseModel):
    """Where and how much to pay to finalize a staged address."""

    recipient: str
    amount_lamports: int
    amount_sol: float
    memo: str | None = None


class PublishOutcomeResponse(BaseModel):
    """Result of a start or confirm step."""

    status: str
    cycle_id: str | None = None
    content_address: str | None = None
    detail: str | None = None
    payment: PaymentInstructionsResponse | None = None
    gateway_url: str | None = None


class StagingEntryResponse(BaseModel):
    """Current lifecycle state of a content address."""

    content_address: str
    state: str
    size_bytes: int
    created_at: datetime
    expires_at: datetime
    finalized_at: datetime | None = None
    gateway_url: str | None = None

    model_config = ConfigDict(from_attributes=True)
