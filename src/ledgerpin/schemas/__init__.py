"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .publish import (
    ConfirmPublishRequest,
    PaymentInstructionsResponse,
    PublishChallengeRequest,
    PublishChallengeResponse,
    PublishOutcomeResponse,
    StagingEntryResponse,
    StartPublishRequest,
    TreeRef,
)

__all__ = [
    "PublishChallengeRequest", "PublishChallengeResponse",
    "StartPublishRequest", "ConfirmPublishRequest", "TreeRef",
    "PaymentInstructionsResponse", "PublishOutcomeResponse",
    "StagingEntryResponse",
]
