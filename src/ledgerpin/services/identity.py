"""Wallet-based authentication and lazy account creation."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerpin.core.errors import AuthError
from ledgerpin.core.security import verify_signature
from ledgerpin.models import WalletAccount
from ledgerpin.utils.hash import blake3_digest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthChallenge:
    """A signed message presented once for verification; never persisted."""

    message: bytes
    public_key: bytes
    signature: bytes


def derive_account_id(public_key: bytes) -> bytes:
    """Return the stable account identifier for a wallet public key."""
    return blake3_digest(public_key)


class WalletIdentityResolver:
    """Authenticate wallet signatures and map keys to accounts."""

    def authenticate(self, db: Session, challenge: AuthChallenge) -> WalletAccount:
        """Return the account for a correctly signed challenge.

        The account is created on first successful authentication. Any failure
        raises the same ``AuthError``.
        """
        if not verify_signature(challenge.public_key, challenge.message, challenge.signature):
            raise AuthError()
        return self.get_or_create(db, challenge.public_key)

    def get_or_create(self, db: Session, public_key: bytes) -> WalletAccount:
        account = db.query(WalletAccount).filter(WalletAccount.pubkey == public_key).first()
        if account is not None:
            return account

        account = WalletAccount(account_id=derive_account_id(public_key), pubkey=public_key)
        db.add(account)
        try:
            db.commit()
        except IntegrityError:
            # A concurrent first login inserted the same key; keep theirs.
            db.rollback()
            return db.query(WalletAccount).filter(WalletAccount.pubkey == public_key).one()
        logger.info("Created wallet account %s", account.account_id_hex)
        return account
