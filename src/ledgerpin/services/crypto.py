"""Cryptographic services for wallet authentication."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass

import base58
from nacl.signing import SigningKey

from ledgerpin.core.security import PUBLIC_KEY_BYTES, SIGNATURE_BYTES
from ledgerpin.core.settings import settings
from ledgerpin.utils.hash import blake3_derive_key, blake3_mac

CHALLENGE_PREFIX = "ledgerpin"
CHALLENGE_INTENTS = ("start", "confirm")
MAC_KEY_CONTEXT = "ledgerpin publish challenge mac v1"
NONCE_BYTES = 16
TRANSACTION_REF_BYTES = 64


@dataclass(frozen=True)
class PublishChallenge:
    """Server-issued message a wallet signs to authorize one publish step."""

    message: str
    nonce_hex: str
    issued_at: int
    expires_at: int


class CryptoService:
    """Service handling cryptographic operations."""

    @staticmethod
    def _decode_fixed(data: str, size: int, label: str) -> bytes:
        cleaned = data.strip()
        if len(cleaned) == size * 2:
            try:
                return bytes.fromhex(cleaned)
            except ValueError:
                pass
        try:
            result = base58.b58decode(cleaned)
        except ValueError as err:
            raise ValueError(f"Invalid {label} encoding: {err}") from err
        if len(result) != size:
            raise ValueError(f"{label.capitalize()} must be {size} bytes")
        return result

    @staticmethod
    def decode_public_key(encoded: str) -> bytes:
        """Decode a wallet public key given as base58 (Solana) or hex."""
        return CryptoService._decode_fixed(encoded, PUBLIC_KEY_BYTES, "public key")

    @staticmethod
    def decode_signature(encoded: str) -> bytes:
        """Decode an Ed25519 signature given as base58 or hex."""
        return CryptoService._decode_fixed(encoded, SIGNATURE_BYTES, "signature")

    @staticmethod
    def validate_transaction_ref(transaction_ref: str) -> str:
        """Return the normalized transaction signature or raise ValueError."""
        cleaned = transaction_ref.strip()
        try:
            raw = base58.b58decode(cleaned)
        except ValueError as err:
            raise ValueError("Transaction reference is not base58") from err
        if len(raw) != TRANSACTION_REF_BYTES:
            raise ValueError("Transaction reference must encode 64 bytes")
        return cleaned

    @staticmethod
    def generate_wallet_key_pair() -> tuple[str, str]:
        """Generate a new Ed25519 key pair.

        Returns:
            Tuple of (private_key_hex, public_key_base58)
        """
        signing_key = SigningKey.generate()
        public_b58 = base58.b58encode(signing_key.verify_key.encode()).decode("ascii")
        return signing_key.encode().hex(), public_b58

    @staticmethod
    def sign_message(private_key_bytes: bytes, message: bytes) -> bytes:
        """Sign a message with a raw Ed25519 seed and return the signature."""
        try:
            return SigningKey(private_key_bytes).sign(message).signature
        except (ValueError, TypeError) as err:
            raise ValueError(f"Invalid private key: {err}") from err

    @staticmethod
    def _challenge_mac(intent: str, public_key: bytes, nonce_hex: str, issued_at: int) -> str:
        key = blake3_derive_key(MAC_KEY_CONTEXT, str(settings.secret_key).encode())
        payload = b"|".join(
            (intent.encode(), public_key, nonce_hex.encode(), str(issued_at).encode())
        )
        return blake3_mac(key, payload).hex()

    @staticmethod
    def issue_publish_challenge(
        intent: str,
        public_key: bytes,
        *,
        now: int | None = None,
    ) -> PublishChallenge:
        """Generate a MAC-bound challenge message for a publish step.

        Args:
            intent: Either "start" or "confirm"
            public_key: Raw wallet public key the challenge is bound to
            now: Override for the issue timestamp (unix seconds)
        """
        if intent not in CHALLENGE_INTENTS:
            raise ValueError("Challenge intent must be 'start' or 'confirm'")

        issued_at = int(time.time()) if now is None else int(now)
        nonce_hex = secrets.token_bytes(NONCE_BYTES).hex()
        mac = CryptoService._challenge_mac(intent, public_key, nonce_hex, issued_at)
        message = f"{CHALLENGE_PREFIX}:{intent}:{nonce_hex}:{issued_at}:{mac}"
        return PublishChallenge(
            message=message,
            nonce_hex=nonce_hex,
            issued_at=issued_at,
            expires_at=issued_at + settings.challenge_ttl_seconds,
        )

    @staticmethod
    def validate_publish_challenge(
        intent: str,
        public_key: bytes,
        message: str,
        *,
        now: int | None = None,
    ) -> str:
        """Validate a previously issued challenge message.

        Returns:
            The challenge nonce (hex encoded) if validation succeeds

        Raises:
            ValueError: If the message is malformed, forged, expired or was
                issued for a different key or intent
        """
        parts = message.split(":")
        if len(parts) != 5 or parts[0] != CHALLENGE_PREFIX:
            raise ValueError("Malformed challenge message")

        _, msg_intent, nonce_hex, issued_raw, supplied_mac = parts
        if msg_intent != intent:
            raise ValueError("Challenge was issued for a different intent")
        try:
            issued_at = int(issued_raw)
        except ValueError as err:
            raise ValueError("Malformed challenge timestamp") from err

        expected_mac = CryptoService._challenge_mac(intent, public_key, nonce_hex, issued_at)
        if not secrets.compare_digest(supplied_mac, expected_mac):
            raise ValueError("Challenge signature mismatch")

        current = int(time.time()) if now is None else int(now)
        if current > issued_at + settings.challenge_ttl_seconds:
            raise ValueError("Challenge has expired")
        if issued_at > current + 60:
            raise ValueError("Challenge issued in the future")
        return nonce_hex
