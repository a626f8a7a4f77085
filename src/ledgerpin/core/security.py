"""Signature utilities built on Ed25519 primitives."""
from __future__ import annotations

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import VerifyKey

PUBLIC_KEY_BYTES = 32
SIGNATURE_BYTES = 64


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """Verify an Ed25519 signature.

    Args:
        public_key: Raw 32-byte public key.
        message: Exact bytes that were signed by the wallet. May be empty.
        signature: Raw 64-byte detached signature.

    Returns:
        True if the signature is valid for `message` under `public_key`; False
        for a wrong signature and for any malformed input.
    """
    if not isinstance(public_key, bytes | bytearray) or len(public_key) != PUBLIC_KEY_BYTES:
        return False
    if not isinstance(signature, bytes | bytearray) or len(signature) != SIGNATURE_BYTES:
        return False
    if not isinstance(message, bytes | bytearray):
        return False
    try:
        VerifyKey(bytes(public_key)).verify(bytes(message), bytes(signature))
    except (BadSignatureError, CryptoError, ValueError, TypeError):
        return False
    return True
