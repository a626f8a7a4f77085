from nacl.signing import SigningKey

from ledgerpin.core.security import verify_signature


def _signed(message: bytes) -> tuple[bytes, bytes]:
    key = SigningKey.generate()
    return key.verify_key.encode(), key.sign(message).signature


def test_verify_signature_accepts_valid_signature() -> None:
    public_key, signature = _signed(b"publish me")
    assert verify_signature(public_key, b"publish me", signature) is True


def test_verify_signature_accepts_empty_message() -> None:
    public_key, signature = _signed(b"")
    assert verify_signature(public_key, b"", signature) is True


def test_verify_signature_rejects_any_flipped_bit() -> None:
    message = b"publish me"
    public_key, signature = _signed(message)

    tampered_message = bytes([message[0] ^ 0x01]) + message[1:]
    tampered_signature = bytes([signature[0] ^ 0x80]) + signature[1:]
    tampered_key = public_key[:-1] + bytes([public_key[-1] ^ 0x01])

    assert verify_signature(public_key, tampered_message, signature) is False
    assert verify_signature(public_key, message, tampered_signature) is False
    assert verify_signature(tampered_key, message, signature) is False


def test_verify_signature_rejects_wrong_key() -> None:
    _, signature = _signed(b"msg")
    other_key = SigningKey.generate().verify_key.encode()
    assert verify_signature(other_key, b"msg", signature) is False


def test_verify_signature_rejects_bad_lengths() -> None:
    public_key, signature = _signed(b"msg")
    assert verify_signature(public_key[:31], b"msg", signature) is False
    assert verify_signature(public_key + b"\x00", b"msg", signature) is False
    assert verify_signature(public_key, b"msg", signature[:63]) is False
    assert verify_signature(b"", b"msg", b"") is False


def test_verify_signature_rejects_non_bytes() -> None:
    """Ensure verify_signature returns False when given hex strings instead of bytes."""
    public_key, signature = _signed(b"msg")
    assert verify_signature(public_key.hex(), b"msg", signature.hex()) is False  # type: ignore[arg-type]
