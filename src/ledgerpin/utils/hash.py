"""Hashing helpers built on BLAKE3."""

from __future__ import annotations

from blake3 import blake3


def blake3_digest(data: bytes) -> bytes:
    """Return the byte digest of the supplied data."""
    return blake3(data).digest()


def blake3_derive_key(context: str, key_material: bytes) -> bytes:
    """Derive a 32-byte subkey from `key_material` for one named purpose."""
    return blake3(key_material, derive_key_context=context).digest()


def blake3_mac(key: bytes, data: bytes) -> bytes:
    """Return the keyed-mode BLAKE3 tag of `data` under a 32-byte `key`."""
    return blake3(data, key=key).digest()
