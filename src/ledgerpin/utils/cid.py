"""Content addresses in CIDv1 form.

An address is the CIDv1 of the canonical archive bytes using the ``raw``
codec and a sha2-256 multihash, rendered in lowercase base32 with the ``b``
multibase prefix (``bafkrei...``). This is the same CID an IPFS node returns
from ``block/put`` for the same bytes, so a store can be checked against the
locally computed value.
"""

from __future__ import annotations

import base64
import hashlib
import re

CID_VERSION = 0x01
RAW_CODEC = 0x55
SHA2_256 = 0x12
SHA2_256_LENGTH = 0x20

_PREFIX = bytes((CID_VERSION, RAW_CODEC, SHA2_256, SHA2_256_LENGTH))
_CID_RE = re.compile(r"^b[a-z2-7]{58}$")


def compute_content_address(data: bytes) -> str:
    """Return the content address of `data`."""
    digest = hashlib.sha256(data).digest()
    encoded = base64.b32encode(_PREFIX + digest).decode("ascii").rstrip("=").lower()
    return f"b{encoded}"


def decode_content_address(address: str) -> bytes:
    """Return the sha2-256 digest embedded in `address`.

    Raises:
        ValueError: If the address is not a raw sha2-256 CIDv1.
    """
    if not is_content_address(address):
        raise ValueError("Invalid content address format")
    body = address[1:].upper()
    padding = "=" * (-len(body) % 8)
    raw = base64.b32decode(body + padding)
    if raw[: len(_PREFIX)] != _PREFIX:
        raise ValueError("Content address is not a raw sha2-256 CID")
    return raw[len(_PREFIX):]


def is_content_address(address: str) -> bool:
    """Return True if `address` looks like an address this service issues."""
    return bool(address) and _CID_RE.match(address) is not None
