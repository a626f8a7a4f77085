"""Content-addressable store clients.

The stager only relies on the ``ContentStore`` protocol: put by content,
pin, unpin, get, plus remove and contains for reclaiming. Two backends are
provided:

- ``IpfsContentStore`` talks to a Kubo node over its HTTP RPC API and stores
  each archive as a single raw block, so the CID Kubo reports equals the
  locally computed content address.
- ``FilesystemContentStore`` keeps blocks and pin markers in two directories;
  suitable for a single node and for development.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import httpx

from ledgerpin.core.settings import settings
from ledgerpin.utils.cid import compute_content_address, is_content_address

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Raised when the content store fails or answers unexpectedly."""


class ContentStore(Protocol):
    """Operations the stager needs from a content-addressable store."""

    async def put(self, data: bytes) -> str: ...

    async def pin(self, address: str) -> None: ...

    async def unpin(self, address: str) -> None: ...

    async def get(self, address: str) -> bytes: ...

    async def remove(self, address: str) -> None: ...

    async def contains(self, address: str) -> bool: ...

    def gateway_url(self, address: str) -> str | None: ...

    async def close(self) -> None: ...


def _require_address(address: str) -> str:
    if not is_content_address(address):
        raise StoreError(f"Invalid content address: {address!r}")
    return address


@dataclass(frozen=True)
class IpfsConfig:
    """Immutable configuration for the Kubo RPC API."""

    api_url: str
    gateway_url: str
    timeout_seconds: float


def load_ipfs_config() -> IpfsConfig:
    """Build configuration object from global settings."""
    return IpfsConfig(
        api_url=settings.ipfs_api_url.rstrip("/"),
        gateway_url=settings.ipfs_gateway_url.rstrip("/"),
        timeout_seconds=float(settings.ipfs_timeout_seconds),
    )


class IpfsContentStore:
    """Kubo HTTP RPC client implementing ``ContentStore``."""

    def __init__(
        self,
        config: IpfsConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_ipfs_config()
        self._client = httpx.AsyncClient(
            base_url=self.config.api_url,
            timeout=httpx.Timeout(self.config.timeout_seconds),
            transport=transport,
        )

    def gateway_url(self, address: str) -> str:
        return f"{self.config.gateway_url}/ipfs/{address}"

    async def _call(
        self,
        command: str,
        *,
        params: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> httpx.Response:
        # Every Kubo RPC endpoint is POST-only.
        try:
            response = await self._client.post(f"/api/v0/{command}", params=params, files=files)
        except httpx.HTTPError as exc:
            raise StoreError(f"IPFS {command} failed: {exc}") from exc
        if response.status_code != httpx.codes.OK:
            message = response.text[:200]
            try:
                message = response.json().get("Message", message)
            except ValueError:
                pass
            raise StoreError(f"IPFS {command} responded {response.status_code}: {message}")
        return response

    async def put(self, data: bytes) -> str:
        response = await self._call(
            "block/put",
            params={
                "cid-codec": "raw",
                "mhtype": "sha2-256",
                "mhlen": 32,
                "pin": "false",
                "allow-big-block": "true",
            },
            files={"file": ("archive.tar", data, "application/octet-stream")},
        )
        key = str(response.json().get("Key") or "").strip()
        if not key:
            raise StoreError("IPFS block/put returned no key")
        return key

    async def pin(self, address: str) -> None:
        await self._call("pin/add", params={"arg": _require_address(address)})

    async def unpin(self, address: str) -> None:
        try:
            await self._call("pin/rm", params={"arg": _require_address(address)})
        except StoreError as exc:
            if "not pinned" in str(exc):
                return
            raise

    async def get(self, address: str) -> bytes:
        response = await self._call("block/get", params={"arg": _require_address(address)})
        return response.content

    async def remove(self, address: str) -> None:
        await self.unpin(address)
        response = await self._call(
            "block/rm", params={"arg": _require_address(address), "force": "true"}
        )
        body = response.text.strip()
        if body:
            try:
                error = response.json().get("Error")
            except ValueError:
                error = None
            if error:
                raise StoreError(f"IPFS block/rm failed: {error}")

    async def contains(self, address: str) -> bool:
        try:
            await self._call(
                "block/stat", params={"arg": _require_address(address), "offline": "true"}
            )
        except StoreError:
            return False
        return True

    async def close(self) -> None:
        await self._client.aclose()


class FilesystemContentStore:
    """Blocks stored as files named by address, pins as marker files."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)
        self.blocks_dir = self.root / "blocks"
        self.pins_dir = self.root / "pins"
        self.blocks_dir.mkdir(parents=True, exist_ok=True)
        self.pins_dir.mkdir(parents=True, exist_ok=True)

    def _block(self, address: str) -> Path:
        return self.blocks_dir / _require_address(address)

    def _pin(self, address: str) -> Path:
        return self.pins_dir / _require_address(address)

    def _write_block(self, address: str, data: bytes) -> None:
        target = self._block(address)
        if target.exists():
            return
        fd, tmp_name = tempfile.mkstemp(dir=self.blocks_dir, prefix=".put-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def put(self, data: bytes) -> str:
        address = compute_content_address(data)
        try:
            await asyncio.to_thread(self._write_block, address, data)
        except OSError as exc:
            raise StoreError(f"Failed to write block {address}: {exc}") from exc
        return address

    async def pin(self, address: str) -> None:
        if not self._block(address).exists():
            raise StoreError(f"Cannot pin missing block {address}")
        self._pin(address).touch(exist_ok=True)

    async def unpin(self, address: str) -> None:
        self._pin(address).unlink(missing_ok=True)

    async def get(self, address: str) -> bytes:
        try:
            return await asyncio.to_thread(self._block(address).read_bytes)
        except FileNotFoundError as exc:
            raise StoreError(f"Block not found: {address}") from exc

    async def remove(self, address: str) -> None:
        await self.unpin(address)
        try:
            self._block(address).unlink(missing_ok=True)
        except OSError as exc:
            raise StoreError(f"Failed to remove block {address}: {exc}") from exc

    async def contains(self, address: str) -> bool:
        return self._block(address).exists()

    def is_pinned(self, address: str) -> bool:
        return self._pin(address).exists()

    def gateway_url(self, address: str) -> str | None:
        """Filesystem blocks have no public URL."""
        return None

    async def close(self) -> None:
        return None


def build_content_store() -> ContentStore:
    """Create the store selected by ``STORE_BACKEND``."""
    backend = settings.store_backend.lower()
    if backend == "ipfs":
        return IpfsContentStore()
    if backend == "filesystem":
        return FilesystemContentStore(settings.store_root)
    raise ValueError(f"Unknown store backend: {settings.store_backend!r}")
