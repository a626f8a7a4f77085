import json
from pathlib import Path

import httpx
import pytest

from ledgerpin.services.store import (
    FilesystemContentStore,
    IpfsConfig,
    IpfsContentStore,
    StoreError,
)
from ledgerpin.utils.cid import compute_content_address

DATA = b"canonical archive bytes"
ADDRESS = compute_content_address(DATA)


@pytest.mark.asyncio
async def test_filesystem_store_lifecycle(tmp_path: Path) -> None:
    store = FilesystemContentStore(tmp_path)

    assert await store.put(DATA) == ADDRESS
    assert await store.contains(ADDRESS)
    assert await store.get(ADDRESS) == DATA
    assert not store.is_pinned(ADDRESS)

    await store.pin(ADDRESS)
    assert store.is_pinned(ADDRESS)

    await store.remove(ADDRESS)
    assert not await store.contains(ADDRESS)
    assert not store.is_pinned(ADDRESS)
    with pytest.raises(StoreError):
        await store.get(ADDRESS)


@pytest.mark.asyncio
async def test_filesystem_store_put_is_idempotent(tmp_path: Path) -> None:
    store = FilesystemContentStore(tmp_path)
    await store.put(DATA)
    await store.put(DATA)
    assert [p.name for p in (tmp_path / "blocks").iterdir()] == [ADDRESS]


@pytest.mark.asyncio
async def test_filesystem_store_refuses_to_pin_missing_block(tmp_path: Path) -> None:
    store = FilesystemContentStore(tmp_path)
    with pytest.raises(StoreError):
        await store.pin(ADDRESS)


@pytest.mark.asyncio
async def test_filesystem_store_rejects_path_like_addresses(tmp_path: Path) -> None:
    store = FilesystemContentStore(tmp_path)
    with pytest.raises(StoreError):
        await store.get("../../etc/passwd")


class FakeKubo:
    """Minimal Kubo RPC emulation keyed on the request path."""

    def __init__(self) -> None:
        self.blocks: dict[str, bytes] = {}
        self.pins: set[str] = set()
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        command = request.url.path.removeprefix("/api/v0/")
        arg = request.url.params.get("arg")
        if request.method != "POST":
            return httpx.Response(405)
        if command == "block/put":
            body = request.read()
            # The multipart body wraps the archive; the fake trusts the test data.
            assert DATA in body
            self.blocks[ADDRESS] = DATA
            return httpx.Response(200, json={"Key": ADDRESS, "Size": len(DATA)})
        if command == "pin/add":
            if arg not in self.blocks:
                return httpx.Response(500, json={"Message": "block not found", "Code": 0})
            self.pins.add(arg)
            return httpx.Response(200, json={"Pins": [arg]})
        if command == "pin/rm":
            if arg not in self.pins:
                return httpx.Response(500, json={"Message": "not pinned or pinned indirectly"})
            self.pins.discard(arg)
            return httpx.Response(200, json={"Pins": [arg]})
        if command == "block/get":
            if arg not in self.blocks:
                return httpx.Response(500, json={"Message": "block not found"})
            return httpx.Response(200, content=self.blocks[arg])
        if command == "block/rm":
            self.blocks.pop(arg, None)
            return httpx.Response(200, content=json.dumps({"Hash": arg}).encode())
        if command == "block/stat":
            if arg not in self.blocks:
                return httpx.Response(500, json={"Message": "block not found"})
            return httpx.Response(200, json={"Key": arg, "Size": len(self.blocks[arg])})
        return httpx.Response(404, text="404 page not found")


def _ipfs_store(kubo: FakeKubo) -> IpfsContentStore:
    config = IpfsConfig(api_url="http://kubo.test", gateway_url="https://gw.test", timeout_seconds=1.0)
    return IpfsContentStore(config, transport=httpx.MockTransport(kubo))


@pytest.mark.asyncio
async def test_ipfs_store_put_requests_unpinned_raw_block() -> None:
    kubo = FakeKubo()
    store = _ipfs_store(kubo)
    try:
        assert await store.put(DATA) == ADDRESS
    finally:
        await store.close()

    params = kubo.requests[0].url.params
    assert params["cid-codec"] == "raw"
    assert params["mhtype"] == "sha2-256"
    assert params["pin"] == "false"
    assert kubo.pins == set()


@pytest.mark.asyncio
async def test_ipfs_store_pin_get_remove() -> None:
    kubo = FakeKubo()
    store = _ipfs_store(kubo)
    try:
        await store.put(DATA)
        await store.pin(ADDRESS)
        assert ADDRESS in kubo.pins
        assert await store.get(ADDRESS) == DATA
        assert await store.contains(ADDRESS)

        await store.remove(ADDRESS)
        assert ADDRESS not in kubo.pins
        assert not await store.contains(ADDRESS)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_ipfs_store_remove_unpinned_block() -> None:
    kubo = FakeKubo()
    store = _ipfs_store(kubo)
    try:
        await store.put(DATA)
        await store.remove(ADDRESS)
        assert ADDRESS not in kubo.blocks
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_ipfs_store_surfaces_node_errors() -> None:
    kubo = FakeKubo()
    store = _ipfs_store(kubo)
    try:
        with pytest.raises(StoreError, match="block not found"):
            await store.pin(ADDRESS)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_ipfs_store_network_failure_is_store_error() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    config = IpfsConfig(api_url="http://kubo.test", gateway_url="https://gw.test", timeout_seconds=1.0)
    store = IpfsContentStore(config, transport=httpx.MockTransport(refuse))
    try:
        with pytest.raises(StoreError):
            await store.put(DATA)
    finally:
        await store.close()


def test_ipfs_gateway_url() -> None:
    config = IpfsConfig(api_url="http://kubo.test", gateway_url="https://gw.test", timeout_seconds=1.0)
    store = IpfsContentStore(config, transport=httpx.MockTransport(FakeKubo()))
    assert store.gateway_url(ADDRESS) == f"https://gw.test/ipfs/{ADDRESS}"
