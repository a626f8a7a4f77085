# tests/conftest.py
from __future__ import annotations

import asyncio
import os
from collections.abc import Generator, Iterator
from dataclasses import dataclass, field
from typing import Any

import base58
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from nacl.signing import SigningKey
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SWEEP_ENABLED", "false")
os.environ.setdefault("STORE_BACKEND", "filesystem")

from ledgerpin.db.session import Base
from ledgerpin.db.session import get_db as app_get_session
from ledgerpin.main import app as fastapi_app
from ledgerpin.services.identity import AuthChallenge
from ledgerpin.services.ledger import (
    ConfirmationStatus,
    LedgerConfig,
    LedgerUnavailableError,
    TransactionConfirmation,
)
from ledgerpin.services.stager import ContentStager
from ledgerpin.services.store import StoreError
from ledgerpin.services.tree import TreeEntry, canonical_archive
from ledgerpin.utils.backoff import BackoffPolicy
from ledgerpin.utils.cid import compute_content_address

TEST_DB_URL = "sqlite://"
RECIPIENT = base58.b58encode(b"\x07" * 32).decode("ascii")
SOL = 1_000_000_000

FAST_BACKOFF = BackoffPolicy(
    base_delay=0.0, factor=1.0, max_delay=0.0, max_attempts=3, max_wait=1.0
)


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(engine: Engine, session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()

        # Ensure each test sees a clean database even though the code commits.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture(autouse=True)
def override_session_dependency(app: FastAPI, db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


# --- wallets -----------------------------------------------------------------


@dataclass
class Wallet:
    signing_key: SigningKey

    @property
    def public_key(self) -> bytes:
        return self.signing_key.verify_key.encode()

    @property
    def address(self) -> str:
        return base58.b58encode(self.public_key).decode("ascii")

    def sign(self, message: bytes) -> bytes:
        return self.signing_key.sign(message).signature

    def challenge(self, message: bytes = b"ledgerpin:test") -> AuthChallenge:
        return AuthChallenge(message=message, public_key=self.public_key, signature=self.sign(message))


@pytest.fixture()
def wallet() -> Wallet:
    return Wallet(SigningKey.generate())


@pytest.fixture()
def other_wallet() -> Wallet:
    return Wallet(SigningKey.generate())


def new_transaction_ref() -> str:
    return base58.b58encode(os.urandom(64)).decode("ascii")


# --- content -----------------------------------------------------------------


class StaticTreeSource:
    """In-memory tree used where the origin of the files does not matter."""

    def __init__(self, files: dict[str, bytes], label: str = "static") -> None:
        self.files = files
        self.label = label

    def describe(self) -> str:
        return f"static:{self.label}"

    def read_archive(self) -> bytes:
        return canonical_archive(TreeEntry(path=p, data=d) for p, d in self.files.items())


@pytest.fixture()
def tree_source() -> StaticTreeSource:
    return StaticTreeSource({"README.md": b"# hello\n", "src/main.py": b"print('hi')\n"})


class RecordingStore:
    """In-memory ``ContentStore`` counting every mutation."""

    def __init__(self) -> None:
        self.blocks: dict[str, bytes] = {}
        self.pinned: set[str] = set()
        self.put_calls = 0
        self.pin_calls = 0
        self.remove_calls = 0
        self.fail_put = False
        self.fail_pin = False
        self.fail_remove = False
        self.wrong_address: str | None = None
        self.yield_after_pin = False
        self.closed = False

    async def put(self, data: bytes) -> str:
        self.put_calls += 1
        if self.fail_put:
            raise StoreError("disk full")
        address = compute_content_address(data)
        if self.wrong_address is not None:
            self.blocks[self.wrong_address] = data
            return self.wrong_address
        self.blocks[address] = data
        return address

    async def pin(self, address: str) -> None:
        self.pin_calls += 1
        if self.fail_pin:
            raise StoreError("pin refused")
        if address not in self.blocks:
            raise StoreError(f"missing block {address}")
        self.pinned.add(address)
        if self.yield_after_pin:
            await asyncio.sleep(0)

    async def unpin(self, address: str) -> None:
        self.pinned.discard(address)

    async def get(self, address: str) -> bytes:
        try:
            return self.blocks[address]
        except KeyError as exc:
            raise StoreError(f"missing block {address}") from exc

    async def remove(self, address: str) -> None:
        self.remove_calls += 1
        if self.fail_remove:
            raise StoreError("remove refused")
        self.pinned.discard(address)
        self.blocks.pop(address, None)

    async def contains(self, address: str) -> bool:
        return address in self.blocks

    def gateway_url(self, address: str) -> str:
        return f"https://gw.test/ipfs/{address}"

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture()
def stager(store: RecordingStore) -> ContentStager:
    return ContentStager(store, ttl_seconds=3600)


# --- ledger ------------------------------------------------------------------


@dataclass
class FakeLedgerGateway:
    """Scriptable stand-in for ``LedgerGateway``.

    ``balances`` maps raw public keys to lamports. ``balance_errors`` and
    ``confirmations`` are consumed front to back; once empty, the balance is
    read from ``balances`` and confirmations repeat ``default_confirmation``.
    """

    config: LedgerConfig = field(
        default_factory=lambda: LedgerConfig(
            rpc_url="http://ledger.test", timeout_seconds=1.0, payment_recipient=RECIPIENT
        )
    )
    balances: dict[bytes, int] = field(default_factory=dict)
    balance_errors: list[Exception] = field(default_factory=list)
    confirmations: list[TransactionConfirmation] = field(default_factory=list)
    default_confirmation: TransactionConfirmation = field(
        default_factory=lambda: TransactionConfirmation(ConfirmationStatus.CONFIRMED)
    )
    yield_on_confirm: bool = False
    balance_calls: int = 0
    confirm_calls: list[dict[str, Any]] = field(default_factory=list)

    async def get_balance(self, public_key: bytes) -> int:
        self.balance_calls += 1
        if self.balance_errors:
            raise self.balance_errors.pop(0)
        return self.balances.get(public_key, 0)

    async def confirm_transaction(
        self,
        transaction_ref: str,
        expected_signer: bytes,
        min_amount: int,
        *,
        memo: str | None = None,
    ) -> TransactionConfirmation:
        self.confirm_calls.append(
            {
                "transaction_ref": transaction_ref,
                "expected_signer": expected_signer,
                "min_amount": min_amount,
                "memo": memo,
            }
        )
        if self.yield_on_confirm:
            await asyncio.sleep(0)
        if self.confirmations:
            return self.confirmations.pop(0)
        return self.default_confirmation

    async def close(self) -> None:
        return None


@pytest.fixture()
def gateway() -> FakeLedgerGateway:
    return FakeLedgerGateway()


def unavailable(times: int) -> list[Exception]:
    return [LedgerUnavailableError("node down") for _ in range(times)]
