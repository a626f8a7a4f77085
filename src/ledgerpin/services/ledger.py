"""Read-only Solana ledger gateway.

This module provides the LedgerGateway class, the only component that talks to
the chain. It includes:

- JSON-RPC client over httpx with a per-attempt timeout
- Circuit breaker pattern for fault tolerance
- Metrics collection for monitoring
- Balance lookups and finalized transaction verification

The gateway never submits transactions.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import base58
import httpx

from ledgerpin.core.settings import settings

# Configure logger for this module
logger = logging.getLogger(__name__)

HTTP_TOO_MANY_REQUESTS = 429
HTTP_INTERNAL_SERVER_ERROR = 500

FINALIZED = "finalized"

MEMO_PROGRAM_IDS = frozenset(
    {
        "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr",
        "Memo1UhkJRfHyvLMcVucJwxXbuD2YvkZnCBRk5tnnT",
    }
)

# JSON-RPC error codes that signal a struggling node rather than a bad request.
_TRANSIENT_RPC_CODES = frozenset(
    {
        -32603,  # internal error
        -32004,  # block not available
        -32005,  # node unhealthy
        -32007,  # slot skipped / ledger jump
        -32014,  # block status not yet available
        -32016,  # minimum context slot not reached
    }
)


class LedgerError(RuntimeError):
    """Base exception raised for ledger query failures."""


class LedgerUnavailableError(LedgerError):
    """Raised when the ledger cannot be reached or answered with a transient error."""


class ConfirmationStatus(str, Enum):
    """Outcome of checking a payment transaction."""

    CONFIRMED = "Confirmed"
    PENDING = "Pending"
    REJECTED = "Rejected"
    UNAVAILABLE = "Unavailable"


@dataclass(frozen=True)
class TransactionConfirmation:
    """Result of ``confirm_transaction``; ``reason`` explains non-confirmed results."""

    status: ConfirmationStatus
    reason: str | None = None
    amount: int | None = None


class CircuitState(Enum):
    """Circuit breaker states for fault tolerance."""
    CLOSED = "closed"      # Normal operation - requests allowed
    OPEN = "open"          # Circuit is open - requests blocked
    HALF_OPEN = "half_open"  # Testing if the node is back - limited requests allowed


@dataclass
class LedgerMetrics:
    """Metrics collection for ledger RPC calls."""

    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    max_response_time: float = 0.0
    error_counts_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    method_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_request(
        self, method: str, response_time: float, success: bool, error_type: str | None = None
    ) -> None:
        """Record a request metric."""
        self.request_count += 1
        self.total_response_time += response_time
        self.max_response_time = max(self.max_response_time, response_time)
        self.method_counts[method] += 1

        if success:
            self.success_count += 1
        else:
            self.error_count += 1
            if error_type:
                self.error_counts_by_type[error_type] += 1

    def get_average_response_time(self) -> float:
        """Get average response time."""
        return self.total_response_time / self.request_count if self.request_count > 0 else 0.0

    def get_success_rate(self) -> float:
        """Get success rate as a percentage."""
        return (self.success_count / self.request_count * 100) if self.request_count > 0 else 0.0

    def snapshot(self) -> dict[str, Any]:
        return {
            "request_count": self.request_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "average_response_time": self.get_average_response_time(),
            "max_response_time": self.max_response_time,
            "success_rate": self.get_success_rate(),
            "errors_by_type": dict(self.error_counts_by_type),
            "methods": dict(self.method_counts),
        }


@dataclass
class CircuitBreaker:
    """Circuit breaker for ledger RPC calls."""

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _success_count: int = 0
    _last_failure_time: float = 0.0

    def is_open(self) -> bool:
        """Check if circuit is open."""
        if self._state == CircuitState.OPEN:
            if time.time() - self._last_failure_time > self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
            return self._state == CircuitState.OPEN
        return False

    def record_success(self) -> None:
        """Record a successful operation."""
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed operation."""
        self._failure_count += 1
        self._last_failure_time = time.time()

        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN

    def get_state(self) -> CircuitState:
        """Get the current circuit breaker state."""
        return self._state


@dataclass(frozen=True)
class LedgerConfig:
    """Immutable configuration for ledger access."""

    rpc_url: str
    timeout_seconds: float
    payment_recipient: str


def load_ledger_config() -> LedgerConfig:
    """Build configuration object from global settings."""

    return LedgerConfig(
        rpc_url=settings.solana_rpc_url,
        timeout_seconds=float(settings.ledger_timeout_seconds),
        payment_recipient=settings.payment_recipient,
    )


def _account_keys(transaction: Mapping[str, Any], meta: Mapping[str, Any]) -> list[str]:
    """Return static account keys followed by lookup-table loaded addresses."""
    keys = [str(key) for key in transaction.get("message", {}).get("accountKeys", [])]
    loaded = meta.get("loadedAddresses") or {}
    keys.extend(str(key) for key in loaded.get("writable", []))
    keys.extend(str(key) for key in loaded.get("readonly", []))
    return keys


def _memo_texts(transaction: Mapping[str, Any], account_keys: Sequence[str]) -> list[str]:
    """Decode the data of every memo-program instruction in a json-encoded transaction."""
    texts: list[str] = []
    for instruction in transaction.get("message", {}).get("instructions", []):
        index = instruction.get("programIdIndex")
        if not isinstance(index, int) or index >= len(account_keys):
            continue
        if account_keys[index] not in MEMO_PROGRAM_IDS:
            continue
        try:
            raw = base58.b58decode(instruction.get("data", ""))
        except ValueError:
            continue
        texts.append(raw.decode("utf-8", errors="replace"))
    return texts


def evaluate_transaction(
    payload: Mapping[str, Any],
    *,
    expected_signer: str,
    recipient: str,
    min_amount: int,
    memo: str | None = None,
) -> TransactionConfirmation:
    """Check a finalized ``getTransaction`` payload against the payment rules."""
    meta = payload.get("meta") or {}
    if meta.get("err") is not None:
        return TransactionConfirmation(ConfirmationStatus.REJECTED, "transaction_failed")

    transaction = payload.get("transaction") or {}
    account_keys = _account_keys(transaction, meta)
    header = transaction.get("message", {}).get("header", {})
    signer_count = int(header.get("numRequiredSignatures", 0))
    if expected_signer not in account_keys[:signer_count]:
        return TransactionConfirmation(ConfirmationStatus.REJECTED, "wrong_signer")

    pre_balances = meta.get("preBalances") or []
    post_balances = meta.get("postBalances") or []
    try:
        index = account_keys.index(recipient)
        credited = int(post_balances[index]) - int(pre_balances[index])
    except (ValueError, IndexError):
        credited = 0
    if credited < min_amount:
        return TransactionConfirmation(
            ConfirmationStatus.REJECTED, "insufficient_amount", amount=credited
        )

    if memo is not None and not any(
        text.strip() == memo for text in _memo_texts(transaction, account_keys)
    ):
        return TransactionConfirmation(ConfirmationStatus.REJECTED, "memo_mismatch", amount=credited)

    return TransactionConfirmation(ConfirmationStatus.CONFIRMED, amount=credited)


class LedgerGateway:
    """JSON-RPC client wrapper for read-only Solana queries."""

    def __init__(
        self,
        config: LedgerConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or load_ledger_config()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._circuit_breaker = CircuitBreaker()
        self._metrics = LedgerMetrics()
        self._ids = itertools.count(1)

    @property
    def metrics(self) -> LedgerMetrics:
        return self._metrics

    @property
    def circuit_state(self) -> CircuitState:
        return self._circuit_breaker.get_state()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        if self._circuit_breaker.is_open():
            raise LedgerUnavailableError("Ledger circuit breaker is open")

        client = await self._ensure_client()
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

        start_time = time.time()
        success = False
        error_type: str | None = None
        try:
            try:
                response = await client.post(self.config.rpc_url, json=body)
            except httpx.HTTPError as exc:
                error_type = "network_error"
                raise LedgerUnavailableError(f"Ledger request failed: {exc}") from exc

            if (
                response.status_code == HTTP_TOO_MANY_REQUESTS
                or response.status_code >= HTTP_INTERNAL_SERVER_ERROR
            ):
                error_type = f"http_{response.status_code}"
                raise LedgerUnavailableError(f"Ledger responded with {response.status_code}")
            if response.status_code != httpx.codes.OK:
                error_type = f"http_{response.status_code}"
                raise LedgerError(f"Unexpected ledger response ({response.status_code})")

            try:
                payload = response.json()
            except ValueError as exc:
                error_type = "invalid_json"
                raise LedgerUnavailableError("Ledger returned malformed JSON") from exc

            error = payload.get("error")
            if error:
                code = error.get("code")
                error_type = f"rpc_{code}"
                message = f"{method} failed ({code}): {error.get('message')}"
                if code in _TRANSIENT_RPC_CODES:
                    raise LedgerUnavailableError(message)
                raise LedgerError(message)
            success = True
            return payload.get("result")
        finally:
            if success:
                self._circuit_breaker.record_success()
            elif isinstance(error_type, str) and not error_type.startswith("rpc_"):
                self._circuit_breaker.record_failure()
            self._metrics.record_request(method, time.time() - start_time, success, error_type)

    async def get_balance(self, public_key: bytes) -> int:
        """Return the finalized balance of `public_key` in lamports.

        Unknown accounts have a balance of 0.

        Raises:
            LedgerUnavailableError: If the ledger cannot be queried right now.
        """
        address = base58.b58encode(public_key).decode("ascii")
        result = await self._rpc("getBalance", [address, {"commitment": FINALIZED}])
        if not result:
            return 0
        value = result.get("value") if isinstance(result, Mapping) else result
        return int(value or 0)

    async def confirm_transaction(
        self,
        transaction_ref: str,
        expected_signer: bytes,
        min_amount: int,
        *,
        memo: str | None = None,
    ) -> TransactionConfirmation:
        """Check that `transaction_ref` is a finalized payment from `expected_signer`.

        Returns a ``TransactionConfirmation``; ledger connectivity problems are
        reported as ``UNAVAILABLE`` rather than raised.
        """
        signer = base58.b58encode(expected_signer).decode("ascii")
        try:
            statuses = await self._rpc(
                "getSignatureStatuses",
                [[transaction_ref], {"searchTransactionHistory": True}],
            )
            status = (statuses or {}).get("value", [None])[0]
            if status is None:
                return TransactionConfirmation(ConfirmationStatus.PENDING, "not_found")
            if status.get("err") is not None:
                return TransactionConfirmation(ConfirmationStatus.REJECTED, "transaction_failed")
            if status.get("confirmationStatus") != FINALIZED:
                return TransactionConfirmation(ConfirmationStatus.PENDING, "not_finalized")

            payload = await self._rpc(
                "getTransaction",
                [
                    transaction_ref,
                    {
                        "commitment": FINALIZED,
                        "encoding": "json",
                        "maxSupportedTransactionVersion": 0,
                    },
                ],
            )
        except LedgerUnavailableError as exc:
            logger.warning("Ledger unavailable while confirming %s: %s", transaction_ref, exc)
            return TransactionConfirmation(ConfirmationStatus.UNAVAILABLE, str(exc))
        except LedgerError as exc:
            logger.warning("Ledger error while confirming %s: %s", transaction_ref, exc)
            return TransactionConfirmation(ConfirmationStatus.UNAVAILABLE, str(exc))

        if payload is None:
            return TransactionConfirmation(ConfirmationStatus.PENDING, "not_finalized")

        result = evaluate_transaction(
            payload,
            expected_signer=signer,
            recipient=self.config.payment_recipient,
            min_amount=min_amount,
            memo=memo,
        )
        logger.info(
            "Transaction %s evaluated as %s (%s)",
            transaction_ref,
            result.status.value,
            result.reason or "ok",
        )
        return result

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


class _LedgerGatewaySingleton:
    """Singleton wrapper for LedgerGateway."""

    _instance: LedgerGateway | None = None

    @classmethod
    def get_instance(cls) -> LedgerGateway:
        if cls._instance is None:
            cls._instance = LedgerGateway()
        return cls._instance


def get_ledger_gateway() -> LedgerGateway:
    """Return the process-wide ledger gateway instance."""
    return _LedgerGatewaySingleton.get_instance()
