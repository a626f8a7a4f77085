"""Replay protection for signed publish challenges."""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Any, Final

import redis

from ledgerpin.core.settings import settings

logger = logging.getLogger(__name__)

_NONCE_TTL_SECONDS: Final[int] = 86_400  # 24 hours


class ReplayProtectionService:
    """Remember consumed challenge nonces so each signature is usable once.

    Backed by Redis when ``REDIS_URL`` is configured; otherwise an in-process
    cache with expiry, which is only correct for single-process deployments.
    """

    def __init__(self, redis_url: str | None = None) -> None:
        self._redis: Any = None
        url = redis_url if redis_url is not None else settings.redis_url
        if url:
            self._redis = redis.from_url(url)
        self._cache: dict[str, int] = {}
        self._lock = Lock()

    def _key(self, pubkey_hex: str, nonce: str) -> str:
        return f"replay:{pubkey_hex}:{nonce}"

    def is_replay(self, pubkey_hex: str, nonce: str) -> bool:
        """Return True if the nonce has already been used by the caller."""
        key = self._key(pubkey_hex, nonce)
        if self._redis is not None:
            try:
                return bool(self._redis.exists(key))
            except redis.RedisError as exc:
                logger.warning("Redis replay lookup failed, using local cache: %s", exc)

        now = int(time.time())
        with self._lock:
            expiry = self._cache.get(key)
            if expiry is None:
                return False
            if expiry < now:
                self._cache.pop(key, None)
                return False
            return True

    def register_replay(
        self, pubkey_hex: str, nonce: str, ttl_seconds: int = _NONCE_TTL_SECONDS
    ) -> bool:
        """Record a nonce as used.

        Returns:
            True if this call consumed the nonce, False if it was already used.
        """
        key = self._key(pubkey_hex, nonce)
        if self._redis is not None:
            try:
                return bool(self._redis.set(key, "1", ex=int(ttl_seconds), nx=True))
            except redis.RedisError as exc:
                logger.warning("Redis replay registration failed, using local cache: %s", exc)

        now = int(time.time())
        with self._lock:
            expiry = self._cache.get(key)
            if expiry is not None and expiry >= now:
                return False
            self._cache[key] = now + int(ttl_seconds)
            self._purge_expired(now)
            return True

    def _purge_expired(self, now: int) -> None:
        stale = [key for key, expiry in self._cache.items() if expiry < now]
        for key in stale:
            del self._cache[key]


_REPLAY_SERVICE: ReplayProtectionService | None = None


def get_replay_service() -> ReplayProtectionService:
    """Return the process-wide replay protection service."""
    global _REPLAY_SERVICE
    if _REPLAY_SERVICE is None:
        _REPLAY_SERVICE = ReplayProtectionService()
    return _REPLAY_SERVICE
