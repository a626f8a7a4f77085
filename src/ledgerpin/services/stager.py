"""Staging area management on top of a content-addressable store.

Entries move ``staged -> finalized`` on confirmed payment or
``staged -> reclaimed`` when they expire or their cycle is rejected. Within a
process every store mutation for one address happens under that address's
lock. Across processes both transitions are conditional updates on the
``staged`` row, so only one of them can ever win.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import update
from sqlalchemy.orm import Session

from ledgerpin.core.errors import NotFoundError, StagingError
from ledgerpin.core.settings import settings
from ledgerpin.db.time import as_utc, utcnow
from ledgerpin.models import StagingEntry
from ledgerpin.models.staging import (
    STAGING_STATE_FINALIZED,
    STAGING_STATE_RECLAIMED,
    STAGING_STATE_STAGED,
)
from ledgerpin.services.store import ContentStore, StoreError
from ledgerpin.services.tree import TreeSource, TreeSourceError
from ledgerpin.utils.cid import compute_content_address
from ledgerpin.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


class FinalizeResult(str, Enum):
    FINALIZED = "Finalized"
    ALREADY_FINALIZED = "AlreadyFinalized"


class ContentStager:
    """Stage, finalize and reclaim content by address."""

    def __init__(
        self,
        store: ContentStore,
        *,
        ttl_seconds: int | None = None,
        max_archive_bytes: int | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self.store = store
        self.ttl = timedelta(
            seconds=settings.staging_ttl_seconds if ttl_seconds is None else ttl_seconds
        )
        self.max_archive_bytes = (
            settings.max_archive_bytes if max_archive_bytes is None else max_archive_bytes
        )
        self.locks = locks or KeyedLock()

    async def stage(self, db: Session, account_id: bytes, source: TreeSource) -> StagingEntry:
        """Write the canonical archive of `source` into the staging area.

        Identical content maps to the same entry; the store is only written
        when no live entry exists for the address. Staging onto an entry that
        is still awaiting payment pushes its expiry out to a full TTL from now.

        Raises:
            StagingError: If the source cannot be read, is too large, or the
                store write fails or returns a different address.
        """
        try:
            archive = await asyncio.to_thread(source.read_archive)
        except TreeSourceError as exc:
            raise StagingError(str(exc), reason="InvalidSource") from exc
        if len(archive) > self.max_archive_bytes:
            raise StagingError(
                f"Archive of {len(archive)} bytes exceeds limit of {self.max_archive_bytes}",
                reason="TooLarge",
            )

        address = compute_content_address(archive)
        async with self.locks.hold(address):
            entry = db.get(StagingEntry, address, populate_existing=True)
            if entry is not None and entry.is_live:
                logger.debug("Content %s already %s; skipping write", address, entry.state)
                if entry.state == STAGING_STATE_STAGED:
                    self._extend_expiry(db, address, utcnow() + self.ttl)
                    db.refresh(entry)
                return entry

            try:
                stored = await self.store.put(archive)
            except StoreError as exc:
                raise StagingError(f"Store write failed for {address}: {exc}") from exc
            if stored != address:
                logger.error("Store returned %s for content computed as %s", stored, address)
                try:
                    await self.store.remove(stored)
                except StoreError as exc:
                    logger.warning("Could not remove mismatched block %s: %s", stored, exc)
                raise StagingError(
                    f"Store address mismatch for {address}", reason="Corrupt"
                )

            now = utcnow()
            if entry is None:
                entry = StagingEntry(address=address, owner_account_id=account_id)
                db.add(entry)
            else:
                entry.owner_account_id = account_id
                entry.reclaimed_at = None
                entry.finalized_at = None
            entry.state = STAGING_STATE_STAGED
            entry.size_bytes = len(archive)
            entry.created_at = now
            entry.expires_at = now + self.ttl
            db.commit()
            logger.info("Staged %s (%d bytes) from %s", address, len(archive), source.describe())
            return entry

    async def finalize(self, db: Session, address: str) -> FinalizeResult:
        """Pin a staged entry so it survives garbage collection.

        Raises:
            NotFoundError: If the address was never staged or was reclaimed.
            StagingError: If the store refuses the pin.
        """
        async with self.locks.hold(address):
            entry = db.get(StagingEntry, address, populate_existing=True)
            if entry is None or entry.state == STAGING_STATE_RECLAIMED:
                raise NotFoundError(f"Unknown content address {address}")
            if entry.state == STAGING_STATE_FINALIZED:
                return FinalizeResult.ALREADY_FINALIZED

            try:
                await self.store.pin(address)
            except StoreError as exc:
                raise StagingError(f"Pin failed for {address}: {exc}") from exc

            if not self._transition(
                db, address, STAGING_STATE_FINALIZED, finalized_at=utcnow()
            ):
                entry = db.get(StagingEntry, address, populate_existing=True)
                if entry is not None and entry.state == STAGING_STATE_FINALIZED:
                    return FinalizeResult.ALREADY_FINALIZED
                # Reclaimed by another process between our read and our pin.
                logger.warning("Content %s was reclaimed while being finalized", address)
                try:
                    await self.store.unpin(address)
                except StoreError as exc:
                    logger.warning("Could not drop stale pin on %s: %s", address, exc)
                raise NotFoundError(f"Unknown content address {address}")
            logger.info("Finalized %s", address)
            return FinalizeResult.FINALIZED

    async def reclaim(
        self, db: Session, address: str, *, expired_at: datetime | None = None
    ) -> bool:
        """Remove a staged entry's data from the store.

        The row is moved to ``reclaimed`` before the store is touched, and only
        if it is still ``staged`` (and, with `expired_at`, still expired at that
        instant). Finalized entries are never touched.

        Returns:
            True if the entry was reclaimed by this call.

        Raises:
            StagingError: If the store fails to remove the data; the entry
                goes back to staged so a later sweep can retry.
        """
        async with self.locks.hold(address):
            if not self._transition(
                db,
                address,
                STAGING_STATE_RECLAIMED,
                expired_at=expired_at,
                reclaimed_at=utcnow(),
            ):
                return False

            try:
                await self.store.remove(address)
            except StoreError as exc:
                db.execute(
                    update(StagingEntry)
                    .where(
                        StagingEntry.address == address,
                        StagingEntry.state == STAGING_STATE_RECLAIMED,
                    )
                    .values(state=STAGING_STATE_STAGED, reclaimed_at=None)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                raise StagingError(f"Reclaim failed for {address}: {exc}") from exc
            logger.info("Reclaimed %s", address)
            return True

    def _transition(
        self,
        db: Session,
        address: str,
        state: str,
        *,
        expired_at: datetime | None = None,
        **values: object,
    ) -> bool:
        """Move a ``staged`` row to `state`; return False if it was no longer staged."""
        stmt = update(StagingEntry).where(
            StagingEntry.address == address,
            StagingEntry.state == STAGING_STATE_STAGED,
        )
        if expired_at is not None:
            stmt = stmt.where(StagingEntry.expires_at <= expired_at)
        result = db.execute(
            stmt.values(state=state, **values).execution_options(synchronize_session=False)
        )
        db.commit()
        return result.rowcount == 1

    def _extend_expiry(self, db: Session, address: str, expires_at: datetime) -> None:
        db.execute(
            update(StagingEntry)
            .where(
                StagingEntry.address == address,
                StagingEntry.state == STAGING_STATE_STAGED,
                StagingEntry.expires_at < expires_at,
            )
            .values(expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def expired_addresses(self, db: Session, *, now: datetime | None = None) -> list[str]:
        """Return staged addresses whose expiry has passed."""
        cutoff = now or utcnow()
        entries = (
            db.query(StagingEntry)
            .filter(StagingEntry.state == STAGING_STATE_STAGED)
            .order_by(StagingEntry.expires_at)
            .all()
        )
        return [entry.address for entry in entries if as_utc(entry.expires_at) <= cutoff]

    async def sweep_expired(self, db: Session, *, now: datetime | None = None) -> list[str]:
        """Reclaim every expired staged entry and return the reclaimed addresses."""
        cutoff = now or utcnow()
        reclaimed: list[str] = []
        for address in self.expired_addresses(db, now=cutoff):
            try:
                if await self.reclaim(db, address, expired_at=cutoff):
                    reclaimed.append(address)
            except StagingError as exc:
                logger.warning("Sweep could not reclaim %s: %s", address, exc)
        if reclaimed:
            logger.info("Sweep reclaimed %d staged entr(ies)", len(reclaimed))
        return reclaimed

    def get_entry(self, db: Session, address: str) -> StagingEntry:
        entry = db.get(StagingEntry, address, populate_existing=True)
        if entry is None:
            raise NotFoundError(f"Unknown content address {address}")
        return entry
