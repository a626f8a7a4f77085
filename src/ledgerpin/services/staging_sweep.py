"""Background reclamation of expired staged content.

The ``StagingSweepWorker`` periodically asks the publish coordinator to
reclaim every staged entry that outlived its TTL without a confirmed payment.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledgerpin.core.settings import settings
from ledgerpin.db.session import SessionLocal
from ledgerpin.services.publish import PublishCoordinator

logger = logging.getLogger(__name__)


class StagingSweepWorker:
    """Runs the staging TTL sweep on a fixed interval."""

    def __init__(
        self,
        coordinator: PublishCoordinator,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        interval_seconds: float | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.session_factory = session_factory
        self.interval = max(
            0.1,
            float(
                settings.sweep_interval_seconds if interval_seconds is None else interval_seconds
            ),
        )
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background sweep loop."""
        if not self.running:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def sweep_once(self) -> list[str]:
        with self.session_factory() as db:
            return await self.coordinator.reclaim_expired(db)

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.sweep_once()
            except SQLAlchemyError as e:
                logger.warning("StagingSweepWorker encountered database error: %s", e)
            except (OSError, ConnectionError, TimeoutError) as e:
                logger.warning("StagingSweepWorker encountered network error: %s", e)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
