"""
Cron job to reclaim expired staged content.

Useful when the API runs with SWEEP_ENABLED=false, or to force a sweep with a
shifted clock:

    python -m ledgerpin.scripts.sweep --ahead 3600
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import timedelta

from ledgerpin.db.session import SessionLocal
from ledgerpin.db.time import utcnow
from ledgerpin.services.ledger import get_ledger_gateway
from ledgerpin.services.publish import (
    PublishCoordinator,
    close_publish_coordinator,
    get_publish_coordinator,
)


async def run_sweep(coordinator: PublishCoordinator, ahead_seconds: float = 0.0) -> list[str]:
    """Reclaim every entry expired as of now plus `ahead_seconds`."""
    now = utcnow() + timedelta(seconds=ahead_seconds)
    with SessionLocal() as db:
        return await coordinator.reclaim_expired(db, now=now)


async def _main(ahead_seconds: float) -> None:
    try:
        reclaimed = await run_sweep(get_publish_coordinator(), ahead_seconds)
    finally:
        await close_publish_coordinator()
        await get_ledger_gateway().close()
    for address in reclaimed:
        print(address)
    print(f"Reclaimed {len(reclaimed)} staged entr(ies)")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Reclaim expired staged content")
    parser.add_argument(
        "--ahead",
        type=float,
        default=0.0,
        help="Pretend the clock is this many seconds ahead.",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_main(args.ahead))


if __name__ == "__main__":
    main()
