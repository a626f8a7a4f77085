"""System and transparency endpoints for the LedgerPin API."""

from __future__ import annotations

import time
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ledgerpin.core.settings import settings
from ledgerpin.db.session import get_db
from ledgerpin.models import PublishCycle, StagingEntry
from ledgerpin.services.ledger import LedgerGateway, get_ledger_gateway

router = APIRouter(prefix="/system", tags=["system", "transparency"])


def get_ledger_gateway_dep() -> LedgerGateway:
    return get_ledger_gateway()


SessionDep = Annotated[Session, Depends(get_db)]
LedgerGatewayDep = Annotated[LedgerGateway, Depends(get_ledger_gateway_dep)]


@router.get("/config")
async def get_public_config() -> dict[str, object]:
    """Return a sanitized snapshot of public runtime configuration.

    Excludes secrets and connection strings; suitable for wallet UIs that need
    to show the price and admission threshold before a publish starts.
    """
    return {
        "app": {
            "name": settings.app_name,
            "version": settings.app_version,
            "debug": settings.debug,
        },
        "payment": {
            "recipient": settings.payment_recipient,
            "price_lamports": settings.publish_price_lamports,
            "price_sol": settings.publish_price_sol,
            "min_balance_lamports": settings.min_balance_lamports,
            "min_balance_sol": settings.min_balance_sol,
            "memo_required": settings.require_payment_memo,
        },
        "staging": {
            "ttl_seconds": settings.staging_ttl_seconds,
            "max_archive_bytes": settings.max_archive_bytes,
            "store_backend": settings.store_backend,
        },
        "challenge_ttl_seconds": settings.challenge_ttl_seconds,
    }


@router.get("/ledger")
async def get_ledger_status(gateway: LedgerGatewayDep) -> dict[str, object]:
    """Ledger gateway circuit state and RPC metrics."""
    return {
        "rpc_url": gateway.config.rpc_url,
        "circuit_state": gateway.circuit_state.value,
        "metrics": gateway.metrics.snapshot(),
    }


@router.get("/publish-stats")
async def get_publish_stats(db: SessionDep) -> dict[str, object]:
    """Counts of staging entries and publish cycles by state."""
    entries = dict(
        db.query(StagingEntry.state, func.count()).group_by(StagingEntry.state).all()
    )
    cycles = dict(
        db.query(PublishCycle.state, func.count()).group_by(PublishCycle.state).all()
    )
    return {
        "staging": {state: int(count) for state, count in entries.items()},
        "cycles": {state: int(count) for state, count in cycles.items()},
    }


@router.get("/health")
async def get_system_health(db: SessionDep, gateway: LedgerGatewayDep) -> dict[str, object]:
    """Component health for monitoring."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError as e:
        db_status = f"unhealthy: {e}"

    return {
        "status": "healthy" if db_status == "healthy" else "unhealthy",
        "timestamp": int(time.time()),
        "components": {
            "database": db_status,
            "ledger": gateway.circuit_state.value,
        },
        "version": settings.app_version,
    }
