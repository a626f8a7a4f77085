"""Main entry point for the LedgerPin application."""

from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware

from ledgerpin.api.v1 import publish_router, system_router
from ledgerpin.core.settings import settings
from ledgerpin.services.ledger import get_ledger_gateway
from ledgerpin.services.publish import close_publish_coordinator, get_publish_coordinator
from ledgerpin.services.staging_sweep import StagingSweepWorker

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="LedgerPin API",
    description="Payment-gated, wallet-authenticated content publishing",
    version=settings.app_version,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(publish_router, prefix="/api/v1")
app.include_router(system_router, prefix="/api/v1")


@app.on_event("startup")
async def on_startup() -> None:
    if settings.sweep_enabled:
        worker = StagingSweepWorker(get_publish_coordinator())
        await worker.start()
        app.state.sweep_worker = worker
        logger.info("Staging sweep running every %.1fs", worker.interval)
    else:
        app.state.sweep_worker = None


@app.on_event("shutdown")
async def on_shutdown() -> None:
    worker: StagingSweepWorker | None = getattr(app.state, "sweep_worker", None)
    if worker:
        await worker.stop()
    await close_publish_coordinator()
    await get_ledger_gateway().close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": "LedgerPin API",
        "version": settings.app_version,
        "description": "Payment-gated, wallet-authenticated content publishing",
        "docs": "/docs",
        "redoc": "/redoc"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("ledgerpin.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
