"""
HVAC Runtime Tracker Backend Application

FastAPI service: push ingress plus a small read API over the runtime engine.
"""

import os
import sys
from contextlib import asynccontextmanager

import log_config  # noqa: F401
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

# Add core to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Import API router
import api
from api import router as api_router

from core.hvac_runtime.engine import RuntimeEngine
from core.hvac_runtime.poller import StaleDevicePoller
from core.hvac_runtime.sdm_client import SdmClient
from core.hvac_runtime.settings import load_config
from core.hvac_runtime.sinks import CoreIngestSink, StatusWebhookSink
from core.hvac_runtime.store import create_store

CONFIG_PATH = os.path.join(os.path.dirname(__file__), "..", "config.yaml")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan manager for startup/shutdown."""
    # Startup
    logger.info("HVAC runtime tracker starting")

    config = load_config(config_path=CONFIG_PATH)
    store = create_store(config.service.database_path)
    engine = RuntimeEngine(
        config.engine,
        config.service,
        store,
        status_sink=StatusWebhookSink(
            config.sinks.status_webhook_url, timeout=config.sinks.timeout_seconds
        ),
        ingest_sink=CoreIngestSink(
            config.sinks.core_ingest_url,
            api_key=config.sinks.core_api_key,
            timeout=config.sinks.timeout_seconds,
        ),
        delivery=config.sinks,
    )
    await engine.start()
    api.engine = engine

    report = engine.recovery_report
    if report and report.total:
        logger.info(f"Recovered {len(report.resumed)} running session(s), closed {len(report.closed)} stale")

    poller = None
    if config.service.sdm_project_id and config.service.sdm_access_token:
        poller = StaleDevicePoller(
            engine,
            SdmClient(config.service.sdm_project_id, config.service.sdm_access_token),
            interval_seconds=config.service.poll_interval_seconds,
            stale_after_seconds=config.service.stale_poll_after_seconds,
        )
        await poller.start()
        api.poller = poller
    else:
        logger.warning("Stale device polling disabled (no SDM project id or access token)")

    yield

    # Shutdown
    logger.info("HVAC runtime tracker shutting down")
    if poller:
        await poller.stop()
        api.poller = None
    await engine.stop()
    api.engine = None
    store.close()


# Create FastAPI application
app = FastAPI(
    title="HVAC Runtime Tracker API",
    description="Runtime session tracking for smart thermostats",
    version=api.APP_VERSION,
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Handle all unhandled exceptions gracefully."""
    import traceback

    tb_str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    logger.error(f"Unhandled exception: {exc}")
    logger.error(f"Request path: {request.url.path}")
    logger.error(f"Stack trace:\n{tb_str}")

    return JSONResponse(
        status_code=500,
        content={
            "detail": str(exc),
            "type": type(exc).__name__,
            "message": "Internal server error",
        },
    )


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API router
app.include_router(api_router)


# For development
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
