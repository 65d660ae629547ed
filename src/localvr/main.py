"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from localvr.api.routes import router
from localvr.client import LocalVisualRecognition
from localvr.config import get_settings

logger = logging.getLogger(__name__)

IDLE_SWEEP_INTERVAL_SECONDS: float = 60.0


async def _sweep_idle_sessions(client: LocalVisualRecognition, interval: float) -> None:
    """Periodically release sessions that outlived the configured TTL."""
    while True:
        await asyncio.sleep(interval)
        client.unload_idle_models()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting localvr (device=%s, max_concurrent=%s, models_dir=%s, auto_fetch=%s)",
        settings.device,
        settings.max_concurrent,
        settings.models_dir,
        settings.auto_fetch_missing,
    )

    client = LocalVisualRecognition(settings)
    app.state.client = client

    sweeper = None
    if settings.model_ttl > 0:
        sweeper = asyncio.create_task(_sweep_idle_sessions(client, IDLE_SWEEP_INTERVAL_SECONDS))

    logger.info("localvr ready with %d installed classifiers", len(client.list_installed()))
    yield

    logger.info("Shutting down localvr")
    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
    client.shutdown()
    logger.info("localvr shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="localvr",
        description="Local image classification with downloadable classifier models",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the API with uvicorn on the configured host and port."""
    settings = get_settings()
    uvicorn.run("localvr.main:app", host=settings.host, port=settings.port, log_level="info")
