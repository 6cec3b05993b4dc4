"""FastAPI application factory and main entry point for the signaling relay."""

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI

from .deps import get_call_store
from .logging_config import setup_logging
from .routers import calls_router, signal_ws_router
from .settings import get_settings

logger = logging.getLogger(__name__)

PURGE_INTERVAL_S = 60.0


async def _purge_ended_calls() -> None:
    """Periodically drop ended call documents."""
    store = get_call_store()
    while True:
        await asyncio.sleep(PURGE_INTERVAL_S)
        await store.purge_ended(older_than=timedelta(minutes=10))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    logger.info("Starting StudyPals signaling relay")
    settings = get_settings()
    logger.info(f"Relay listening on {settings.relay_host}:{settings.relay_port}")
    purge_task = asyncio.create_task(_purge_ended_calls())

    yield

    # Shutdown
    purge_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await purge_task
    logger.info("Shutting down StudyPals signaling relay")


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    # Setup logging first
    setup_logging(get_settings().log_level)

    app = FastAPI(
        title="StudyPals Calls",
        description="Signaling relay for StudyPals peer-to-peer calls",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.include_router(calls_router, tags=["calls"])
    app.include_router(signal_ws_router, tags=["signaling"])

    logger.info("FastAPI application created and configured")
    return app


# Create app instance
app = create_app()


def run() -> None:
    """Serve the relay with uvicorn using RELAY_HOST/RELAY_PORT."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "studypals_calls.main:app",
        host=settings.relay_host,
        port=settings.relay_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
