import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import discord
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request, Response, status

from linkwatch.config import Settings, get_settings
from linkwatch.discord_client import LinkWatchClient
from linkwatch.exceptions import ConfigurationError
from linkwatch.logging_utils import RequestLoggingMiddleware, setup_logging
from linkwatch.metrics import get_metrics, get_metrics_content_type
from linkwatch.monitor import LiveMonitor
from linkwatch.pipeline import LinkPipeline
from linkwatch.resolver import LinkResolver
from linkwatch.schemas import HealthResponse, LinkStats
from linkwatch.storage import LinkStore, create_store

logger = logging.getLogger(__name__)

router = APIRouter()


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    logger.error(
        f"Unhandled asynchronous error: {context.get('message')}",
        exc_info=exc,
    )


async def _run_bot(client: LinkWatchClient, token: str) -> None:
    try:
        async with client:
            await client.start(token)
    except discord.LoginFailure as e:
        logger.critical(f"Discord login failed: {e}")
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Discord client stopped unexpectedly")


def create_app(settings: Optional[Settings] = None, start_bot: bool = True) -> FastAPI:
    """
    Build the service.

    The lifespan wires store -> resolver -> pipeline -> monitor and, when
    start_bot is set, runs the Discord client in the background. Shutdown
    stops the client first so no upsert is in flight when the store closes.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        asyncio.get_running_loop().set_exception_handler(_log_loop_exception)
        if start_bot:
            settings.check_startup()

        store = create_store(settings)
        store.init()
        resolver = LinkResolver(settings)
        pipeline = LinkPipeline(resolver, store)
        monitor = LiveMonitor(pipeline, store, settings)
        app.state.store = store
        app.state.monitor = monitor

        client = None
        bot_task = None
        if start_bot:
            client = LinkWatchClient(monitor, pipeline, settings)
            bot_task = asyncio.create_task(_run_bot(client, settings.DISCORD_TOKEN))

        try:
            yield
        finally:
            logger.info("Shutting down bot...")
            if client is not None:
                await client.close()
            if bot_task is not None:
                bot_task.cancel()
                await asyncio.gather(bot_task, return_exceptions=True)
            await resolver.aclose()
            store.close()

    app = FastAPI(
        title="linkwatch",
        description="Collects Twitter/X links posted in Discord channels",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(router)
    return app


def get_store(request: Request) -> LinkStore:
    return request.app.state.store


def get_monitor(request: Request) -> LiveMonitor:
    return request.app.state.monitor


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(
    response: Response,
    store: LinkStore = Depends(get_store),
    monitor: LiveMonitor = Depends(get_monitor),
) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. The link store is reachable
    2. The historical scrape has finished and live monitoring is active

    Otherwise returns 503 (Service Unavailable).
    """
    if not store.ping():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Link store not reachable")

    if not monitor.gate_open:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Historical scrape in progress")

    return HealthResponse(status="ready")


# =============================================================================
# Stats Route
# =============================================================================

@router.get("/stats", response_model=LinkStats)
async def get_statistics(store: LinkStore = Depends(get_store)) -> LinkStats:
    """
    Summary of stored links: totals, distinct authors and channels,
    top 10 posters and the oldest/newest message timestamps.
    """
    stats = store.stats()
    logger.info(f"GET /stats: returned stats for {stats.total_links} links")
    return stats


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


def run() -> None:
    """Console entry point: validate configuration, then serve."""
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    try:
        settings.check_startup()
    except ConfigurationError as e:
        logger.critical(f"Failed to start bot: {e}")
        sys.exit(1)

    uvicorn.run(
        "linkwatch.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_config=None,
    )


if __name__ == "__main__":
    run()
