"""FastAPI application factory."""

import asyncio
from contextlib import asynccontextmanager
from typing import Awaitable, Callable

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from genflow.api.errors import register_exception_handlers
from genflow.api.rate_limit import AccountRateLimiter
from genflow.api.routes import credits, cron, generations
from genflow.core import timezone  # noqa: F401
from genflow.core.config import Settings, configure_logging
from genflow.core.database import setup_db_session
from genflow.services.bootstrap import create_orchestrator
from genflow.uow import create_uow_factory
from genflow.workers.reconciliation_worker import run_reconciliation_worker

logger = structlog.get_logger()

SWEEPER_NAME = "reconciliation-sweeper"


def create_resilient_worker(
    worker_factory: Callable[[], Awaitable[None]],
    worker_name: str,
    shutdown_event: asyncio.Event,
    restart_delay: float = 1.0,
) -> asyncio.Task:
    """Run a long-lived worker, starting a fresh run whenever one ends before shutdown.

    Args:
        worker_factory: Zero-argument callable returning the worker coroutine
        worker_name: Name used in log events
        shutdown_event: Once set, finished runs are not replaced
        restart_delay: Seconds to wait before replacing a finished run

    Returns:
        Task of the first run
    """

    def start() -> asyncio.Task:
        task = asyncio.create_task(worker_factory(), name=worker_name)
        task.add_done_callback(on_done)
        return task

    def on_done(task: asyncio.Task) -> None:
        if shutdown_event.is_set() or task.cancelled():
            logger.info("worker.finished", worker=worker_name, cancelled=task.cancelled())
            return

        exc = task.exception()
        if exc is not None:
            logger.error(
                "worker.crashed",
                worker=worker_name,
                error=str(exc),
                error_type=type(exc).__name__,
                retry_in_seconds=restart_delay,
                exc_info=exc,
            )
        else:
            logger.warning(
                "worker.returned", worker=worker_name, retry_in_seconds=restart_delay
            )

        async def restart() -> None:
            await asyncio.sleep(restart_delay)
            if not shutdown_event.is_set():
                logger.info("worker.restarting", worker=worker_name)
                start()

        asyncio.create_task(restart())

    return start()

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    - Startup: settings, logging, database session factory, service graph,
      rate limiter, background reconciliation sweeper
    - Shutdown: stop the sweeper
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    orchestrator = create_orchestrator(settings, uow_factory)

    # Store in app.state for access in routes
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.orchestrator = orchestrator
    app.state.rate_limiter = AccountRateLimiter.from_settings(settings)

    shutdown_event = asyncio.Event()
    if settings.run_background_sweeper:
        create_resilient_worker(
            lambda: run_reconciliation_worker(orchestrator, settings),
            SWEEPER_NAME,
            shutdown_event,
        )

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        tools=[tool.value for tool in orchestrator.adapters],
        background_sweeper=settings.run_background_sweeper,
    )

    yield

    logger.info("application.shutdown")
    shutdown_event.set()

    # The running sweep may be a restarted task, so cancel by name
    sweepers = [task for task in asyncio.all_tasks() if task.get_name() == SWEEPER_NAME]
    for task in sweepers:
        task.cancel()
    await asyncio.gather(*sweepers, return_exceptions=True)


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="Genflow API",
        description="Credit-metered media generation across vendor APIs",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(credits.router)
    app.include_router(generations.router)
    app.include_router(cron.router)

    # Health check endpoint with database validation
    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database connectivity test.

        Returns:
            200: {"status": "healthy"} if database connection succeeds
            503: {"status": "unhealthy", "error": {...}} if database connection fails
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
