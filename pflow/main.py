from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

import asyncpg
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from pflow.api.routes import metrics, ping, tickets
from pflow.core.config import Settings, get_settings
from pflow.core.logging import configure_logging, init_tracer, shutdown_tracer
from pflow.engine.client import EngineClient, EngineError
from pflow.events.publisher import create_publisher
from pflow.tickets.repository import PersistenceError, TicketRepository
from pflow.worker.poller import TaskPoller
from pflow.workflow.coordinator import WorkflowCoordinator

logger = logging.getLogger(__name__)


async def _deploy_definition(engine: EngineClient, settings: Settings) -> None:
    if not settings.camunda_definition_path:
        return
    path = Path(settings.camunda_definition_path)
    try:
        await engine.deploy_definition(path.stem, path.read_bytes())
    except (EngineError, OSError) as exc:
        logger.warning("Deploying process definition %s failed: %s", path, exc)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    configure_logging(settings)
    worker_id = str(uuid.uuid4()) if settings.worker_enabled else None
    tracer_provider = init_tracer(settings, worker_id=worker_id)

    pool = await asyncpg.create_pool(
        dsn=settings.database_url,
        min_size=settings.database_pool_min_size,
        max_size=settings.database_pool_max_size,
    )
    engine = EngineClient(settings.camunda_url, timeout=settings.camunda_timeout)
    publisher = await create_publisher(settings)
    poller: TaskPoller | None = None
    try:
        repository = TicketRepository(pool)
        await repository.ensure_schema()
        await _deploy_definition(engine, settings)

        coordinator = WorkflowCoordinator(
            repository,
            engine,
            publisher,
            process_key=settings.camunda_process_key,
        )
        app.state.coordinator = coordinator

        if settings.worker_enabled:
            poller = TaskPoller(
                engine,
                coordinator,
                topic=settings.worker_topic,
                interval=settings.worker_poll_interval,
                lock_duration=settings.worker_lock_duration,
                max_tasks=settings.worker_max_tasks,
                worker_id=worker_id,
            )
            poller.start()
        app.state.poller = poller
        yield
    finally:
        if poller is not None:
            await poller.stop()
        app.state.coordinator = None
        await publisher.close()
        await engine.aclose()
        await pool.close()
        shutdown_tracer(tracer_provider)


async def _engine_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Process engine call failed on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": f"Process engine error: {exc}"})


async def _persistence_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Ticket store failed on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": "Ticket store is unavailable"})


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_exception_handler(EngineError, _engine_error_handler)
    app.add_exception_handler(PersistenceError, _persistence_error_handler)
    app.include_router(ping.router)
    app.include_router(metrics.router)
    app.include_router(tickets.router)
    return app


app = create_app()
