"""Cadence scheduler FastAPI application factory."""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from cadence.config import Settings
from cadence.db import create_engine, create_session_factory
from cadence.db.models import Base
from cadence.errors import CadenceError
from cadence.routes import (
    executions_router,
    machines_router,
    status_router,
    tasks_router,
    webhooks_router,
)
from cadence.services import (
    ExecutionEngine,
    ExecutionHistory,
    MachineService,
    MetricSource,
    SchedulerService,
    TaskHandlerRegistry,
    TaskService,
    WebhookDispatcher,
    WebhookService,
    default_registry,
)

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query"))
    message = first.get("msg", "Invalid value")
    return f"{location}: {message}" if location else message


async def cadence_error_handler(request: Request, exc: CadenceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": _validation_message(exc)})


def create_app(
    settings: Settings | None = None,
    handlers: TaskHandlerRegistry | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use, read from the environment when omitted
        handlers: Task bodies by task type, the built-in ones when omitted
        transport: httpx transport for webhook deliveries (tests stub it)
    """
    settings = settings or Settings()

    engine = create_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        echo=settings.db_echo,
        statement_timeout=settings.db_statement_timeout,
        command_timeout=settings.db_command_timeout,
    )
    session_factory = create_session_factory(engine)
    logger.info(f"Database connection configured: {settings.database_url.split('@')[-1]}")

    # Initialize core services
    metric_source = MetricSource(session_factory)
    dispatcher = WebhookDispatcher(
        session_factory,
        timeout=settings.webhook_timeout,
        user_agent=settings.webhook_user_agent,
        base_url=settings.base_url,
        transport=transport,
    )
    execution_engine = ExecutionEngine(
        session_factory,
        handlers=handlers or default_registry(),
        dispatcher=dispatcher,
        metric_source=metric_source,
        execution_timeout=settings.execution_timeout,
        shutdown_grace=settings.shutdown_grace,
    )
    scheduler = SchedulerService(
        session_factory,
        engine=execution_engine,
        metric_source=metric_source,
        check_interval=settings.scheduler_check_interval,
        max_concurrent=settings.scheduler_max_concurrent,
        threshold_cooldown=timedelta(minutes=settings.threshold_cooldown_minutes),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Cadence scheduler starting up")

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created/verified")

        if settings.scheduler_enabled:
            await scheduler.start()

        yield

        await scheduler.stop()
        await execution_engine.stop()
        await engine.dispose()
        logger.info("Database connection closed")

        logger.info("Cadence scheduler shutting down")

    cadence_app = FastAPI(
        title="Cadence Scheduler",
        description="Scheduled and threshold-triggered task execution with webhook notifications",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store services in app.state for dependency injection
    cadence_app.state.settings = settings
    cadence_app.state.db_engine = engine
    cadence_app.state.session_factory = session_factory
    cadence_app.state.engine = execution_engine
    cadence_app.state.scheduler = scheduler
    cadence_app.state.dispatcher = dispatcher
    cadence_app.state.task_service = TaskService(session_factory)
    cadence_app.state.history = ExecutionHistory(session_factory)
    cadence_app.state.webhook_service = WebhookService(session_factory)
    cadence_app.state.machine_service = MachineService(session_factory)

    cadence_app.add_exception_handler(CadenceError, cadence_error_handler)
    cadence_app.add_exception_handler(RequestValidationError, request_validation_handler)

    # Include routers
    cadence_app.include_router(tasks_router)
    cadence_app.include_router(executions_router)
    cadence_app.include_router(webhooks_router)
    cadence_app.include_router(machines_router)
    cadence_app.include_router(status_router)

    return cadence_app
