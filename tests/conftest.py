"""Pytest configuration and fixtures for cadence tests."""

import asyncio
import json
from datetime import datetime
from typing import Any

import httpx
import pytest

from cadence.app import create_app
from cadence.config import Settings
from cadence.db.engine import create_engine, create_session_factory
from cadence.db.models import Base, TaskType
from cadence.db.repositories.machines import MachineRepository
from cadence.db.repositories.scheduled import ScheduledTaskRepository
from cadence.db.repositories.webhooks import WebhookRepository
from cadence.models.schedule import build_schedule, schedule_columns
from cadence.services.engine import ExecutionEngine
from cadence.services.handlers import MetricSource, TaskHandlerRegistry, custom, health_check
from cadence.services.webhooks import WebhookDispatcher


class WebhookRecorder:
    """Collects outbound webhook requests and answers with a fixed status."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.error: Exception | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, text="ok")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def bodies(self) -> list[Any]:
        return [json.loads(r.content) for r in self.requests]


class Gate:
    """Holds a task body until released."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def handler(self, context: Any) -> dict[str, Any]:
        self.entered.set()
        await self.release.wait()
        return {"projectsProcessed": 2, "tokensSaved": 500}


@pytest.fixture
def database_url(tmp_path):
    """File-backed SQLite so several sessions see the same data."""
    return f"sqlite+aiosqlite:///{tmp_path / 'cadence.db'}"


@pytest.fixture
async def db_engine(database_url):
    """Create a SQLite database engine with all tables."""
    engine = create_engine(database_url)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
async def session_factory(db_engine):
    """Create a session factory for testing."""
    return create_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def recorder():
    return WebhookRecorder()


@pytest.fixture
def gate():
    return Gate()


@pytest.fixture
def handlers(gate):
    """Built-in bodies plus a gated analyze_context body."""
    registry = TaskHandlerRegistry()
    registry.register(TaskType.HEALTH_CHECK, health_check)
    registry.register(TaskType.CUSTOM, custom)
    registry.register(TaskType.ANALYZE_CONTEXT, gate.handler)
    return registry


@pytest.fixture
def dispatcher(session_factory, recorder):
    return WebhookDispatcher(
        session_factory,
        timeout=2.0,
        base_url="https://cadence.example.com",
        transport=recorder.transport,
    )


@pytest.fixture
async def engine(session_factory, handlers, dispatcher, gate):
    """Create an ExecutionEngine with the test handlers."""
    execution_engine = ExecutionEngine(
        session_factory,
        handlers=handlers,
        dispatcher=dispatcher,
        metric_source=MetricSource(session_factory),
        execution_timeout=5,
        shutdown_grace=0.1,
    )
    yield execution_engine
    gate.release.set()
    await execution_engine.drain()


@pytest.fixture
async def make_task(session_factory):
    """Insert a task directly and return its id."""

    async def _make(
        name: str = "Nightly Health",
        task_type: str = "custom",
        schedule_type: str = "manual",
        enabled: bool = True,
        task_config: dict[str, Any] | None = None,
        machine_id: str | None = None,
        last_run_at: datetime | None = None,
        notify_on_success: bool = True,
        notify_on_failure: bool = True,
        **schedule: Any,
    ) -> str:
        async with session_factory() as session:
            repo = ScheduledTaskRepository(session)
            model = await repo.create(
                name=name,
                task_type=task_type,
                schedule=schedule_columns(build_schedule(schedule_type, **schedule)),
                task_config=task_config,
                machine_id=machine_id,
                enabled=enabled,
                notify_on_success=notify_on_success,
                notify_on_failure=notify_on_failure,
            )
            if last_run_at is not None:
                await repo.mark_run(model.task_id, last_run_at=last_run_at, next_run_at=None)
            await session.commit()
            return model.task_id

    return _make


@pytest.fixture
async def make_machine(session_factory):
    async def _make(name: str = "build-01", metrics: dict[str, Any] | None = None) -> str:
        async with session_factory() as session:
            model = await MachineRepository(session).create(
                name=name, hostname=f"{name}.local", platform="linux", metrics=metrics
            )
            await session.commit()
            return model.machine_id

    return _make


@pytest.fixture
async def make_webhook(session_factory):
    async def _make(
        name: str = "Ops Channel",
        webhook_type: str = "generic",
        webhook_url: str = "https://hooks.example.com/services/T000/B000/XXXXXXXX",
        event_types: list[str] | None = None,
        machine_id: str | None = None,
        enabled: bool = True,
    ) -> str:
        async with session_factory() as session:
            model = await WebhookRepository(session).create(
                name=name,
                webhook_type=webhook_type,
                webhook_url=webhook_url,
                event_types=event_types or ["task_completed", "task_failed"],
                machine_id=machine_id,
                enabled=enabled,
            )
            await session.commit()
            return model.webhook_id

    return _make


@pytest.fixture
async def app(database_url, db_engine, handlers, recorder, gate):
    """Application wired to the test database, without the poll loop."""
    settings = Settings(
        database_url=database_url,
        scheduler_enabled=False,
        execution_timeout=5,
    )
    cadence_app = create_app(settings, handlers=handlers, transport=recorder.transport)
    yield cadence_app
    gate.release.set()
    await cadence_app.state.engine.drain()
    await cadence_app.state.db_engine.dispose()


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
