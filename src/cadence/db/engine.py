"""Database engine and session management.

PostgreSQL (asyncpg) is the production backend. SQLite (aiosqlite) is
supported for local runs and tests.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def _sqlite_engine(database_url: str, echo: bool) -> AsyncEngine:
    engine = create_async_engine(database_url, echo=echo)

    @event.listens_for(engine.sync_engine, "connect")
    def on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
        # SQLAlchemy emits BEGIN itself, see on_begin
        dbapi_connection.isolation_level = None

    # Writers take the lock at BEGIN; a concurrent claim waits on the busy
    # timeout and then sees the committed row.
    @event.listens_for(engine.sync_engine, "begin")
    def on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_engine(
    database_url: str,
    pool_size: int = 20,
    max_overflow: int = 30,
    echo: bool = False,
    statement_timeout: int = 30000,
    command_timeout: int = 30,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine for ``database_url``.

    Args:
        database_url: postgresql+asyncpg://... or sqlite+aiosqlite://...
        pool_size: Connections kept in the pool (PostgreSQL only)
        max_overflow: Connections allowed beyond pool_size (PostgreSQL only)
        echo: Log SQL statements
        statement_timeout: Server-side statement timeout in milliseconds
        command_timeout: asyncpg command timeout in seconds

    Returns:
        Configured AsyncEngine instance
    """
    if database_url.startswith("sqlite"):
        return _sqlite_engine(database_url, echo)

    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_timeout=30,
        connect_args={
            "command_timeout": command_timeout,
            "server_settings": {"statement_timeout": str(statement_timeout)},
        },
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory whose objects stay readable after commit."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def get_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Unit of work: commits when the block exits cleanly, rolls back otherwise.

    Example:
        async with get_session(session_factory) as session:
            await ScheduledTaskRepository(session).soft_delete(task_id)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
