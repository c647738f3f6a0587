from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from discount_engine.core.config import settings


def use_immediate_sqlite_transactions(engine: AsyncEngine) -> AsyncEngine:
    """Open every SQLite transaction with ``BEGIN IMMEDIATE``.

    SQLite ignores ``FOR UPDATE``; taking the write lock at BEGIN serialises
    concurrent redemptions the way the row lock does on PostgreSQL, and lets
    savepoints nest inside a real transaction.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection: Any, _connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_async_engine(settings.database_url, future=True, echo=False, connect_args=connect_args)
if settings.database_url.startswith("sqlite"):
    use_immediate_sqlite_transactions(engine)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a session for one unit of work (one evaluation or one order completion)."""
    async with SessionLocal() as session:
        yield session
