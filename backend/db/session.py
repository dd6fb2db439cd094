"""
HubOps Database Session Management

Async SQLAlchemy engine and session factory.
"""

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import get_settings

settings = get_settings()


def build_engine(database_url: str, echo: bool = False, **kwargs) -> AsyncEngine:
    """
    Create an async engine for ``database_url``.

    SQLite (tests, local runs) gets explicit BEGIN handling so SAVEPOINTs
    used by the lock helpers behave as they do on PostgreSQL.
    """
    engine_kwargs = {"echo": echo, **kwargs}
    is_sqlite = database_url.startswith("sqlite")
    if not is_sqlite:
        engine_kwargs.setdefault("pool_pre_ping", True)
        engine_kwargs.setdefault("pool_size", 20)
        engine_kwargs.setdefault("max_overflow", 10)

    async_engine = create_async_engine(database_url, **engine_kwargs)

    if is_sqlite:
        @event.listens_for(async_engine.sync_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(async_engine.sync_engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return async_engine


engine = build_engine(settings.database_url, echo=settings.database_echo)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""

    pass
