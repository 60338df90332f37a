"""
Database Session Management - Async SQLAlchemy session factories.

Two roles: "write" (primary) for anything that appends to the ledger or claims a
checkout session, and "read" (replica, falling back to the primary) for balance
and ledger views. Engines are created on first use so importing the package
never opens a connection.
"""

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Literal

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from inspect_billing.config import settings
from inspect_billing.observability.tracing import instrument_sqlalchemy

Role = Literal["write", "read"]

_engines: dict[Role, AsyncEngine] = {}
_factories: dict[Role, async_sessionmaker[AsyncSession]] = {}


def _url_for(role: Role) -> str:
    return settings.database_url if role == "write" else settings.read_database_url


def _engine(role: Role) -> AsyncEngine:
    engine = _engines.get(role)
    if engine is None:
        engine = create_async_engine(
            _url_for(role),
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=settings.log_level.upper() == "DEBUG",
        )
        instrument_sqlalchemy(engine)
        _engines[role] = engine
    return engine


def _factory(role: Role) -> async_sessionmaker[AsyncSession]:
    factory = _factories.get(role)
    if factory is None:
        # Services hand ORM rows back after commit, so they must stay loaded
        factory = async_sessionmaker(_engine(role), class_=AsyncSession, expire_on_commit=False)
        _factories[role] = factory
    return factory


def get_write_engine() -> AsyncEngine:
    """Primary database engine."""
    return _engine("write")


def get_read_engine() -> AsyncEngine:
    """Replica engine, or the primary when no replica is configured."""
    return _engine("read")


@asynccontextmanager
async def get_write_session() -> AsyncIterator[AsyncSession]:
    """
    Write session for code running outside a request, e.g. the rollover sweep.

    Uncommitted work is rolled back if the block raises.

    Usage:
        async with get_write_session() as session:
            await SubscriptionService(session).sweep_expired()
    """
    async with _factory("write")() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for write database session.

    Usage:
        @router.post("/v1/billing/organizations/{organization_id}/adjustments")
        async def create_adjustment(db: AsyncSession = Depends(get_write_db)):
            ...
    """
    async with _factory("write")() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for read database session (from replica).

    Balance and ledger reads tolerate replica lag: any ledger prefix yields a valid balance.
    """
    async with _factory("read")() as session:
        yield session


async def close_engines() -> None:
    """Dispose every engine (for graceful shutdown)."""
    for role in list(_engines):
        await _engines.pop(role).dispose()
    _factories.clear()
