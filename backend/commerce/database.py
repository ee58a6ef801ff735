"""Async SQLAlchemy plumbing: engine, sessions, declarative base and mixins.

Sessions never expire attributes on commit. Services commit local state before
calling the payment gateway and keep using the same objects afterwards.
"""

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from commerce.config import settings


def _engine_kwargs(url: str) -> dict:
    # SQLite (local runs) has no connection pool sizing
    if url.startswith("sqlite"):
        return {}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


engine = create_async_engine(
    settings.async_database_url,
    echo=settings.debug,
    **_engine_kwargs(settings.async_database_url),
)

async_session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    """Declarative base for every commerce table."""


class TimestampMixin:
    """Row bookkeeping, set by the database."""

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(server_default=func.now(), onupdate=func.now())


class UUIDPrimaryKeyMixin:
    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Session for work outside a request (scripts, scheduled jobs).

    Rolls back on error; callers commit their own units of work.
    """
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncIterator[AsyncSession]:
    """Request-scoped session for FastAPI dependency injection.

    Services commit their own transitions. Whatever is still pending when the
    route returns is committed here; anything raised rolls it back::

        @router.get("/subscription")
        async def get_subscription(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with session_scope() as session:
        yield session
        await session.commit()
