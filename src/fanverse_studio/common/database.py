"""Async SQLAlchemy plumbing for Fanverse Studio.

Provides the declarative Base, the account-scoped FanverseModel mixin,
a generic BaseRepository, and the engine/session lifecycle used by the
FastAPI get_db_session dependency.
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Generic, TypeVar

from sqlalchemy import DateTime, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from fanverse_studio.common.observability import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base shared by every fv_ table."""


class TimestampedModel(Base):
    """Abstract base supplying id, created_at, and updated_at."""

    __abstract__ = True

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
    )


class FanverseModel(TimestampedModel):
    """Abstract base for rows owned by a single account.

    Every query and update against a FanverseModel table must filter by
    account_id; no cross-account mutation is permitted.
    """

    __abstract__ = True

    account_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning account identifier",
    )


ModelT = TypeVar("ModelT", bound=TimestampedModel)


class BaseRepository(Generic[ModelT]):
    """Minimal create/get repository over one ORM model."""

    def __init__(self, session: AsyncSession, model: type[ModelT]) -> None:
        self._session = session
        self._model = model

    async def create(self, instance: ModelT) -> ModelT:
        """Add the instance to the session and flush so defaults are populated."""
        self._session.add(instance)
        await self._session.flush()
        return instance

    async def get_by_id(self, record_id: uuid.UUID) -> ModelT | None:
        """Fetch a row by primary key."""
        return await self._session.get(self._model, record_id)


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_database(database_url: str, echo: bool = False) -> None:
    """Create the process-wide async engine and session factory."""
    global _engine, _session_factory
    _engine = create_async_engine(database_url, echo=echo, pool_pre_ping=True)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    logger.info("database_initialized", url=_engine.url.render_as_string(hide_password=True))


async def close_database() -> None:
    """Dispose of the engine connection pool."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request.

    Commits when the request handler returns normally and rolls back when
    it raises.
    """
    if _session_factory is None:
        raise RuntimeError("Database is not initialised; call init_database() first")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
