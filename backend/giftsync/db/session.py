import asyncio
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from giftsync.core.config import settings


def _is_postgres(dsn: str) -> bool:
    return "postgresql" in dsn.lower()


def build_engine(dsn: str | None = None) -> AsyncEngine:
    dsn = dsn or settings.postgres_dsn
    if _is_postgres(dsn):
        return create_async_engine(
            dsn,
            echo=False,
            future=True,
            pool_pre_ping=True,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=settings.db_pool_recycle,
            pool_timeout=settings.db_pool_timeout,
        )
    return create_async_engine(
        dsn,
        echo=False,
        future=True,
        pool_pre_ping=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()


class Base(DeclarativeBase):
    pass


async_session_factory = build_session_factory(engine)

_schema_ready = False
_schema_lock = asyncio.Lock()


async def create_schema(bind: AsyncEngine) -> None:
    from giftsync.models import models as _models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def ensure_schema_ready() -> None:
    """Create DB tables once for environments where startup hooks are skipped."""
    global _schema_ready
    if _schema_ready:
        return

    async with _schema_lock:
        if _schema_ready:
            return
        await create_schema(engine)
        _schema_ready = True


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    await ensure_schema_ready()
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
