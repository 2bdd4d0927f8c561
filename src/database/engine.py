from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.config import settings


def engine_options(url: str, pool_size: int, max_overflow: int) -> dict:
    """Pool settings for ``url``.

    Server databases get a sized, pre-pinged pool. SQLite gets one shared
    connection so every session sees the same (possibly in-memory) database.
    """
    if make_url(url).get_backend_name() == "sqlite":
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


def build_async_engine(url: str | None = None, **overrides) -> AsyncEngine:
    url = url or settings.database_url
    options = engine_options(url, settings.database_pool_size, settings.database_max_overflow)
    options["echo"] = settings.environment == "development"
    options.update(overrides)
    return create_async_engine(url, **options)


def build_sync_engine(url: str | None = None, **overrides) -> Engine:
    """Synchronous engine for Celery tasks."""
    url = url or settings.database_url_sync
    options = engine_options(url, settings.database_sync_pool_size, 0)
    options.update(overrides)
    return create_engine(url, **options)


engine = build_async_engine()

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

sync_engine = build_sync_engine()
