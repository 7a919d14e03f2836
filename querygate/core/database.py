from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from querygate.core.config import Settings


# One shared engine per process; the skill owns it and disposes it on shutdown
def build_engine(settings: Settings) -> AsyncEngine:
    options: Dict[str, Any] = {"echo": settings.database.echo}

    # SQLite pools don't take sizing options
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            pool_recycle=settings.database.pool_recycle_seconds,
            pool_pre_ping=True,
        )

    return create_async_engine(settings.database_url, **options)
