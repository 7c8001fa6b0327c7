from collections.abc import AsyncGenerator

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.database.models import Base


logger = structlog.get_logger(__name__)


def _build_engine(url: str) -> AsyncEngine:
    if url.startswith('sqlite'):
        return create_async_engine(url, connect_args={'check_same_thread': False})
    return create_async_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


engine: AsyncEngine = _build_engine(settings.DATABASE_URL)

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create missing tables. Production schemas are managed by Alembic; this covers local SQLite runs."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info('Database schema ensured', url=engine.url.render_as_string(hide_password=True))


async def close_db() -> None:
    await engine.dispose()
