from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession
)
from app.core.config import settings


def build_engine(url: str | None = None):
    url = url or settings.database_url
    options = {'echo': False, 'pool_pre_ping': True}
    # пул нужен под параллельные claim/submit/poll
    if url.startswith('postgresql'):
        options.update(pool_size=settings.DB_POOL_SIZE, max_overflow=settings.DB_MAX_OVERFLOW)
    return create_async_engine(url, **options)


engine = build_engine()


AsyncSessionLocal: async_sessionmaker[AsyncSession] = async_sessionmaker(engine, expire_on_commit=False)


async def dispose_engine():
    await engine.dispose()
