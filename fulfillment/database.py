from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from fulfillment.config import settings
from fulfillment.infrastructure.db_schema import metadata

engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    """Creates the tables when migrations are not used (local runs)"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
