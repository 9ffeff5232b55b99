from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from ..models.base import Base
from .settings import settings

engine = create_async_engine(settings.database_url, pool_pre_ping=True)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    # Import models so every table is registered on the metadata
    from .. import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
