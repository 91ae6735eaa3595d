from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from reservation_engine.config import DATABASE_URL
from reservation_engine.models import Base

__all__ = ["Base", "engine", "AsyncSessionLocal", "make_session_factory", "get_session", "init_db"]


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


engine = create_async_engine(DATABASE_URL, future=True)
AsyncSessionLocal = make_session_factory(engine)


async def get_session():
    async with AsyncSessionLocal() as session:
        yield session


async def init_db(bind: AsyncEngine = engine):
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
