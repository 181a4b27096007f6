from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from core.config import settings

DATABASE_URL = settings.DATABASE_URL


def make_engine(url: str = DATABASE_URL) -> AsyncEngine:
    return create_async_engine(url, echo=False, future=True)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


engine = make_engine()
SessionLocal = make_sessionmaker(engine)
