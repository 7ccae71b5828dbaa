from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from studyquest.core.settings import settings
from studyquest.models.base import Base


def build_engine(url: str | None = None) -> AsyncEngine:
    target = url or settings.database_url
    if target.startswith("sqlite"):
        return create_async_engine(target)
    return create_async_engine(target, pool_pre_ping=True)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


async def create_all(bind: AsyncEngine) -> None:
    # Registers every table on Base.metadata.
    import studyquest.models.entities  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
