from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine,async_sessionmaker,AsyncSession
from sqlmodel import SQLModel
from orderflow.config.settings import config_settings
from orderflow.db.utils import _normalize_db_url


def build_engine(url: str | None = None, echo: bool | None = None) -> AsyncEngine:
    db_url = _normalize_db_url(url or config_settings.DATABASE_URL)
    connect_args = {}
    if db_url.startswith("sqlite"):
        # concurrent writers wait for the file lock instead of failing with "database is locked"
        connect_args["timeout"] = 30
    return create_async_engine(db_url, echo=config_settings.DB_ECHO if echo is None else echo,
                               pool_pre_ping=True, connect_args=connect_args)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine,class_=AsyncSession,expire_on_commit=False)


async def create_all_tables(engine: AsyncEngine) -> None:
    # imported for its side effect of registering every table on SQLModel.metadata
    from orderflow.schema import full_schema  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
