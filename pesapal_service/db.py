from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from sqlalchemy.orm import sessionmaker
from .config import settings

DATABASE_URL = settings.database_url


def make_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, echo=False, future=True)


def make_session_factory(bind: AsyncEngine):
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# async engine
engine: AsyncEngine = make_engine(DATABASE_URL)

async_session = make_session_factory(engine)

# helper to create tables (call at startup)
async def init_db(bind: AsyncEngine = engine):
    # importing registers the tables on SQLModel.metadata
    from . import models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
