from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from .config import DATABASE_URL, DB_TIMEOUT_SECONDS


def connect_args_for(database_url: str, timeout: float = DB_TIMEOUT_SECONDS) -> dict:
    # driver level limits: connect + per statement for asyncpg, busy wait for sqlite
    if database_url.startswith("postgresql+asyncpg"):
        return {"timeout": timeout, "command_timeout": timeout}
    if database_url.startswith("sqlite"):
        return {"timeout": timeout}
    return {}


def get_engine(database_url: str):
    return create_async_engine(
        database_url,
        echo=False,
        future=True,
        pool_timeout=DB_TIMEOUT_SECONDS,
        connect_args=connect_args_for(database_url),
    )


def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False
    )


engine = get_engine(DATABASE_URL)
SessionLocal = get_session(engine)

Base = declarative_base()


async def get_db():
    async with SessionLocal() as session:
        yield session
