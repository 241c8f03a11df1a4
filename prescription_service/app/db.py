from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from .settings import settings


def make_engine(url: str) -> AsyncEngine:
    connect_args: Dict[str, Any] = {}
    if url.startswith("sqlite"):
        # concurrent writers wait on the file lock instead of failing at once
        connect_args["timeout"] = 30
    return create_async_engine(url, echo=False, connect_args=connect_args)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Sessions keep loaded rows usable after commit; reads refresh explicitly."""
    return async_sessionmaker(bind=bind, expire_on_commit=False, class_=AsyncSession)


engine = make_engine(settings.database_url)

async_session_factory = make_session_factory(engine)


class Base(DeclarativeBase):
    pass
