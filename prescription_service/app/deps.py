from typing import AsyncGenerator, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .authorization import AuthorizationResolver
from .chain import ChainAuthority
from .db import async_session_factory
from .errors import DependencyError
from .metrics import MetricsRecorder
from .pinning import ContentPinner
from .services import RequestLifecycle
from .settings import settings


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one database session per HTTP request."""
    async with async_session_factory() as session:
        yield session


def get_optional_chain(request: Request) -> Optional[ChainAuthority]:
    return getattr(request.app.state, "chain", None)


def get_pinner(request: Request) -> ContentPinner:
    pinner = getattr(request.app.state, "pinner", None)
    if pinner is None:
        raise DependencyError("Pinning service is not configured")
    return pinner


def get_metrics(request: Request) -> Optional[MetricsRecorder]:
    return getattr(request.app.state, "metrics", None)


def get_lifecycle(
    session: AsyncSession = Depends(get_session),
    pinner: ContentPinner = Depends(get_pinner),
    metrics: Optional[MetricsRecorder] = Depends(get_metrics),
    chain: Optional[ChainAuthority] = Depends(get_optional_chain),
) -> RequestLifecycle:
    return RequestLifecycle(
        session,
        pinner,
        metrics=metrics,
        chain=chain,
        require_registered_doctor=settings.require_registered_doctor,
    )


def get_resolver(
    session: AsyncSession = Depends(get_session),
    chain: Optional[ChainAuthority] = Depends(get_optional_chain),
) -> AuthorizationResolver:
    return AuthorizationResolver(session, chain)
