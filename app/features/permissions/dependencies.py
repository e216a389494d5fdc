"""
FastAPI dependencies for the permissions feature.

Routes never talk to the stores directly; they get an AuthorizationService
bound to the request's session.
"""
from typing import Callable
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import AsyncSessionLocal, get_db
from app.features.permissions.locks import entity_locks
from app.features.permissions.service import AuthorizationService


def get_session_factory() -> Callable[[], AsyncSession]:
    """Session factory used for parallel fan-out reads; overridable in tests."""
    return AsyncSessionLocal


async def get_authorization_service(
    db: AsyncSession = Depends(get_db),
    session_factory: Callable[[], AsyncSession] = Depends(get_session_factory),
) -> AuthorizationService:
    """
    Dependency for the authorization service.

    Usage in FastAPI routes:
        @router.get("/roles")
        async def list_roles(service: AuthorizationService = Depends(get_authorization_service)):
            return await service.list_roles()
    """
    return AuthorizationService(db, locks=entity_locks, session_factory=session_factory)
