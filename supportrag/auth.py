import hashlib
import hmac
import logging
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from supportrag.config import settings
from supportrag.db import get_session, get_session_factory
from supportrag.models import User
from supportrag.services.access import (
    PRIVILEGED_ROLES,
    ViewerIdentity,
    ViewerScope,
    resolve_viewer_scope,
)

logger = logging.getLogger(__name__)


def hash_api_key(api_key: str) -> str:
    """Hash an API key for comparison."""
    return hashlib.sha256(api_key.encode()).hexdigest()


def verify_api_key(api_key: str | None) -> bool:
    if not api_key or not settings.api_key:
        return False
    return hmac.compare_digest(hash_api_key(api_key), hash_api_key(settings.api_key))


@dataclass
class ViewerContext:
    """Context for an authenticated request on behalf of a CRM user."""

    identity: ViewerIdentity
    scope: ViewerScope
    session: AsyncSession
    session_factory: async_sessionmaker[AsyncSession]


def identity_from_user(user: User) -> ViewerIdentity:
    return ViewerIdentity(
        user_id=user.id,
        role=user.role,
        is_external=user.is_external,
        ticketing_role=user.ticketing_role,
        departments=list(user.departments or []),
    )


async def get_viewer_context(
    x_api_key: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> ViewerContext:
    """
    Authenticate the calling service by API key and load the viewer it acts for.

    The scope is resolved fresh on every request.
    """
    if not verify_api_key(x_api_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-User-Id header",
        )

    user = await session.get(User, x_user_id)
    if user is None:
        logger.warning(f"Rejected request for unknown user {x_user_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unknown user",
        )

    identity = identity_from_user(user)
    scope = await resolve_viewer_scope(session_factory, identity)
    return ViewerContext(
        identity=identity, scope=scope, session=session, session_factory=session_factory
    )


async def require_privileged_viewer(
    ctx: ViewerContext = Depends(get_viewer_context),
) -> ViewerContext:
    """Admin endpoints are limited to admins and managers."""
    if ctx.identity.role not in PRIVILEGED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin or manager role required",
        )
    return ctx
