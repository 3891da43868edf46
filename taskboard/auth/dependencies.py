"""FastAPI dependency resolving the request's actor.

The actor comes from a Bearer JWT whose signature has been verified, and whose
claims still match the Store. A deleted user, or a user whose email or role
changed since the token was minted, is treated as unauthenticated and must log
in again. The cache is not consulted here.

``get_current_actor`` never raises: a missing or rejected token yields None and
the policy engine turns that into ``AuthenticationRequired`` for operations
that need an actor.
"""

import logging
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.auth.policy import Actor
from taskboard.core.security import decode_access_token
from taskboard.database import get_db
from taskboard.models import User

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Actor | None:
    if credentials is None:
        return None

    claims = decode_access_token(credentials.credentials)
    if claims is None:
        return None

    user = await db.get(User, claims.subject_id)
    if user is None or user.email != claims.email or user.role != claims.role:
        logger.info(f"Stale session for {claims.subject_id}, re-authentication required")
        return None

    return Actor(id=user.id, role=user.role)


ActorDep = Annotated[Actor | None, Depends(get_current_actor)]
