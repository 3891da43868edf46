"""Password hashing and session tokens.

Passwords: bcrypt directly (no passlib wrapper). ``verify_password`` never
raises; a malformed hash simply fails verification.

Tokens: python-jose HS256 JWTs carrying ``sub`` (user id), ``email`` and
``role``. Claims are minted from the Store at login/registration, never from
the cache. ``decode_access_token`` returns None on any failure so callers treat
every bad token as "not authenticated".
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache

import bcrypt
from jose import JWTError, jwt

from taskboard.core.config import get_settings
from taskboard.models import Role, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Claims:
    subject_id: uuid.UUID
    role: Role
    email: str


def hash_password(plain: str) -> str:
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


@lru_cache
def dummy_hash() -> str:
    """Hash compared against when the login email is unknown.

    Running bcrypt on every login attempt keeps response time independent of
    whether the email is registered.
    """
    return hash_password("taskboard-timing-equalizer")


def check_credentials(plain: str, hashed: str | None) -> bool:
    """Verify a login password, running bcrypt even when no account matched."""
    if hashed is None:
        verify_password(plain, dummy_hash())
        return False
    return verify_password(plain, hashed)


def create_access_token(user: User, expire_seconds: int = 0) -> str:
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role.value,
        "iat": now,
        "exp": now + timedelta(seconds=duration),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Claims | None:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        return Claims(
            subject_id=uuid.UUID(str(payload["sub"])),
            role=Role(payload["role"]),
            email=str(payload["email"]),
        )
    except JWTError as e:
        logger.info(f"Rejected token: {e}")
        return None
    except (KeyError, ValueError):
        logger.info("Rejected token with malformed claims")
        return None
