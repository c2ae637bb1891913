"""API-key identity: issue keys and resolve the user behind a request."""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import ApiKey, User
from src.db.session import get_db

# Keys are stored only as bcrypt hashes
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

API_KEY_PREFIX = "gk_"
API_KEY_LENGTH = len(API_KEY_PREFIX) + 32
KEY_PREFIX_LENGTH = len(API_KEY_PREFIX) + 8


def generate_api_key() -> tuple[str, str]:
    """
    Generate a new API key.
    Returns: (full_key, lookup_prefix)
    Format: gk_ followed by 32 hex chars; the lookup prefix is "gk_" + 8 chars.
    """
    full_key = f"{API_KEY_PREFIX}{secrets.token_hex(16)}"
    return full_key, full_key[:KEY_PREFIX_LENGTH]


def hash_api_key(api_key: str) -> str:
    return pwd_context.hash(api_key)


def verify_api_key(plain_key: str, hashed_key: str) -> bool:
    return pwd_context.verify(plain_key, hashed_key)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def find_active_key(db: AsyncSession, full_key: str) -> Optional[ApiKey]:
    """Return the active, unexpired key matching ``full_key``, if any."""
    result = await db.execute(
        select(ApiKey).where(
            ApiKey.key_prefix == full_key[:KEY_PREFIX_LENGTH],
            ApiKey.is_active == True,  # noqa: E712
        )
    )
    now = datetime.now(timezone.utc)
    for candidate in result.scalars().all():
        expires_at = _as_utc(candidate.expires_at)
        if expires_at is not None and expires_at < now:
            continue
        if verify_api_key(full_key, candidate.key_hash):
            return candidate
    return None


def _presented_key(authorization: Optional[str], x_api_key: Optional[str]) -> str:
    """Pull the raw key from ``Authorization: Bearer`` or ``X-API-Key``."""
    if authorization:
        scheme, _, credential = authorization.partition(" ")
        if scheme != "Bearer" or not credential:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authorization scheme. Use 'Bearer <api_key>'",
            )
        key = credential
    else:
        key = x_api_key

    if not key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Provide via 'Authorization: Bearer <key>' or 'X-API-Key' header",
        )
    if not key.startswith(API_KEY_PREFIX) or len(key) != API_KEY_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key format",
        )
    return key


class OwnerIdentity:
    """
    FastAPI dependency resolving the user that owns the presented API key.

    With ``required_scopes`` the key must carry at least one of them. The
    key and the owner's id are left on ``request.state``; the rate limiter
    buckets by ``user_id``.
    """

    def __init__(self, required_scopes: Optional[list[str]] = None):
        self.required_scopes = set(required_scopes or [])

    async def __call__(
        self,
        request: Request,
        authorization: Optional[str] = Header(None),
        x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
        db: AsyncSession = Depends(get_db),
    ) -> User:
        api_key = await find_active_key(db, _presented_key(authorization, x_api_key))
        if api_key is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid or expired API key",
            )

        if self.required_scopes and not self.required_scopes & set(api_key.scopes or []):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"API key lacks required scope(s): {sorted(self.required_scopes)}",
            )

        user = await db.get(User, api_key.user_id)
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="API key has no owner",
            )

        request.state.api_key = api_key
        request.state.user_id = user.id
        return user


resolve_owner_identity = OwnerIdentity()
require_music_owner = OwnerIdentity(required_scopes=["music"])
require_video_owner = OwnerIdentity(required_scopes=["video"])


async def create_api_key(
    db: AsyncSession,
    name: str,
    user_id: str,
    scopes: list[str],
    expires_in_days: Optional[int] = None,
) -> tuple[ApiKey, str]:
    """
    Issue a key for ``user_id``. Flushes; the caller commits.
    Returns: (ApiKey model, full_key_string)
    """
    full_key, prefix = generate_api_key()

    expires_at = None
    if expires_in_days:
        expires_at = datetime.now(timezone.utc) + timedelta(days=expires_in_days)

    api_key = ApiKey(
        key_hash=hash_api_key(full_key),
        key_prefix=prefix,
        name=name,
        user_id=user_id,
        scopes=scopes,
        expires_at=expires_at,
    )
    db.add(api_key)
    await db.flush()
    await db.refresh(api_key)

    return api_key, full_key
