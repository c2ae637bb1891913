"""Operator routes: provision users and manage their API keys."""

import logging
import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.security import create_api_key
from src.config import get_settings
from src.db.models import ApiKey, User
from src.db.session import get_db
from src.schemas.schemas import (
    ApiKeyCreate,
    ApiKeyInfo,
    ApiKeyResponse,
    UserCreate,
    UserCreateResponse,
)
from src.services.ledger import usage_ledger

logger = logging.getLogger(__name__)

settings = get_settings()


def require_admin(x_admin_key: Optional[str] = Header(None)) -> None:
    """Operator calls carry the service secret in ``X-Admin-Key``."""
    if not x_admin_key or not secrets.compare_digest(x_admin_key, settings.secret_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin key",
        )


router = APIRouter(
    prefix="/v1/admin",
    tags=["Admin"],
    dependencies=[Depends(require_admin)],
)


async def _key_or_404(db: AsyncSession, key_id: str) -> ApiKey:
    api_key = await db.get(ApiKey, key_id)
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"API key {key_id} not found",
        )
    return api_key


@router.post(
    "/users",
    response_model=UserCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Provision a user",
    description="Create a user on the free tier together with a music and video API key.",
)
async def create_user(request: UserCreate, db: AsyncSession = Depends(get_db)):
    """The full API key appears in this response only."""
    user = User(external_id=request.external_id)
    db.add(user)
    await db.commit()
    user_id = user.id

    # The ledger commits the subscription itself
    subscription = await usage_ledger.create_free_subscription(db, user_id)
    subscription_id, tier = subscription.id, subscription.tier

    key, full_key = await create_api_key(
        db, name=request.key_name, user_id=user_id, scopes=["music", "video"]
    )
    key_prefix = key.key_prefix
    await db.commit()

    logger.info(f"Provisioned user {user_id} on tier {tier}")
    return UserCreateResponse(
        user_id=user_id,
        subscription_id=subscription_id,
        tier=tier,
        api_key=full_key,
        key_prefix=key_prefix,
    )


@router.post(
    "/api-keys",
    response_model=ApiKeyResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Issue an API key",
    description="Issue an additional key for an existing user.",
)
async def create_new_api_key(request: ApiKeyCreate, db: AsyncSession = Depends(get_db)):
    if await db.get(User, request.user_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User {request.user_id} not found",
        )

    key, full_key = await create_api_key(
        db,
        name=request.name,
        user_id=request.user_id,
        scopes=list(request.scopes),
        expires_in_days=request.expires_in_days,
    )
    await db.commit()

    info = ApiKeyInfo.model_validate(key)
    return ApiKeyResponse(api_key=full_key, **info.model_dump(exclude={"is_active"}))


@router.get(
    "/api-keys",
    response_model=list[ApiKeyInfo],
    summary="List API keys",
    description="Key metadata only; full keys are never stored.",
)
async def list_api_keys(
    include_inactive: bool = Query(False, description="Include revoked keys"),
    user_id: Optional[str] = Query(None, description="Only keys owned by this user"),
    db: AsyncSession = Depends(get_db),
):
    query = select(ApiKey).order_by(ApiKey.created_at.desc())
    if not include_inactive:
        query = query.where(ApiKey.is_active == True)  # noqa: E712
    if user_id:
        query = query.where(ApiKey.user_id == user_id)

    result = await db.execute(query)
    return [ApiKeyInfo.model_validate(k) for k in result.scalars().all()]


@router.get("/api-keys/{key_id}", response_model=ApiKeyInfo, summary="Get API key details")
async def get_api_key(key_id: str, db: AsyncSession = Depends(get_db)):
    return ApiKeyInfo.model_validate(await _key_or_404(db, key_id))


@router.delete(
    "/api-keys/{key_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Revoke an API key",
    description="Deactivate a key. The row is kept for auditing.",
)
async def revoke_api_key(key_id: str, db: AsyncSession = Depends(get_db)):
    api_key = await _key_or_404(db, key_id)
    api_key.is_active = False
    await db.commit()
    logger.info(f"Revoked API key {key_id}")
