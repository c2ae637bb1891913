"""Inbound webhook routes: generation providers and billing."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import get_settings
from src.db.models import GenerationKind
from src.db.session import get_db
from src.schemas.callbacks import CallbackParseError, parse_generation_callback
from src.schemas.schemas import WebhookAck
from src.services.billing_service import billing_service, parse_billing_event
from src.services.completion_handler import completion_handler
from src.services.providers import MUSIC_CALLBACK_PATH, VIDEO_CALLBACK_PATH

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhooks"])

settings = get_settings()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


async def _read_json(request: Request) -> tuple[Any, Optional[JSONResponse]]:
    try:
        return await request.json(), None
    except ValueError:
        return None, _error(status.HTTP_400_BAD_REQUEST, "Invalid JSON")


async def _handle_generation_callback(
    kind: GenerationKind, request: Request, db: AsyncSession
) -> JSONResponse:
    body, error = await _read_json(request)
    if error is not None:
        logger.warning(f"Rejected {kind.value} callback with invalid JSON")
        return error

    try:
        callback = parse_generation_callback(body)
    except CallbackParseError as e:
        logger.warning(f"Rejected {kind.value} callback: {e}")
        return _error(status.HTTP_400_BAD_REQUEST, str(e))

    logger.info(f"Received {kind.value} callback for task {callback.task_id} ({callback.subtype})")

    try:
        outcome = await completion_handler.handle_callback(db, kind, callback)
    except Exception:
        logger.exception(f"Failed to process {kind.value} callback for task {callback.task_id}")
        await db.rollback()
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to process callback")

    return JSONResponse(content=WebhookAck(status=outcome.status).model_dump(exclude_none=True))


@router.post(
    MUSIC_CALLBACK_PATH,
    response_model=WebhookAck,
    summary="Music provider callback",
    description="Completion and progress notifications from the music provider.",
)
async def music_generation_callback(request: Request, db: AsyncSession = Depends(get_db)):
    return await _handle_generation_callback(GenerationKind.MUSIC, request, db)


@router.post(
    VIDEO_CALLBACK_PATH,
    response_model=WebhookAck,
    summary="Video provider callback",
    description="Completion and failure notifications from the video provider.",
)
async def video_generation_callback(request: Request, db: AsyncSession = Depends(get_db)):
    return await _handle_generation_callback(GenerationKind.VIDEO, request, db)


@router.post(
    "/webhooks/billing",
    response_model=WebhookAck,
    summary="Billing provider webhook",
    description="Subscription lifecycle events. Events that cannot be attributed "
    "to a user and product are acknowledged and ignored.",
)
async def billing_webhook(
    request: Request,
    authorization: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db),
):
    if settings.billing_webhook_secret:
        expected = f"Bearer {settings.billing_webhook_secret}"
        if authorization != expected:
            return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    body, error = await _read_json(request)
    if error is not None:
        logger.warning("Rejected billing webhook with invalid JSON")
        return error

    event = parse_billing_event(body)
    if event is None:
        return JSONResponse(content={"status": "ignored", "reason": "Invalid payload"})

    try:
        outcome = await billing_service.process_billing_event(db, event)
    except Exception:
        logger.exception(f"Failed to process billing event for user {event.app_user_id}")
        await db.rollback()
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to process webhook")

    return JSONResponse(content=outcome.to_response())
