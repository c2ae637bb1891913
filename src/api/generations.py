"""Generation API routes."""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.auth.security import require_music_owner, require_video_owner, resolve_owner_identity
from src.config import get_settings
from src.db.models import GenerationKind, GenerationOutput, Subject, User
from src.db.session import get_db
from src.middleware.rate_limit import rate_limit_general, rate_limit_generations
from src.schemas.schemas import (
    GenerationRequest,
    GenerationStartResponse,
    OutputResponse,
    SubjectResponse,
    TaskResponse,
)
from src.services.generation_service import StartResult, generation_service
from src.services.providers import ProviderRegistry, get_provider_registry
from src.services.task_registry import PROVIDER_BY_KIND, task_registry

router = APIRouter(prefix="/v1", tags=["Generations"])

settings = get_settings()


def _start_response(result: StartResult) -> GenerationStartResponse:
    return GenerationStartResponse(
        success=result.success,
        subject_id=result.subject_id,
        kind=result.kind,
        code=result.code,
        reason=result.reason,
        queue_id=result.queue_id,
        remaining=result.remaining,
    )


async def _start(
    kind: GenerationKind,
    body: GenerationRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession,
    user: User,
    providers: ProviderRegistry,
) -> GenerationStartResponse:
    owner_id = user.id
    result = await generation_service.start_generation(db, owner_id, body.subject_id, kind)

    if result.success:
        # Drain the queue now instead of waiting for the next beat pump
        background_tasks.add_task(
            generation_service.pump_in_background, PROVIDER_BY_KIND[kind], providers
        )

    return _start_response(result)


@router.post(
    "/generations/music",
    response_model=GenerationStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Generate music for a subject",
    description="Reserve a credit and queue a music generation for one of your subjects.",
)
@rate_limit_generations()
async def generate_music(
    request: Request,
    body: GenerationRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_music_owner),
    providers: ProviderRegistry = Depends(get_provider_registry),
):
    """
    Start a music generation.

    A refused request (usage limit reached, generation already running)
    is still answered with 202 and `success: false` plus a `code`.
    """
    return await _start(GenerationKind.MUSIC, body, background_tasks, db, user, providers)


@router.post(
    "/generations/video",
    response_model=GenerationStartResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Generate a video for a subject",
    description="Reserve credits and queue a video generation for one of your subjects.",
)
@rate_limit_generations()
async def generate_video(
    request: Request,
    body: GenerationRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(require_video_owner),
    providers: ProviderRegistry = Depends(get_provider_registry),
):
    """Start a video generation."""
    return await _start(GenerationKind.VIDEO, body, background_tasks, db, user, providers)


def _output_response(output: Optional[GenerationOutput]) -> Optional[OutputResponse]:
    if output is None:
        return None
    return OutputResponse(
        id=output.id,
        output_index=output.output_index,
        status=output.status.value,
        result_ref=output.result_ref,
        title=output.title,
        duration=output.duration,
        result_metadata=output.result_metadata,
        error_message=output.error_message,
        created_at=output.created_at,
        updated_at=output.updated_at,
    )


@router.get(
    "/tasks/{task_id}",
    response_model=TaskResponse,
    summary="Get generation task",
    description="Get a generation task and the status of each of its outputs.",
)
@rate_limit_general()
async def get_task(
    request: Request,
    task_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(resolve_owner_identity),
):
    """Get task details including all output statuses."""
    task = await task_registry.get_task(db, task_id, owner_id=user.id)

    if not task:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {task_id} not found",
        )

    return TaskResponse(
        task_id=task.task_id,
        kind=task.kind.value,
        subject_id=task.subject_id,
        output_count=task.output_count,
        credit_cost=task.credit_cost,
        created_at=task.created_at,
        outputs=[_output_response(o) for o in task.outputs],
    )


@router.get(
    "/subjects/{subject_id}",
    response_model=SubjectResponse,
    summary="Get subject results",
    description="Get a subject's primary audio and video results.",
)
@rate_limit_general()
async def get_subject(
    request: Request,
    subject_id: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(resolve_owner_identity),
):
    """Get the primary results of a subject you own."""
    subject = await db.get(Subject, subject_id, populate_existing=True)

    if not subject or subject.owner_id != user.id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Subject {subject_id} not found",
        )

    primary_audio = None
    if subject.primary_audio_output_id:
        primary_audio = await task_registry.get_output(db, subject.primary_audio_output_id)

    primary_video = None
    if subject.primary_video_output_id:
        primary_video = await task_registry.get_output(db, subject.primary_video_output_id)

    in_progress = False
    for kind in GenerationKind:
        if await task_registry.has_pending_generation(
            db, subject.id, kind, settings.pending_generation_window_ms
        ):
            in_progress = True
            break

    return SubjectResponse(
        id=subject.id,
        title=subject.title,
        primary_audio_output_id=subject.primary_audio_output_id,
        primary_video_output_id=subject.primary_video_output_id,
        primary_audio=_output_response(primary_audio),
        primary_video=_output_response(primary_video),
        generation_in_progress=in_progress,
    )
