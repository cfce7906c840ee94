from __future__ import annotations
"""Async task API: submit long-running generations and poll them by task_id."""

import logging
import time
from typing import Any, Awaitable, Callable

from fastapi import APIRouter, Depends, Header, HTTPException

from genrelay.config import get_settings
from genrelay.schemas.task import (
    ImageCompositionRequest,
    ImageGenerationRequest,
    TaskCreated,
    TaskListResponse,
    TaskRead,
    VideoGenerationRequest,
)
from genrelay.services.image_gen import compose_images, generate_images, resolve_size
from genrelay.services.providers.dreamina import DreaminaClient, pick_token
from genrelay.services.video_gen import generate_video
from genrelay.tasks import TaskManager, TaskStatus, TaskType, get_task_manager

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/async", tags=["Async Tasks"])
settings = get_settings()

VideoRunner = Callable[..., Awaitable[str]]
ImageRunner = Callable[..., Awaitable[list[str]]]


def get_video_runner() -> VideoRunner:
    """Dependency: the coroutine that turns a request into a video URL."""
    return generate_video


def get_image_runner() -> ImageRunner:
    return generate_images


def get_composition_runner() -> ImageRunner:
    return compose_images


def _refresh_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    try:
        return pick_token(authorization)
    except ValueError as e:
        raise HTTPException(status_code=401, detail=str(e))


def _created(job) -> TaskCreated:
    return TaskCreated(
        task_id=job.task_id,
        status=job.status.value,
        type=job.type.value,
        created_at=job.created_at,
        poll_url=f"{router.prefix}/tasks/{job.task_id}",
    )


@router.post("/videos/generations", response_model=TaskCreated)
async def create_video_generation(
    req: VideoGenerationRequest,
    authorization: str | None = Header(None),
    manager: TaskManager = Depends(get_task_manager),
    runner: VideoRunner = Depends(get_video_runner),
):
    """Queue a video generation. Returns immediately with a task_id to poll."""
    token = _refresh_token(authorization)
    model = req.model or settings.VIDEO_DEFAULT_MODEL
    frames = req.frames
    # task_id is only known once create() returns; the executor runs later.
    ref: dict[str, str] = {}

    async def execute() -> dict[str, Any]:
        client = DreaminaClient(token)
        try:
            url = await runner(
                client,
                prompt=req.prompt,
                model=model,
                ratio=req.ratio,
                resolution=req.resolution,
                duration=req.duration,
                images=frames,
                on_progress=lambda p: manager.report_progress(ref["task_id"], p),
            )
        finally:
            await client.aclose()
        return {
            "created": int(time.time()),
            "data": [{"url": url, "revised_prompt": req.prompt}],
        }

    job = manager.create(
        TaskType.VIDEO_GENERATION,
        execute,
        params={
            "model": model,
            "prompt": req.prompt,
            "ratio": req.ratio,
            "resolution": req.resolution,
            "duration": req.duration,
            "frames": len(frames),
        },
    )
    ref["task_id"] = job.task_id
    return _created(job)


def _check_size(resolution: str, ratio: str) -> None:
    try:
        resolve_size(resolution, ratio)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/images/generations", response_model=TaskCreated)
async def create_image_generation(
    req: ImageGenerationRequest,
    authorization: str | None = Header(None),
    manager: TaskManager = Depends(get_task_manager),
    runner: ImageRunner = Depends(get_image_runner),
):
    """Queue a text-to-image generation."""
    token = _refresh_token(authorization)
    _check_size(req.resolution, req.ratio)
    model = req.model or settings.IMAGE_DEFAULT_MODEL
    ref: dict[str, str] = {}

    async def execute() -> dict[str, Any]:
        client = DreaminaClient(token)
        try:
            urls = await runner(
                client,
                prompt=req.prompt,
                model=model,
                ratio=req.ratio,
                resolution=req.resolution,
                negative_prompt=req.negative_prompt,
                sample_strength=req.sample_strength,
                intelligent_ratio=req.intelligent_ratio,
                on_progress=lambda p: manager.report_progress(ref["task_id"], p),
            )
        finally:
            await client.aclose()
        return {"created": int(time.time()), "data": [{"url": url} for url in urls]}

    job = manager.create(
        TaskType.IMAGE_GENERATION,
        execute,
        params={
            "model": model,
            "prompt": req.prompt,
            "ratio": req.ratio,
            "resolution": req.resolution,
        },
    )
    ref["task_id"] = job.task_id
    return _created(job)


@router.post("/images/compositions", response_model=TaskCreated)
async def create_image_composition(
    req: ImageCompositionRequest,
    authorization: str | None = Header(None),
    manager: TaskManager = Depends(get_task_manager),
    runner: ImageRunner = Depends(get_composition_runner),
):
    """Queue a blend of 1-10 reference images under a prompt."""
    token = _refresh_token(authorization)
    _check_size(req.resolution, req.ratio)
    model = req.model or settings.IMAGE_DEFAULT_MODEL
    image_urls = req.image_urls
    ref: dict[str, str] = {}

    async def execute() -> dict[str, Any]:
        client = DreaminaClient(token)
        try:
            urls = await runner(
                client,
                prompt=req.prompt,
                images=image_urls,
                model=model,
                ratio=req.ratio,
                resolution=req.resolution,
                negative_prompt=req.negative_prompt,
                sample_strength=req.sample_strength,
                on_progress=lambda p: manager.report_progress(ref["task_id"], p),
            )
        finally:
            await client.aclose()
        return {
            "created": int(time.time()),
            "data": [{"url": url} for url in urls],
            "input_images": len(image_urls),
            "composition_type": "multi_image_synthesis",
        }

    job = manager.create(
        TaskType.IMAGE_COMPOSITION,
        execute,
        params={
            "model": model,
            "prompt": req.prompt,
            "ratio": req.ratio,
            "resolution": req.resolution,
            "imageCount": len(image_urls),
        },
    )
    ref["task_id"] = job.task_id
    return _created(job)


@router.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(task_id: str, manager: TaskManager = Depends(get_task_manager)):
    """Current snapshot of one task."""
    job = manager.get(task_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    return TaskRead(**job.to_dict())


@router.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    status: TaskStatus | None = None,
    manager: TaskManager = Depends(get_task_manager),
):
    """All tracked tasks, newest first, plus per-status counts."""
    return TaskListResponse(
        tasks=[TaskRead(**job.to_dict()) for job in manager.list(status)],
        stats=manager.stats(),
    )
