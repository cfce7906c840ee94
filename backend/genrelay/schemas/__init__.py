"""Pydantic v2 schemas package."""

from genrelay.schemas.task import (
    ImageCompositionRequest,
    ImageGenerationRequest,
    TaskCreated,
    TaskListResponse,
    TaskRead,
    TaskStats,
    VideoGenerationRequest,
)

__all__ = [
    "ImageCompositionRequest",
    "ImageGenerationRequest",
    "TaskCreated",
    "TaskListResponse",
    "TaskRead",
    "TaskStats",
    "VideoGenerationRequest",
]
