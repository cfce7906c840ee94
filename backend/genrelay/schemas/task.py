from __future__ import annotations
"""Pydantic v2 schemas for async generation tasks."""

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class VideoGenerationRequest(BaseModel):
    """Schema for submitting an async video generation."""

    model: str | None = None
    prompt: str = Field(..., min_length=1)
    ratio: str = "1:1"
    resolution: str = "720p"
    duration: int = 5
    file_paths: list[str] = Field(default_factory=list, max_length=2)
    filePaths: list[str] = Field(default_factory=list, max_length=2)

    @model_validator(mode="after")
    def _check_duration(self):
        if self.duration not in (5, 10):
            raise ValueError(f"duration must be 5 or 10 seconds, got {self.duration}")
        return self

    @property
    def frames(self) -> list[str]:
        """First/last frame sources; camelCase ``filePaths`` wins when both are given."""
        return self.filePaths or self.file_paths


class ImageGenerationRequest(BaseModel):
    """Schema for submitting an async text-to-image generation."""

    model: str | None = None
    prompt: str = Field(..., min_length=1)
    negative_prompt: str | None = None
    ratio: str = "1:1"
    resolution: str = "2k"
    intelligent_ratio: bool = False
    sample_strength: float = Field(0.5, ge=0, le=1)
    response_format: Literal["url"] = "url"


class ImageRef(BaseModel):
    url: str = Field(..., min_length=1)


class ImageCompositionRequest(BaseModel):
    """Schema for blending reference images under a prompt."""

    model: str | None = None
    prompt: str = Field(..., min_length=1)
    images: list[str | ImageRef] = Field(..., min_length=1, max_length=10)
    negative_prompt: str | None = None
    ratio: str = "1:1"
    resolution: str = "2k"
    sample_strength: float = Field(0.5, ge=0, le=1)
    response_format: Literal["url"] = "url"

    @property
    def image_urls(self) -> list[str]:
        return [image if isinstance(image, str) else image.url for image in self.images]


class TaskCreated(BaseModel):
    """Returned immediately after a task is queued."""

    task_id: str
    status: str
    type: str
    created_at: int
    poll_url: str


class TaskRead(BaseModel):
    """Schema for reading a task snapshot."""

    task_id: str
    type: str
    status: str
    progress: int
    created_at: int
    updated_at: int
    completed_at: int | None = None
    result: Any = None
    error: str | None = None
    params: Any = None


class TaskStats(BaseModel):
    total: int
    pending: int
    processing: int
    completed: int
    failed: int


class TaskListResponse(BaseModel):
    tasks: list[TaskRead]
    stats: TaskStats
