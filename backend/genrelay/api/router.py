from __future__ import annotations
"""Master API router — mounts all sub-routers."""

from fastapi import APIRouter

from genrelay.api.tasks import router as tasks_router

api_router = APIRouter(redirect_slashes=False)

api_router.include_router(tasks_router)
