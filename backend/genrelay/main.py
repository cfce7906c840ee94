from __future__ import annotations
"""GenRelay — FastAPI application entry point.

Mounts the async task routes, configures CORS, and runs the task
manager's cleanup loop for the lifetime of the app.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from genrelay.api.router import api_router
from genrelay.config import get_settings
from genrelay.tasks import get_task_manager

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: start task cleanup on startup, cancel work on shutdown."""
    logger.info("%s starting up...", settings.APP_NAME)
    logger.info("Provider: %s", settings.DREAMINA_BASE_URL)

    manager = get_task_manager()
    manager.start()

    yield

    await manager.stop()
    logger.info("%s shut down", settings.APP_NAME)


app = FastAPI(
    title=f"{settings.APP_NAME} API",
    description="Async generation relay: upload media, submit jobs, poll for results",
    version="0.1.0",
    lifespan=lifespan,
    redirect_slashes=False,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"service": settings.APP_NAME, "status": "running"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "provider": settings.DREAMINA_BASE_URL,
        "tasks": get_task_manager().stats(),
    }
