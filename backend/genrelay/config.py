from __future__ import annotations
"""Application configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """GenRelay application settings.

    Loaded from environment variables or .env file.
    """

    # --- Application ---
    APP_NAME: str = "GenRelay"
    DEBUG: bool = False
    CORS_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    # --- Provider (Dreamina web API) ---
    DREAMINA_BASE_URL: str = "https://jimeng.jianying.com"
    DREAMINA_ASSISTANT_ID: int = 513695
    DREAMINA_WEB_VERSION: str = "6.6.0"
    DRAFT_VERSION: str = "3.2.9"
    VIDEO_DEFAULT_MODEL: str = "dreamina_ic_generate_video_model_vgfm_3.0"
    IMAGE_DEFAULT_MODEL: str = "high_aigc_generator_40"
    DRAFT_MIN_VERSION: str = "3.0.2"
    HTTP_TIMEOUT: float = 60.0

    # --- Upload (ImageX for images, VOD for audio/video) ---
    IMAGEX_HOST: str = "https://imagex.bytedanceapi.com"
    IMAGEX_SERVICE_ID: str = "tb4s082cfz"
    VOD_HOST: str = "https://vod.bytedanceapi.com"
    VOD_SPACE_NAME: str = "dreamina"
    UPLOAD_REGION: str = "cn-north-1"
    UPLOAD_ORIGIN: str = "https://jimeng.jianying.com"
    AUDIO_MIN_DURATION: float = 2.0
    AUDIO_MAX_DURATION: float = 15.0

    # --- Polling ---
    POLL_INTERVAL: float = 2.0
    POLL_MAX_COUNT: int = 900
    POLL_TIMEOUT: float = 1200.0   # 20 min, video jobs can run long
    POLL_INITIAL_DELAY: float = 5.0
    POLL_MAX_NOT_FOUND: int = 30

    # --- Async tasks ---
    TASK_RETENTION_SECONDS: int = 2 * 60 * 60
    TASK_CLEANUP_INTERVAL: int = 10 * 60

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings singleton."""
    return Settings()
