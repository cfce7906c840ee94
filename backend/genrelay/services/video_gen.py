from __future__ import annotations
"""Video generation via the Dreamina draft API.

Async task pattern:
1. Upload first/last frame images (optional) through ImageX
2. POST /mweb/v1/aigc_draft/generate → history_record_id
3. Poll /mweb/v1/get_history_by_ids until the record finishes
4. Extract the video URL from the finished record
"""

import asyncio
import json
import logging
import random
import time
import uuid
from typing import Any, Callable, Sequence, Union

from genrelay.config import get_settings
from genrelay.services.media_urls import VIDEO_URL_PATTERN, extract_video_url
from genrelay.services.poller import (
    CancellationToken,
    GenerationFailedError,
    SmartPoller,
    history_lookup,
)
from genrelay.services.providers.dreamina import DreaminaClient, ProviderError
from genrelay.services.uploader import MediaType, MediaUploader

logger = logging.getLogger(__name__)
settings = get_settings()

ImageSource = Union[str, bytes]

FUNCTION_MODE = "first_last_frames"
SUPPORTED_DURATIONS = (5, 10)


def _uid() -> str:
    return str(uuid.uuid4())


def _frame(uri: str) -> dict[str, Any]:
    return {
        "format": "",
        "height": 0,
        "id": _uid(),
        "image_uri": uri,
        "name": "",
        "platform_type": 1,
        "source_from": "upload",
        "type": "image",
        "uri": uri,
        "width": 0,
    }


def build_draft_payload(
    *,
    prompt: str,
    model: str,
    ratio: str,
    resolution: str,
    duration_ms: int,
    first_frame_uri: str | None = None,
    end_frame_uri: str | None = None,
    assistant_id: int | None = None,
) -> dict[str, Any]:
    """Assemble the aigc_draft/generate request body."""
    component_id = _uid()
    metrics_extra = json.dumps({
        "promptSource": "custom",
        "isDefaultSeed": 1,
        "originSubmitId": _uid(),
        "isRegenerate": False,
        "enterFrom": "click",
        "functionMode": FUNCTION_MODE,
    })

    video_input = {
        "type": "",
        "id": _uid(),
        "min_version": "3.0.5",
        "prompt": prompt,
        "video_mode": 2,
        "fps": 24,
        "duration_ms": duration_ms,
        "resolution": resolution,
        "first_frame_image": _frame(first_frame_uri) if first_frame_uri else None,
        "end_frame_image": _frame(end_frame_uri) if end_frame_uri else None,
        "idip_meta_list": [],
    }

    draft_content = {
        "type": "draft",
        "id": _uid(),
        "min_version": "3.0.5",
        "min_features": [],
        "is_from_tsn": True,
        "version": settings.DRAFT_VERSION,
        "main_component_id": component_id,
        "component_list": [{
            "type": "video_base_component",
            "id": component_id,
            "min_version": "1.0.0",
            "aigc_mode": "workbench",
            "metadata": {
                "type": "",
                "id": _uid(),
                "created_platform": 3,
                "created_platform_version": "",
                "created_time_in_ms": str(int(time.time() * 1000)),
                "created_did": "",
            },
            "generate_type": "gen_video",
            "abilities": {
                "type": "",
                "id": _uid(),
                "gen_video": {
                    "id": _uid(),
                    "type": "",
                    "text_to_video_params": {
                        "type": "",
                        "id": _uid(),
                        "video_gen_inputs": [video_input],
                        "video_aspect_ratio": ratio,
                        "seed": random.randint(2_500_000_000, 2_599_999_999),
                        "model_req_key": model,
                        "priority": 0,
                    },
                    "video_task_extra": metrics_extra,
                },
            },
            "process_type": 1,
        }],
    }

    return {
        "extend": {"root_model": model},
        "submit_id": _uid(),
        "metrics_extra": metrics_extra,
        "draft_content": json.dumps(draft_content),
        "http_common_info": {"aid": assistant_id or settings.DREAMINA_ASSISTANT_ID},
    }


async def _upload_frames(uploader: MediaUploader, images: Sequence[ImageSource]) -> list[str]:
    """Upload up to two frames. The first frame is mandatory, the last is best-effort."""
    uris: list[str] = []
    for index, source in enumerate(images[:2]):
        try:
            if isinstance(source, (bytes, bytearray)):
                result = await uploader.upload(bytes(source), MediaType.IMAGE)
            else:
                result = await uploader.upload_from_url(source, MediaType.IMAGE)
        except Exception as exc:
            if index == 0:
                logger.error("First frame upload failed: %s", exc)
                raise
            logger.error("Last frame upload failed, continuing without it: %s", exc)
            continue
        uris.append(result.uri)
        logger.info("Frame %d uploaded: %s", index + 1, result.uri)
    return uris


async def generate_video(
    client: DreaminaClient,
    *,
    prompt: str,
    model: str,
    ratio: str = "1:1",
    resolution: str = "720p",
    duration: int = 5,
    images: Sequence[ImageSource] = (),
    uploader: MediaUploader | None = None,
    poller: SmartPoller | None = None,
    initial_delay: float | None = None,
    cancel_token: CancellationToken | None = None,
    on_progress: Callable[[int], None] | None = None,
) -> str:
    """Generate a video and return its URL.

    Args:
        client: Provider client bound to the caller's refresh token.
        prompt: Text prompt.
        model: Provider model key, passed through as-is.
        ratio: Aspect ratio (ignored by the provider when frames are given).
        resolution: Output resolution, e.g. ``720p``.
        duration: Seconds; 10 selects a 10 s clip, anything else 5 s.
        images: Up to two frames (URL or raw bytes): first, then last.
        uploader: Override the frame uploader.
        poller: Override the history poller.
        initial_delay: Seconds to wait before the first history lookup.
        cancel_token: Abandon polling early.
        on_progress: Receives coarse progress percentages.

    Raises:
        GenerationFailedError: The provider failed the record or returned no URL.
        GenerationTimeoutError: The record was still running when polling gave up.
    """
    report = on_progress or (lambda _p: None)
    duration_ms = 10_000 if duration == 10 else 5_000
    if duration not in SUPPORTED_DURATIONS:
        logger.warning("Unsupported duration %ss, using %ds", duration, duration_ms // 1000)

    uris: list[str] = []
    if images:
        uploader = uploader or MediaUploader(client)
        uris = await _upload_frames(uploader, images)
        if ratio != "1:1":
            logger.warning("Frames supplied: ratio %s is decided by the input image instead", ratio)
    report(30)

    payload = build_draft_payload(
        prompt=prompt,
        model=model,
        ratio=ratio,
        resolution=resolution,
        duration_ms=duration_ms,
        first_frame_uri=uris[0] if uris else None,
        end_frame_uri=uris[1] if len(uris) > 1 else None,
        assistant_id=client.assistant_id,
    )
    logger.info(
        "Submitting video: model=%s ratio=%s resolution=%s duration=%dms frames=%d",
        model, ratio, resolution, duration_ms, len(uris),
    )
    aigc_data = await client.submit_generation(payload, params={"da_version": settings.DRAFT_VERSION})
    history_id = aigc_data.get("history_record_id")
    if not history_id:
        raise ProviderError("generation submit returned no history_record_id", payload=aigc_data)
    history_id = str(history_id)
    logger.info("Video task submitted: history_id=%s", history_id)
    report(40)

    delay = settings.POLL_INITIAL_DELAY if initial_delay is None else initial_delay
    if delay > 0:
        await asyncio.sleep(delay)

    poller = poller or SmartPoller(url_pattern=VIDEO_URL_PATTERN, expected_item_count=1)
    result = await poller.poll(
        history_lookup(client, history_id, alternate_after=10),
        history_id,
        cancel_token,
    )
    report(90)

    if result.url:
        return result.url

    items = (result.data or {}).get("item_list") or []
    video_url = extract_video_url(items[0]) if items else None
    if not video_url:
        logger.error("No video URL in finished record %s: %s", history_id, items)
        raise GenerationFailedError(
            None, history_id, f"video finished but no URL was returned (history_id={history_id})",
        )

    logger.info("Video ready: %s (%.0fs)", video_url, result.elapsed)
    return video_url
