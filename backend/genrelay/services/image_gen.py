from __future__ import annotations
"""Image generation and composition via the Dreamina draft API.

Both flows submit an ``image_base_component`` draft and poll its history
record, the same way video generation does:

- generation: text prompt → ``generate`` ability
- composition: 1-10 reference images uploaded through ImageX, then a
  ``blend`` ability with one ``byte_edit`` entry per image
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Sequence, Union

from genrelay.config import get_settings
from genrelay.services.media_urls import extract_image_urls
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

MAX_COMPOSITION_IMAGES = 10
BLEND_PROMPT_PREFIX = "##"

# Provider enum for the aspect ratio of the output canvas
RATIO_CODES = {
    "1:1": 1,
    "3:4": 2,
    "16:9": 3,
    "4:3": 4,
    "9:16": 5,
    "2:3": 6,
    "3:2": 7,
    "21:9": 8,
}

# Canvas sizes at 2k; 1k and 4k scale these by half and double.
_SIZES_2K = {
    "1:1": (2048, 2048),
    "3:4": (1728, 2304),
    "16:9": (2560, 1440),
    "4:3": (2304, 1728),
    "9:16": (1440, 2560),
    "2:3": (1664, 2496),
    "3:2": (2496, 1664),
    "21:9": (3024, 1296),
}
_RESOLUTION_SCALE = {"1k": 0.5, "2k": 1.0, "4k": 2.0}


@dataclass(frozen=True)
class ImageSize:
    width: int
    height: int
    image_ratio: int
    resolution_type: str


def resolve_size(resolution: str = "2k", ratio: str = "1:1") -> ImageSize:
    """Canvas size for a resolution/ratio pair.

    Raises:
        ValueError: Unknown resolution or ratio.
    """
    scale = _RESOLUTION_SCALE.get(resolution)
    if scale is None:
        raise ValueError(
            f"unsupported resolution {resolution!r}, expected one of: {', '.join(_RESOLUTION_SCALE)}"
        )
    if ratio not in _SIZES_2K:
        raise ValueError(f"unsupported ratio {ratio!r}, expected one of: {', '.join(_SIZES_2K)}")
    width, height = _SIZES_2K[ratio]
    return ImageSize(int(width * scale), int(height * scale), RATIO_CODES[ratio], resolution)


def _uid() -> str:
    return str(uuid.uuid4())


def build_core_param(
    *,
    model: str,
    prompt: str,
    size: ImageSize,
    sample_strength: float,
    negative_prompt: str | None = None,
    seed: int | None = None,
    intelligent_ratio: bool = False,
    from_images: bool = False,
) -> dict[str, Any]:
    """``core_param`` block shared by the generate and blend abilities.

    ``image_ratio`` is dropped only for text prompts that let the provider
    pick the ratio itself.
    """
    core_param: dict[str, Any] = {
        "type": "",
        "id": _uid(),
        "model": model,
        "prompt": prompt,
        "sample_strength": sample_strength,
        "large_image_info": {
            "type": "",
            "id": _uid(),
            "height": size.height,
            "width": size.width,
            "resolution_type": size.resolution_type,
        },
        "intelligent_ratio": intelligent_ratio,
    }
    if from_images or not intelligent_ratio:
        core_param["image_ratio"] = size.image_ratio
    if negative_prompt is not None:
        core_param["negative_prompt"] = negative_prompt
    if seed is not None:
        core_param["seed"] = seed
    return core_param


def build_metrics_extra(
    *,
    model: str,
    submit_id: str,
    resolution_type: str,
    scene: str = "ImageBasicGenerate",
    ability_list: Sequence[dict[str, Any]] = (),
) -> str:
    scene_option = {
        "type": "image",
        "scene": scene,
        "modelReqKey": model,
        "resolutionType": resolution_type,
        "abilityList": list(ability_list),
        "reportParams": {
            "enterSource": "generate",
            "vipSource": "generate",
            "extraVipFunctionKey": f"{model}-{resolution_type}",
            "useVipFunctionDetailsReporterHoc": True,
        },
    }
    return json.dumps({
        "promptSource": "custom",
        "generateCount": 1,
        "enterFrom": "click",
        "sceneOptions": json.dumps([scene_option]),
        "generateId": submit_id,
        "isRegenerate": False,
    })


def build_blend_ability_list(uris: Sequence[str], strength: float) -> list[dict[str, Any]]:
    """One ``byte_edit`` ability per uploaded reference image."""
    return [
        {
            "type": "",
            "id": _uid(),
            "name": "byte_edit",
            "image_uri_list": [uri],
            "image_list": [{
                "type": "image",
                "id": _uid(),
                "source_from": "upload",
                "platform_type": 1,
                "name": "",
                "image_uri": uri,
                "width": 0,
                "height": 0,
                "format": "",
                "uri": uri,
            }],
            "strength": strength,
        }
        for uri in uris
    ]


def build_prompt_placeholders(count: int) -> list[dict[str, Any]]:
    return [{"type": "", "id": _uid(), "ability_index": index} for index in range(count)]


def build_draft_content(
    *,
    core_param: dict[str, Any],
    ability_list: list[dict[str, Any]] | None = None,
) -> str:
    """Serialized draft: a ``generate`` ability, or ``blend`` when ``ability_list`` is given."""
    component_id = _uid()
    gen_option = {"type": "", "id": _uid(), "generate_all": False}
    abilities: dict[str, Any] = {"type": "", "id": _uid()}

    if ability_list is None:
        generate_type = "generate"
        abilities["generate"] = {
            "type": "",
            "id": _uid(),
            "core_param": core_param,
            "gen_option": gen_option,
        }
    else:
        generate_type = "blend"
        abilities["blend"] = {
            "type": "",
            "id": _uid(),
            "min_features": [],
            "core_param": core_param,
            "ability_list": ability_list,
            "prompt_placeholder_info_list": build_prompt_placeholders(len(ability_list)),
            "postedit_param": {"type": "", "id": _uid(), "generate_type": 0},
        }
        abilities["gen_option"] = gen_option

    return json.dumps({
        "type": "draft",
        "id": _uid(),
        "min_version": settings.DRAFT_MIN_VERSION,
        "min_features": [],
        "is_from_tsn": True,
        "version": settings.DRAFT_VERSION,
        "main_component_id": component_id,
        "component_list": [{
            "type": "image_base_component",
            "id": component_id,
            "min_version": settings.DRAFT_MIN_VERSION,
            "aigc_mode": "workbench",
            "metadata": {
                "type": "",
                "id": _uid(),
                "created_platform": 3,
                "created_platform_version": "",
                "created_time_in_ms": str(int(time.time() * 1000)),
                "created_did": "",
            },
            "generate_type": generate_type,
            "abilities": abilities,
        }],
    })


def build_generate_payload(
    *,
    model: str,
    submit_id: str,
    draft_content: str,
    metrics_extra: str,
    assistant_id: int | None = None,
) -> dict[str, Any]:
    return {
        "extend": {"root_model": model},
        "submit_id": submit_id,
        "metrics_extra": metrics_extra,
        "draft_content": draft_content,
        "http_common_info": {"aid": assistant_id or settings.DREAMINA_ASSISTANT_ID},
    }


async def _submit_and_collect(
    client: DreaminaClient,
    payload: dict[str, Any],
    *,
    poller: SmartPoller | None,
    initial_delay: float | None,
    cancel_token: CancellationToken | None,
    report: Callable[[int], None],
) -> list[str]:
    aigc_data = await client.submit_generation(payload, params={"da_version": settings.DRAFT_VERSION})
    history_id = aigc_data.get("history_record_id")
    if not history_id:
        raise ProviderError("generation submit returned no history_record_id", payload=aigc_data)
    history_id = str(history_id)
    logger.info("Image task submitted: history_id=%s", history_id)
    report(40)

    delay = settings.POLL_INITIAL_DELAY if initial_delay is None else initial_delay
    if delay > 0:
        await asyncio.sleep(delay)

    poller = poller or SmartPoller(expected_item_count=1)
    result = await poller.poll(history_lookup(client, history_id), history_id, cancel_token)
    report(90)

    urls = extract_image_urls((result.data or {}).get("item_list"))
    if not urls:
        raise GenerationFailedError(
            None, history_id, f"image generation finished but no URL was returned (history_id={history_id})",
        )
    logger.info("Images ready: %d (%.0fs)", len(urls), result.elapsed)
    return urls


async def generate_images(
    client: DreaminaClient,
    *,
    prompt: str,
    model: str,
    ratio: str = "1:1",
    resolution: str = "2k",
    negative_prompt: str | None = None,
    sample_strength: float = 0.5,
    intelligent_ratio: bool = False,
    poller: SmartPoller | None = None,
    initial_delay: float | None = None,
    cancel_token: CancellationToken | None = None,
    on_progress: Callable[[int], None] | None = None,
) -> list[str]:
    """Generate images from a text prompt and return their URLs.

    Raises:
        ValueError: Unknown resolution or ratio.
        GenerationFailedError: The provider failed the record or returned no URL.
        GenerationTimeoutError: The record was still running when polling gave up.
    """
    report = on_progress or (lambda _p: None)
    size = resolve_size(resolution, ratio)
    submit_id = _uid()
    core_param = build_core_param(
        model=model,
        prompt=prompt,
        size=size,
        sample_strength=sample_strength,
        negative_prompt=negative_prompt,
        intelligent_ratio=intelligent_ratio,
    )
    payload = build_generate_payload(
        model=model,
        submit_id=submit_id,
        draft_content=build_draft_content(core_param=core_param),
        metrics_extra=build_metrics_extra(model=model, submit_id=submit_id, resolution_type=size.resolution_type),
        assistant_id=client.assistant_id,
    )
    report(30)
    logger.info("Submitting image: model=%s ratio=%s resolution=%s", model, ratio, resolution)
    return await _submit_and_collect(
        client, payload, poller=poller, initial_delay=initial_delay, cancel_token=cancel_token, report=report,
    )


async def compose_images(
    client: DreaminaClient,
    *,
    prompt: str,
    images: Sequence[ImageSource],
    model: str,
    ratio: str = "1:1",
    resolution: str = "2k",
    negative_prompt: str | None = None,
    sample_strength: float = 0.5,
    uploader: MediaUploader | None = None,
    poller: SmartPoller | None = None,
    initial_delay: float | None = None,
    cancel_token: CancellationToken | None = None,
    on_progress: Callable[[int], None] | None = None,
) -> list[str]:
    """Blend 1-10 reference images under a prompt and return the result URLs.

    Every input must upload; the first failure aborts before anything is
    submitted.

    Raises:
        ValueError: No images, too many images, or an unknown resolution/ratio.
        UploadError: An input image failed to download or upload.
        GenerationFailedError: The provider failed the record or returned no URL.
    """
    if not images:
        raise ValueError("composition needs at least one input image")
    if len(images) > MAX_COMPOSITION_IMAGES:
        raise ValueError(f"composition accepts at most {MAX_COMPOSITION_IMAGES} images, got {len(images)}")
    report = on_progress or (lambda _p: None)
    size = resolve_size(resolution, ratio)

    uploader = uploader or MediaUploader(client)
    uris: list[str] = []
    for index, source in enumerate(images):
        if isinstance(source, (bytes, bytearray)):
            uploaded = await uploader.upload(bytes(source), MediaType.IMAGE)
        else:
            uploaded = await uploader.upload_from_url(source, MediaType.IMAGE)
        uris.append(uploaded.uri)
        logger.info("Composition input %d/%d uploaded: %s", index + 1, len(images), uploaded.uri)
    report(30)

    submit_id = _uid()
    core_param = build_core_param(
        model=model,
        prompt=f"{BLEND_PROMPT_PREFIX}{prompt}",
        size=size,
        sample_strength=sample_strength,
        negative_prompt=negative_prompt,
        from_images=True,
    )
    ability_list = build_blend_ability_list(uris, sample_strength)
    metrics_abilities = [{"abilityName": "byte_edit", "strength": sample_strength} for _ in uris]
    payload = build_generate_payload(
        model=model,
        submit_id=submit_id,
        draft_content=build_draft_content(core_param=core_param, ability_list=ability_list),
        metrics_extra=build_metrics_extra(
            model=model,
            submit_id=submit_id,
            resolution_type=size.resolution_type,
            ability_list=metrics_abilities,
        ),
        assistant_id=client.assistant_id,
    )
    logger.info("Submitting composition: model=%s inputs=%d ratio=%s", model, len(uris), ratio)
    return await _submit_and_collect(
        client, payload, poller=poller, initial_delay=initial_delay, cancel_token=cancel_token, report=report,
    )
