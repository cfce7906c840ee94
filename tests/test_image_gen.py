"""Tests for image generation and composition (upload → blend → poll → URLs)."""
import json

import pytest

from genrelay.services.image_gen import (
    build_core_param,
    compose_images,
    generate_images,
    resolve_size,
)
from genrelay.services.media_urls import extract_image_url
from genrelay.services.poller import GenerationFailedError, SmartPoller
from genrelay.services.providers.dreamina import ProviderError
from genrelay.services.uploader import MediaType, UploadError

HID = "hist-img"


def finished_record(*urls):
    urls = urls or ("https://cdn.test/1.webp",)
    return {
        "status": 50,
        "item_list": [{"image": {"large_images": [{"image_url": url}]}} for url in urls],
    }


class FakeDreamina:
    assistant_id = 513695

    def __init__(self, records, submit_result=None):
        self.records = list(records)
        self.submit_result = {"history_record_id": HID} if submit_result is None else submit_result
        self.submitted = []
        self.history_calls = 0

    async def submit_generation(self, data, params=None):
        self.submitted.append((data, params))
        return self.submit_result

    async def get_history_by_ids(self, ids):
        self.history_calls += 1
        index = min(self.history_calls, len(self.records)) - 1
        return {ids[0]: self.records[index]}

    async def get_history_records(self, ids):
        return {}

    def component(self):
        data, _ = self.submitted[0]
        return json.loads(data["draft_content"])["component_list"][0]


class FakeUploaded:
    def __init__(self, uri):
        self.uri = uri


class FakeUploader:
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = []

    async def upload_from_url(self, url, media_type):
        self.calls.append((url, media_type))
        if url in self.fail_on:
            raise UploadError("download", f"HTTP 404 - {url}")
        return FakeUploaded(f"uri-{len(self.calls)}")

    async def upload(self, data, media_type):
        self.calls.append((data, media_type))
        return FakeUploaded(f"uri-{len(self.calls)}")


def fast_poller():
    return SmartPoller(interval=0, max_poll_count=10, timeout_seconds=60, max_not_found=5)


@pytest.mark.asyncio
async def test_text_to_image():
    client = FakeDreamina([{"status": 20}, finished_record("https://cdn.test/a.webp", "https://cdn.test/b.webp")])
    progress = []

    urls = await generate_images(
        client, prompt="a lighthouse", model="img-model", ratio="16:9", negative_prompt="blurry",
        poller=fast_poller(), initial_delay=0, on_progress=progress.append,
    )

    assert urls == ["https://cdn.test/a.webp", "https://cdn.test/b.webp"]
    assert progress == [30, 40, 90]

    data, params = client.submitted[0]
    assert data["extend"] == {"root_model": "img-model"}
    assert data["http_common_info"] == {"aid": 513695}
    assert "da_version" in params

    component = client.component()
    assert component["type"] == "image_base_component"
    assert component["generate_type"] == "generate"
    core = component["abilities"]["generate"]["core_param"]
    assert core["prompt"] == "a lighthouse"
    assert core["negative_prompt"] == "blurry"
    assert core["image_ratio"] == 3
    assert core["large_image_info"]["width"] == 2560
    assert core["large_image_info"]["height"] == 1440

    metrics = json.loads(data["metrics_extra"])
    assert metrics["generateId"] == data["submit_id"]
    scene = json.loads(metrics["sceneOptions"])[0]
    assert scene["scene"] == "ImageBasicGenerate"
    assert scene["resolutionType"] == "2k"


@pytest.mark.asyncio
async def test_unknown_ratio_rejected_before_submit():
    client = FakeDreamina([finished_record()])
    with pytest.raises(ValueError, match="ratio"):
        await generate_images(client, prompt="p", model="m", ratio="5:4", poller=fast_poller(), initial_delay=0)
    assert client.submitted == []


@pytest.mark.asyncio
async def test_finished_without_image_url():
    client = FakeDreamina([{"status": 50, "item_list": [{"image": {}}]}])
    with pytest.raises(GenerationFailedError, match="no URL"):
        await generate_images(client, prompt="p", model="m", poller=fast_poller(), initial_delay=0)


@pytest.mark.asyncio
async def test_submit_without_history_id():
    client = FakeDreamina([finished_record()], submit_result={})
    with pytest.raises(ProviderError):
        await generate_images(client, prompt="p", model="m", poller=fast_poller(), initial_delay=0)
    assert client.history_calls == 0


@pytest.mark.asyncio
async def test_composition_uploads_every_input():
    client = FakeDreamina([finished_record("https://cdn.test/mix.webp")])
    uploader = FakeUploader()

    urls = await compose_images(
        client, prompt="merge them", images=["https://cdn.test/a.png", b"raw-png"], model="img-model",
        sample_strength=0.7, uploader=uploader, poller=fast_poller(), initial_delay=0,
    )

    assert urls == ["https://cdn.test/mix.webp"]
    assert uploader.calls == [
        ("https://cdn.test/a.png", MediaType.IMAGE),
        (b"raw-png", MediaType.IMAGE),
    ]

    component = client.component()
    assert component["generate_type"] == "blend"
    blend = component["abilities"]["blend"]
    assert blend["core_param"]["prompt"] == "##merge them"
    assert blend["core_param"]["image_ratio"] == 1
    assert [a["image_uri_list"] for a in blend["ability_list"]] == [["uri-1"], ["uri-2"]]
    assert all(a["name"] == "byte_edit" and a["strength"] == 0.7 for a in blend["ability_list"])
    assert [p["ability_index"] for p in blend["prompt_placeholder_info_list"]] == [0, 1]
    assert component["abilities"]["gen_option"]["generate_all"] is False

    data, _ = client.submitted[0]
    scene = json.loads(json.loads(data["metrics_extra"])["sceneOptions"])[0]
    assert scene["abilityList"] == [{"abilityName": "byte_edit", "strength": 0.7}] * 2


@pytest.mark.asyncio
async def test_composition_upload_failure_is_fatal():
    client = FakeDreamina([finished_record()])
    uploader = FakeUploader(fail_on={"https://cdn.test/b.png"})

    with pytest.raises(UploadError) as exc_info:
        await compose_images(
            client, prompt="p", images=["https://cdn.test/a.png", "https://cdn.test/b.png"], model="m",
            uploader=uploader, poller=fast_poller(), initial_delay=0,
        )
    assert exc_info.value.stage == "download"
    assert client.submitted == []


@pytest.mark.asyncio
async def test_composition_input_count_bounds():
    client = FakeDreamina([finished_record()])
    with pytest.raises(ValueError):
        await compose_images(client, prompt="p", images=[], model="m", uploader=FakeUploader())
    with pytest.raises(ValueError):
        await compose_images(client, prompt="p", images=["https://cdn.test/x.png"] * 11, model="m",
                             uploader=FakeUploader())
    assert client.submitted == []


def test_resolve_size_scales_with_resolution():
    assert (resolve_size("1k", "1:1").width, resolve_size("4k", "1:1").width) == (1024, 4096)
    assert resolve_size("2k", "9:16").image_ratio == 5
    with pytest.raises(ValueError, match="resolution"):
        resolve_size("8k", "1:1")


def test_intelligent_ratio_drops_image_ratio_for_text_prompts():
    size = resolve_size()
    assert "image_ratio" not in build_core_param(
        model="m", prompt="p", size=size, sample_strength=0.5, intelligent_ratio=True,
    )
    assert build_core_param(
        model="m", prompt="p", size=size, sample_strength=0.5, intelligent_ratio=True, from_images=True,
    )["image_ratio"] == 1


@pytest.mark.parametrize("item, expected", [
    ({"image": {"large_images": [{"image_url": "a"}]}, "common_attr": {"cover_url": "b"}}, "a"),
    ({"image": {"large_images": []}, "common_attr": {"cover_url": "b"}}, "b"),
    ({"image_url": "c", "url": "d"}, "c"),
    ({"url": "d"}, "d"),
    ({"image": None}, None),
])
def test_extract_image_url_order(item, expected):
    assert extract_image_url(item) == expected
