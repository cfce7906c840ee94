"""Signed, single-shot media upload to ImageX (images) and VOD (audio/video).

Every upload is four round trips:
1. token: exchange the refresh token for short-lived STS credentials
2. apply: signed GET reserving an upload node
3. transfer: POST raw bytes to the node with a CRC-32 header
4. commit: signed POST confirming the session, returns asset metadata

Credentials are single-use: a failed upload is retried by calling
``MediaUploader.upload`` again, which starts over from the token stage.
"""

from __future__ import annotations

import enum
import json
import logging
import uuid
import zlib
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import urlencode, urlsplit

import httpx

from genrelay.config import get_settings
from genrelay.services.signer import amz_timestamp, payload_hash, sign_request

logger = logging.getLogger(__name__)
settings = get_settings()

IMAGEX_VERSION = "2018-08-01"
VOD_VERSION = "2020-11-19"

TRANSFER_SUCCESS_CODE = 2000
URI_STATUS_SUCCESS = 2000

# Upload token scenes understood by get_upload_token
SCENE_VOD = 1
SCENE_IMAGE = 2


class MediaType(str, enum.Enum):
    """Kinds of payload the uploader can stage."""

    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"

    @property
    def uses_vod(self) -> bool:
        return self is not MediaType.IMAGE


class UploadTokenProvider(Protocol):
    async def get_upload_token(self, scene: int) -> dict[str, Any]: ...


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class UploadError(Exception):
    """A failed upload stage, with the provider's diagnostic payload attached."""

    def __init__(self, stage: str, message: str, payload: Any = None):
        super().__init__(f"[{stage}] {message}")
        self.stage = stage
        self.payload = payload


class AudioDurationError(UploadError):
    """Committed audio is outside the provider's accepted duration range."""

    def __init__(self, duration: float, minimum: float, maximum: float):
        if duration < minimum:
            message = f"audio duration {duration:.2f}s is below the minimum of {minimum:g}s"
        else:
            message = f"audio duration {duration:.2f}s exceeds the maximum of {maximum:g}s"
        super().__init__("validate", message, payload={"duration": duration})
        self.duration = duration
        self.minimum = minimum
        self.maximum = maximum


class UploadSessionReusedError(RuntimeError):
    """An UploadSession was claimed twice."""


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class UploadSession:
    """Short-lived credentials for exactly one apply → transfer → commit run."""

    media_type: MediaType
    access_key_id: str
    secret_access_key: str
    session_token: str
    store_id: str  # ImageX ServiceId or VOD SpaceName
    _claimed: bool = field(default=False, repr=False)

    def claim(self) -> None:
        if self._claimed:
            raise UploadSessionReusedError(
                "upload session already used; request a new one to retry"
            )
        self._claimed = True


@dataclass(frozen=True)
class UploadNode:
    """Routing info returned by the apply stage."""

    host: str
    store_uri: str
    auth: str
    session_key: str
    vid: str | None = None

    @property
    def upload_url(self) -> str:
        return f"https://{self.host}/upload/v1/{self.store_uri}"


@dataclass
class MediaMeta:
    duration: float = 0.0
    duration_ms: int = 0
    format: str = ""
    size: int = 0
    md5: str = ""
    width: int = 0
    height: int = 0


@dataclass
class UploadResult:
    media_type: MediaType
    uri: str
    vid: str | None
    crc32: str
    meta: MediaMeta = field(default_factory=MediaMeta)


def crc32_hex(data: bytes) -> str:
    """CRC-32 of ``data`` as 8 lowercase hex digits."""
    return format(zlib.crc32(data) & 0xFFFFFFFF, "08x")


def _dump(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    try:
        return json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(payload)


# ---------------------------------------------------------------------------
# Uploader
# ---------------------------------------------------------------------------

class MediaUploader:
    """Runs the four-stage upload handshake against ImageX or VOD."""

    def __init__(
        self,
        token_provider: UploadTokenProvider,
        *,
        http_client: httpx.AsyncClient | None = None,
        region: str | None = None,
        origin: str | None = None,
        imagex_host: str | None = None,
        imagex_service_id: str | None = None,
        vod_host: str | None = None,
        vod_space_name: str | None = None,
        audio_min_duration: float | None = None,
        audio_max_duration: float | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._http_client = http_client
        self.region = region or settings.UPLOAD_REGION
        self.origin = origin or settings.UPLOAD_ORIGIN
        self.imagex_host = (imagex_host or settings.IMAGEX_HOST).rstrip("/")
        self.imagex_service_id = imagex_service_id or settings.IMAGEX_SERVICE_ID
        self.vod_host = (vod_host or settings.VOD_HOST).rstrip("/")
        self.vod_space_name = vod_space_name or settings.VOD_SPACE_NAME
        self.audio_min_duration = (
            settings.AUDIO_MIN_DURATION if audio_min_duration is None else audio_min_duration
        )
        self.audio_max_duration = (
            settings.AUDIO_MAX_DURATION if audio_max_duration is None else audio_max_duration
        )

    # --- Public API ---

    async def upload(self, data: bytes, media_type: MediaType) -> UploadResult:
        """Upload ``data`` and return its content id plus metadata.

        Raises:
            UploadError: A stage failed; ``stage`` names which one.
            AudioDurationError: Audio committed fine but its duration is out of range.
        """
        media_type = MediaType(media_type)
        if not data:
            raise UploadError("validate", "refusing to upload an empty payload")

        client = self._http_client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT)
        own_client = self._http_client is None
        try:
            logger.info("Uploading %s (%d bytes)", media_type.value, len(data))
            session = await self.acquire_session(media_type)
            session.claim()
            node = await self._apply(client, session, len(data))
            crc = await self._transfer(client, node, data)
            result = await self._commit(client, session, node, crc)
        finally:
            if own_client:
                await client.aclose()

        logger.info(
            "Upload complete: %s uri=%s vid=%s", media_type.value, result.uri, result.vid,
        )
        return result

    async def upload_from_url(self, url: str, media_type: MediaType) -> UploadResult:
        """Download ``url`` and upload its bytes."""
        client = self._http_client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT)
        own_client = self._http_client is None
        try:
            logger.info("Downloading %s from %s", MediaType(media_type).value, url)
            resp = await self._send("download", client, "GET", url)
            data = resp.content
        finally:
            if own_client:
                await client.aclose()
        logger.info("Downloaded %d bytes from %s", len(data), url)
        return await self.upload(data, media_type)

    async def acquire_session(self, media_type: MediaType) -> UploadSession:
        """Token stage: fetch fresh STS credentials for one upload."""
        scene = SCENE_VOD if media_type.uses_vod else SCENE_IMAGE
        try:
            token = await self._token_provider.get_upload_token(scene)
        except Exception as exc:
            raise UploadError("token", f"failed to obtain upload token: {exc}") from exc

        token = token or {}
        access_key_id = token.get("access_key_id")
        secret_access_key = token.get("secret_access_key")
        session_token = token.get("session_token")
        if not access_key_id or not secret_access_key or not session_token:
            raise UploadError("token", "upload token response is missing credentials", token)

        if media_type.uses_vod:
            store_id = token.get("space_name") or self.vod_space_name
        else:
            store_id = token.get("service_id") or self.imagex_service_id

        logger.info("Upload token acquired: %s store=%s", media_type.value, store_id)
        return UploadSession(
            media_type=media_type,
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            session_token=session_token,
            store_id=store_id,
        )

    def validate_audio_duration(self, duration: float) -> None:
        if duration < self.audio_min_duration or duration > self.audio_max_duration:
            raise AudioDurationError(duration, self.audio_min_duration, self.audio_max_duration)

    # --- Stages ---

    async def _apply(
        self, client: httpx.AsyncClient, session: UploadSession, file_size: int
    ) -> UploadNode:
        if session.media_type.uses_vod:
            host = self.vod_host
            # VOD has no audio FileType, audio goes up as video
            params = [
                ("Action", "ApplyUploadInner"),
                ("Version", VOD_VERSION),
                ("SpaceName", session.store_id),
                ("FileType", "video"),
                ("IsInner", "1"),
                ("FileSize", str(file_size)),
                ("s", uuid.uuid4().hex[:10]),
            ]
        else:
            host = self.imagex_host
            params = [
                ("Action", "ApplyImageUpload"),
                ("Version", IMAGEX_VERSION),
                ("ServiceId", session.store_id),
                ("FileSize", str(file_size)),
                ("s", uuid.uuid4().hex[:10]),
            ]
        url = f"{host}/?{urlencode(params)}"

        headers = self._signed_headers("GET", url, session)
        logger.info("Applying for upload: %s", url)
        resp = await self._send("apply", client, "GET", url, headers=headers)
        body = self._json("apply", resp)

        error = (body.get("ResponseMetadata") or {}).get("Error")
        if error:
            raise UploadError("apply", f"provider rejected apply: {_dump(error)}", body)

        node = self._parse_node(body, session.media_type)
        logger.info("Upload node: host=%s vid=%s", node.host, node.vid)
        return node

    async def _transfer(self, client: httpx.AsyncClient, node: UploadNode, data: bytes) -> str:
        crc = crc32_hex(data)
        headers = {
            "Authorization": node.auth,
            "Content-CRC32": crc,
            "Content-Type": "application/octet-stream",
            "Origin": self.origin,
        }
        logger.info("Transferring %d bytes to %s (crc32=%s)", len(data), node.upload_url, crc)
        resp = await self._send("transfer", client, "POST", node.upload_url, headers=headers, content=data)
        body = self._json("transfer", resp)

        code = body.get("code")
        if code != TRANSFER_SUCCESS_CODE:
            raise UploadError(
                "transfer", f"upload rejected: code={code}, message={body.get('message')}", body,
            )

        echoed = (body.get("data") or {}).get("crc32")
        if echoed is not None and str(echoed).lower() != crc:
            raise UploadError(
                "transfer", f"checksum mismatch: sent {crc}, provider reported {echoed}", body,
            )
        return crc

    async def _commit(
        self,
        client: httpx.AsyncClient,
        session: UploadSession,
        node: UploadNode,
        crc: str,
    ) -> UploadResult:
        if session.media_type.uses_vod:
            params = [("Action", "CommitUploadInner"), ("Version", VOD_VERSION), ("SpaceName", session.store_id)]
            url = f"{self.vod_host}/?{urlencode(params)}"
            body_obj: dict[str, Any] = {"SessionKey": node.session_key, "Functions": []}
        else:
            params = [("Action", "CommitImageUpload"), ("Version", IMAGEX_VERSION), ("ServiceId", session.store_id)]
            url = f"{self.imagex_host}/?{urlencode(params)}"
            body_obj = {"SessionKey": node.session_key, "SuccessActionStatus": "200"}

        payload = json.dumps(body_obj, separators=(",", ":"))
        headers = self._signed_headers("POST", url, session, payload=payload)
        headers["Content-Type"] = "application/json"

        logger.info("Committing upload: %s", url)
        resp = await self._send("commit", client, "POST", url, headers=headers, content=payload.encode("utf-8"))
        body = self._json("commit", resp)

        error = (body.get("ResponseMetadata") or {}).get("Error")
        if error:
            raise UploadError("commit", f"provider rejected commit: {_dump(error)}", body)

        results = (body.get("Result") or {}).get("Results") or []
        if not results:
            raise UploadError("commit", "commit response has no results", body)

        if session.media_type.uses_vod:
            return self._vod_result(session.media_type, body, results[0], crc)
        return self._image_result(body, results[0], crc)

    # --- Helpers ---

    def _signed_headers(
        self, method: str, url: str, session: UploadSession, payload: str = ""
    ) -> dict[str, str]:
        to_sign = {
            "x-amz-date": amz_timestamp(),
            "x-amz-security-token": session.session_token,
        }
        if payload:
            to_sign["x-amz-content-sha256"] = payload_hash(payload)

        service = "vod" if session.media_type.uses_vod else "imagex"
        authorization = sign_request(
            method,
            url,
            to_sign,
            session.access_key_id,
            session.secret_access_key,
            session.session_token,
            payload,
            self.region,
            service,
        )
        return {
            **to_sign,
            "Authorization": authorization,
            "Origin": self.origin,
            "Referer": f"{self.origin}/",
        }

    @staticmethod
    def _parse_node(body: dict[str, Any], media_type: MediaType) -> UploadNode:
        result = body.get("Result") or {}
        try:
            if media_type.uses_vod:
                nodes = (result.get("InnerUploadAddress") or {}).get("UploadNodes") or []
                node = nodes[0]
                store = node["StoreInfos"][0]
                return UploadNode(
                    host=node["UploadHost"],
                    store_uri=store["StoreUri"],
                    auth=store["Auth"],
                    session_key=node["SessionKey"],
                    vid=node.get("Vid"),
                )
            address = result["UploadAddress"]
            store = address["StoreInfos"][0]
            return UploadNode(
                host=address["UploadHosts"][0],
                store_uri=store["StoreUri"],
                auth=store["Auth"],
                session_key=address["SessionKey"],
            )
        except (KeyError, IndexError, TypeError) as exc:
            raise UploadError("apply", f"apply response has no usable upload node ({exc!r})", body) from exc

    def _vod_result(
        self, media_type: MediaType, body: dict[str, Any], entry: dict[str, Any], crc: str
    ) -> UploadResult:
        vid = entry.get("Vid")
        if not vid:
            raise UploadError("commit", "commit result is missing Vid", body)

        video_meta = entry.get("VideoMeta") or {}
        duration = float(video_meta.get("Duration") or 0)
        if media_type is MediaType.AUDIO and duration:
            self.validate_audio_duration(duration)

        meta = MediaMeta(
            duration=duration,
            duration_ms=round(duration * 1000),
            format=video_meta.get("Format") or "",
            size=int(video_meta.get("Size") or 0),
            md5=video_meta.get("Md5") or "",
            width=int(video_meta.get("Width") or 0),
            height=int(video_meta.get("Height") or 0),
        )
        return UploadResult(media_type, uri=video_meta.get("Uri") or "", vid=vid, crc32=crc, meta=meta)

    @staticmethod
    def _image_result(body: dict[str, Any], entry: dict[str, Any], crc: str) -> UploadResult:
        if entry.get("UriStatus") != URI_STATUS_SUCCESS:
            raise UploadError("commit", f"image upload status {entry.get('UriStatus')}", body)

        plugins = (body.get("Result") or {}).get("PluginResult") or []
        plugin = plugins[0] if plugins else {}
        uri = plugin.get("ImageUri") or entry.get("Uri")
        if not uri:
            raise UploadError("commit", "commit result is missing the image uri", body)

        meta = MediaMeta(
            format=plugin.get("ImageFormat") or "",
            size=int(plugin.get("ImageSize") or 0),
            md5=plugin.get("ImageMd5") or "",
            width=int(plugin.get("ImageWidth") or 0),
            height=int(plugin.get("ImageHeight") or 0),
        )
        return UploadResult(MediaType.IMAGE, uri=uri, vid=None, crc32=crc, meta=meta)

    @staticmethod
    async def _send(
        stage: str, client: httpx.AsyncClient, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            host = urlsplit(url).netloc
            logger.error("%s request to %s failed: %s", stage, host, exc)
            raise UploadError(stage, f"network error talking to {host}: {exc}") from exc

        if not resp.is_success:
            raise UploadError(stage, f"HTTP {resp.status_code} - {resp.text}", resp.text)
        return resp

    @staticmethod
    def _json(stage: str, resp: httpx.Response) -> dict[str, Any]:
        try:
            body = resp.json()
        except ValueError as exc:
            raise UploadError(stage, f"response is not JSON: {resp.text[:200]}", resp.text) from exc
        if not isinstance(body, dict):
            raise UploadError(stage, f"unexpected response shape: {_dump(body)}", body)
        return body
