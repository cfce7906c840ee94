"""AWS4-HMAC-SHA256 request signing for the ImageX / VOD upload APIs.

The upload endpoints authenticate every apply/commit call with a SigV4-style
``Authorization`` header derived from short-lived STS credentials. The chain
below must match the provider bit-for-bit. ``sign_request`` never reads the
clock: the timestamp is whatever the caller put in ``x-amz-date``.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timezone
from typing import Mapping
from urllib.parse import parse_qsl, quote, urlsplit

ALGORITHM = "AWS4-HMAC-SHA256"

EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()


class SigningError(ValueError):
    """Malformed signing input. Always a programming error, never retried."""


def amz_timestamp(now: datetime | None = None) -> str:
    """Format a UTC time as ISO-8601 basic with whole seconds (``20240101T120000Z``)."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y%m%dT%H%M%SZ")


def payload_hash(payload: str | bytes = "") -> str:
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _hmac(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(secret_access_key: str, date: str, region: str, service: str) -> bytes:
    """Day -> region -> service -> request key chain."""
    k_date = _hmac(f"AWS4{secret_access_key}".encode("utf-8"), date)
    k_region = _hmac(k_date, region)
    k_service = _hmac(k_region, service)
    return _hmac(k_service, "aws4_request")


def _canonical_query(query: str) -> str:
    pairs = parse_qsl(query, keep_blank_values=True)
    pairs.sort(key=lambda kv: (kv[0], kv[1]))
    return "&".join(
        f"{quote(k, safe='-_.~')}={quote(v, safe='-_.~')}" for k, v in pairs
    )


def sign_request(
    method: str,
    url: str,
    headers: Mapping[str, str],
    access_key_id: str,
    secret_access_key: str,
    session_token: str | None = None,
    payload: str | bytes = "",
    region: str = "cn-north-1",
    service: str = "imagex",
) -> str:
    """Build the ``Authorization`` header value for one request.

    Args:
        method: HTTP method.
        url: Absolute request URL including the query string.
        headers: Header subset to sign. Must contain ``x-amz-date``.
        access_key_id: STS access key.
        secret_access_key: STS secret.
        session_token: STS session token, signed as ``x-amz-security-token``.
        payload: Request body (empty for GET).
        region: Signing region.
        service: Signing service name (``imagex`` or ``vod``).

    Returns:
        ``AWS4-HMAC-SHA256 Credential=..., SignedHeaders=..., Signature=...``

    Raises:
        SigningError: On missing credentials, timestamp or a relative URL.
    """
    if not access_key_id or not secret_access_key:
        raise SigningError("access_key_id and secret_access_key are required")

    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise SigningError(f"URL must be absolute: {url!r}")

    to_sign = {k.lower(): str(v).strip() for k, v in headers.items()}
    timestamp = to_sign.get("x-amz-date")
    if not timestamp or len(timestamp) < 8:
        raise SigningError("x-amz-date header is required for signing")

    if session_token and "x-amz-security-token" not in to_sign:
        to_sign["x-amz-security-token"] = session_token

    method = method.upper()
    body_hash = EMPTY_PAYLOAD_HASH
    if payload:
        body_hash = payload_hash(payload)
        if method == "POST":
            to_sign.setdefault("x-amz-content-sha256", body_hash)

    names = sorted(to_sign)
    signed_headers = ";".join(names)
    canonical_headers = "".join(f"{name}:{to_sign[name]}\n" for name in names)

    canonical_request = "\n".join([
        method,
        parts.path or "/",
        _canonical_query(parts.query),
        canonical_headers,
        signed_headers,
        body_hash,
    ])

    date = timestamp[:8]
    scope = f"{date}/{region}/{service}/aws4_request"
    string_to_sign = "\n".join([
        ALGORITHM,
        timestamp,
        scope,
        hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
    ])

    key = derive_signing_key(secret_access_key, date, region, service)
    signature = hmac.new(key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

    return (
        f"{ALGORITHM} Credential={access_key_id}/{scope}, "
        f"SignedHeaders={signed_headers}, Signature={signature}"
    )
