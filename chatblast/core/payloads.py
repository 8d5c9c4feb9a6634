from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass
from functools import partial
from typing import Any

import anyio

from chatblast.core.errors import PayloadError, ValidationError
from chatblast.core.recipients import normalize_recipient
from chatblast.models.job import JOB_TYPE_MEDIA, JOB_TYPE_TEXT, JOB_TYPES

MEDIA_TYPES = ("image", "video", "document", "audio")
MEDIA_SOURCES = ("base64", "url", "path")

_DEFAULT_MIMETYPES = {
    "image": "image/jpeg",
    "video": "video/mp4",
    "document": "application/pdf",
    "audio": "audio/mpeg",
}


@dataclass(frozen=True)
class MediaFile:
    media_type: str
    mimetype: str
    content: bytes | None = None  # base64/path уже прочитаны
    url: str | None = None
    caption: str | None = None
    file_name: str | None = None


@dataclass(frozen=True)
class OutboundPayload:
    kind: str  # text/media
    text: str | None = None
    media: MediaFile | None = None


# ---------- валидация при создании job ----------


def _validate_media_spec(spec: Any, where: str) -> dict:
    if not isinstance(spec, dict):
        raise ValidationError(f"{where}: media must be an object")
    media_type = (spec.get("media_type") or "").strip() if isinstance(spec.get("media_type"), str) else ""
    if media_type not in MEDIA_TYPES:
        raise ValidationError(f"{where}: media_type must be one of {', '.join(MEDIA_TYPES)}")
    sources = [k for k in MEDIA_SOURCES if isinstance(spec.get(k), str) and spec.get(k).strip()]
    if not sources:
        raise ValidationError(f"{where}: one of base64, url or path is required")
    if "base64" in sources:
        # битый base64 ловим здесь, а не N раз в диспетчере
        try:
            _decode_base64(spec["base64"].strip())
        except PayloadError as e:
            raise ValidationError(f"{where}: {e}") from e
    return dict(spec, media_type=media_type)


def _normalize_keys(mapping: Any, field: str) -> dict:
    if not isinstance(mapping, dict):
        raise ValidationError(f"{field} must be an object keyed by recipient")
    return {normalize_recipient(k): v for k, v in mapping.items()}


def _validate_delay(value: Any, max_delay: float) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("delay must be a number of seconds")
    if value < 0:
        raise ValidationError("delay must be >= 0")
    if value > max_delay:
        raise ValidationError(f"delay must be <= {max_delay:g} seconds")
    return float(value)


def validate_job_data(job_type: str, data: Any, *, max_delay: float) -> dict:
    """
    Проверяет payload job и возвращает нормализованную копию
    (ключи messages/items приводятся к нормализованным получателям).
    """
    if job_type not in JOB_TYPES:
        raise ValidationError(f"unknown job type: {job_type!r}")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("data must be an object")

    out = dict(data)
    delay = _validate_delay(out.get("delay"), max_delay)
    if delay is None:
        out.pop("delay", None)
    else:
        out["delay"] = delay

    if job_type == JOB_TYPE_TEXT:
        message = out.get("message")
        if message is not None and not isinstance(message, str):
            raise ValidationError("message must be a string")
        messages = _normalize_keys(out["messages"], "messages") if out.get("messages") is not None else {}
        for recipient, text in messages.items():
            if not isinstance(text, str):
                raise ValidationError(f"messages[{recipient}] must be a string")
        if not (message or "").strip() and not any((t or "").strip() for t in messages.values()):
            raise ValidationError("send-text job requires message or messages")
        if messages:
            out["messages"] = messages

    elif job_type == JOB_TYPE_MEDIA:
        media = out.get("media")
        items = _normalize_keys(out["items"], "items") if out.get("items") is not None else {}
        if media is None and not items:
            raise ValidationError("send-media job requires media or items")
        if media is not None:
            out["media"] = _validate_media_spec(media, "media")
        if items:
            out["items"] = {r: _validate_media_spec(spec, f"items[{r}]") for r, spec in items.items()}

    return out


# ---------- резолв payload на конкретного получателя ----------


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def _decode_base64(raw: str) -> bytes:
    if raw.startswith("data:"):
        raw = raw.split(",", 1)[1] if "," in raw else ""
    # MIME-base64 переносит строки
    raw = "".join(raw.split())
    try:
        content = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise PayloadError(f"invalid base64 media: {e}") from e
    if not content:
        raise PayloadError("base64 media is empty")
    return content


async def _build_media(spec: dict) -> MediaFile:
    media_type = spec["media_type"]
    mimetype = (spec.get("mimetype") or "").strip() or _DEFAULT_MIMETYPES.get(media_type, "application/octet-stream")
    file_name = spec.get("file_name") or None
    caption = spec.get("caption") or None

    if spec.get("base64"):
        content = _decode_base64(spec["base64"].strip())
        return MediaFile(media_type, mimetype, content=content, caption=caption, file_name=file_name)

    if spec.get("url"):
        return MediaFile(media_type, mimetype, url=spec["url"].strip(), caption=caption, file_name=file_name)

    path = (spec.get("path") or "").strip()
    if not path:
        raise PayloadError("media data not found: provide base64, url or path")
    try:
        content = await anyio.to_thread.run_sync(partial(_read_file, path))
    except OSError as e:
        raise PayloadError(f"media file is not readable: {path}: {e.__class__.__name__}") from e
    return MediaFile(
        media_type,
        mimetype,
        content=content,
        caption=caption,
        file_name=file_name or os.path.basename(path),
    )


async def resolve_payload(job_type: str, data: dict, recipient: str) -> OutboundPayload:
    """Персональная запись по получателю важнее общей."""
    data = data or {}

    if job_type == JOB_TYPE_TEXT:
        text = (data.get("messages") or {}).get(recipient) or data.get("message") or ""
        text = text.strip() if isinstance(text, str) else ""
        if not text:
            raise PayloadError(f"no message content resolved for {recipient}")
        return OutboundPayload(kind="text", text=text)

    if job_type == JOB_TYPE_MEDIA:
        spec = (data.get("items") or {}).get(recipient) or data.get("media")
        if not spec:
            raise PayloadError(f"no media resolved for {recipient}")
        return OutboundPayload(kind="media", media=await _build_media(spec))

    raise PayloadError(f"unknown job type: {job_type!r}")
