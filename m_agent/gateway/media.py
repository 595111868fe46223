"""Normalize inbound gateway images into file parts with a media type."""

from __future__ import annotations

import base64
import binascii
import mimetypes
import re
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from loguru import logger
from pydantic import AliasChoices, Field

from m_agent.agent.messages import FilePart, WireModel

DEFAULT_IMAGE_TYPE = "image/jpeg"
GENERIC_TYPES = {"", "application/octet-stream", "binary/octet-stream", "image/*", "image"}

_DATA_URI = re.compile(r"^data:(?P<type>[^;,]*)(?P<params>(;[^,]*)?),(?P<payload>.*)$", re.S)
_BASE64_CHARS = re.compile(r"^[A-Za-z0-9+/=\s_-]+$")


class GatewayImage(WireModel):
    """One image attached to a gateway message; exactly one source is expected."""

    url: str | None = None
    data: str | None = None
    path: str | None = None
    mime_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("mimeType", "mediaType", "mime_type"),
        serialization_alias="mimeType",
    )


def sniff_image_type(head: bytes) -> str | None:
    """Detect an image type from leading magic bytes."""
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if head.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if head.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    if head.startswith(b"BM"):
        return "image/bmp"
    if head.startswith((b"II*\x00", b"MM\x00*")):
        return "image/tiff"
    if head[4:8] == b"ftyp":
        brand = head[8:12]
        if brand in {b"avif", b"avis"}:
            return "image/avif"
        if brand in {b"heic", b"heix", b"hevc", b"mif1", b"msf1"}:
            return "image/heic"
    return None


def _decode_head(payload: str, size: int = 64) -> bytes | None:
    """Decode enough of a base64 payload to sniff magic bytes."""
    compact = "".join(payload.split())
    sample = compact[: ((size + 2) // 3) * 4]
    if not sample:
        return None
    try:
        if "-" in sample or "_" in sample:
            return base64.urlsafe_b64decode(sample + "=" * (-len(sample) % 4))
        return base64.b64decode(sample + "=" * (-len(sample) % 4), validate=False)
    except (binascii.Error, ValueError):
        return None


def _specific(declared: str | None) -> str | None:
    value = (declared or "").strip().lower()
    if value in GENERIC_TYPES:
        return None
    return value


def _guess_from_name(name: str) -> str | None:
    guessed, _ = mimetypes.guess_type(name)
    if guessed and guessed.startswith("image/"):
        return guessed
    return None


def resolve_media_type(
    declared: str | None = None,
    head: bytes | None = None,
    name: str | None = None,
) -> str:
    """
    Pick the media type for an image.

    Priority: a specific declared type, then magic bytes, then the file
    extension of the URL or path, then ``image/jpeg``.
    """
    return (
        _specific(declared)
        or (sniff_image_type(head) if head else None)
        or (_guess_from_name(name) if name else None)
        or DEFAULT_IMAGE_TYPE
    )


def _from_data_uri(value: str, declared: str | None) -> FilePart:
    match = _DATA_URI.match(value)
    if not match:
        raise ValueError("Malformed data URI")
    payload = match.group("payload")
    is_base64 = ";base64" in (match.group("params") or "")
    head = _decode_head(payload) if is_base64 else None
    media_type = resolve_media_type(declared or match.group("type"), head)
    if is_base64:
        return FilePart(media_type=media_type, data=f"data:{media_type};base64,{payload}")
    return FilePart(media_type=media_type, data=value)


def _from_base64(payload: str, declared: str | None) -> FilePart:
    compact = "".join(payload.split())
    media_type = resolve_media_type(declared, _decode_head(compact))
    return FilePart(media_type=media_type, data=f"data:{media_type};base64,{compact}")


def _from_url(url: str, declared: str | None) -> FilePart:
    media_type = resolve_media_type(declared, name=urlparse(url).path)
    return FilePart(media_type=media_type, data=url)


def _from_path(path_text: str, declared: str | None) -> FilePart:
    path = Path(path_text).expanduser()
    raw = path.read_bytes()
    media_type = resolve_media_type(declared, raw[:64], name=path.name)
    encoded = base64.b64encode(raw).decode("ascii")
    return FilePart(media_type=media_type, data=f"data:{media_type};base64,{encoded}")


def _local_path(path_text: str, declared: str | None, allow_local_files: bool) -> FilePart:
    if not allow_local_files:
        raise ValueError("Local file paths are not accepted for gateway images")
    return _from_path(path_text, declared)


def _classify_string(value: str, declared: str | None, allow_local_files: bool = False) -> FilePart:
    text = value.strip()
    lowered = text.lower()
    if lowered.startswith("data:"):
        return _from_data_uri(text, declared)
    if lowered.startswith(("http://", "https://")):
        return _from_url(text, declared)
    if lowered.startswith("file://"):
        return _local_path(urlparse(text).path, declared, allow_local_files)
    if allow_local_files and len(text) <= 1024 and Path(text).expanduser().is_file():
        return _from_path(text, declared)
    if _BASE64_CHARS.match(text) and len(text) >= 16:
        return _from_base64(text, declared)
    raise ValueError("Unrecognised image source")


def normalize_image(
    image: GatewayImage | dict[str, Any] | str,
    *,
    allow_local_files: bool = False,
) -> FilePart:
    """
    Turn a URL, data URI or raw base64 string into a FilePart.

    Local paths (``path``, ``file://`` or a bare path string) are read only
    when ``allow_local_files`` is set by a trusted caller; gateway input
    never sets it.
    """
    if isinstance(image, str):
        return _classify_string(image, None, allow_local_files)
    if isinstance(image, dict):
        image = GatewayImage.model_validate(image)
    declared = image.mime_type
    if image.data:
        return _classify_string(image.data, declared, allow_local_files)
    if image.url:
        return _classify_string(image.url, declared, allow_local_files)
    if image.path:
        return _local_path(image.path, declared, allow_local_files)
    raise ValueError("Gateway image has no url, data or path")


def normalize_images(images: list[Any], *, allow_local_files: bool = False) -> list[FilePart]:
    """Normalize a list of images, skipping the ones that cannot be read."""
    parts: list[FilePart] = []
    for index, image in enumerate(images or []):
        try:
            parts.append(normalize_image(image, allow_local_files=allow_local_files))
        except (OSError, ValueError) as exc:
            logger.warning(f"Skipping gateway image #{index}: {exc}")
    return parts
