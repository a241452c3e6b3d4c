from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final


class MediaKind(str, Enum):
    PAGE = "page"
    IMAGE = "image"


_PAGE_CONTENT_TYPES: Final[frozenset[str]] = frozenset(
    {
        "text/html",
        "application/xhtml+xml",
        "application/json",
        "text/json",
    }
)

_IMAGE_MAGIC: Final[tuple[bytes, ...]] = (
    b"\xff\xd8\xff",  # jpeg
    b"\x89PNG\r\n\x1a\n",
    b"GIF87a",
    b"GIF89a",
    b"RIFF",  # webp container
    b"BM",
)


def bare_content_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def looks_like_html(data: bytes) -> bool:
    head = data[:2048].lstrip()
    return head.startswith(b"<") and (
        b"<html" in head.lower()
        or b"<!doctype" in head.lower()
        or b"<head" in head.lower()
    )


def looks_like_image(data: bytes) -> bool:
    if any(data.startswith(magic) for magic in _IMAGE_MAGIC):
        return True
    # AVIF/HEIF: "ftyp" box at offset 4.
    return data[4:8] == b"ftyp"


def is_compatible(
    expected: MediaKind,
    *,
    content_type: str | None,
    body: bytes,
) -> bool:
    """Check a response body against the kind of object we asked for.

    Rules:
    - Pages: HTML or JSON content types; a missing header is accepted when
      the body sniffs as HTML.
    - Images: any ``image/*`` type; ``application/octet-stream`` or a missing
      header only when the magic bytes say image.
    """

    ct = bare_content_type(content_type)

    if expected == MediaKind.PAGE:
        if ct in _PAGE_CONTENT_TYPES or ct.endswith("+json"):
            return True
        if not ct:
            return looks_like_html(body)
        return False

    if ct.startswith("image/"):
        return True
    if ct in {"", "application/octet-stream", "binary/octet-stream"}:
        return looks_like_image(body)
    return False


@dataclass(frozen=True)
class StoredContent:
    content_hash: str
    size_bytes: int
    media_kind: MediaKind
    rel_path: str
