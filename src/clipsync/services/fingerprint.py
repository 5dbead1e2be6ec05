"""Cheap signatures used to skip repeated capture work.

Both keys hash lengths plus bounded head and tail windows only, so their cost
does not grow with the size of the clipboard content.
"""

import hashlib

from clipsync.clipboard.base import ClipboardSnapshot
from clipsync.models.clip import ClipChange

TEXT_PREFIX = 160
IMAGE_WINDOW = 4096

ProbeKey = str
PayloadKey = str


def _digest(*parts: bytes) -> str:
    h = hashlib.md5()
    for part in parts:
        h.update(part)
        h.update(b"\x1f")
    return h.hexdigest()


def _text_bounds(value: str) -> bytes:
    """Length, head and tail of a text."""
    value = value or ""
    head = value[:TEXT_PREFIX]
    tail = value[-TEXT_PREFIX:] if len(value) > TEXT_PREFIX else ""
    return f"{len(value)}:{head}\x1e{tail}".encode("utf-8", errors="ignore")


def probe(snapshot: ClipboardSnapshot) -> ProbeKey:
    """Signature of a raw clipboard read, computed before any encoding."""
    if snapshot.image is not None:
        fmt = "image"
    elif snapshot.html.strip():
        fmt = "html"
    else:
        fmt = "text"

    image_part = b""
    image_len = 0
    if snapshot.image is not None:
        image_len = len(snapshot.image.data)
        image_part = snapshot.image.data[:IMAGE_WINDOW]

    return _digest(
        fmt.encode("ascii"),
        _text_bounds(snapshot.text),
        _text_bounds(snapshot.html),
        str(image_len).encode("ascii"),
        image_part,
    )


def payload_key(change: ClipChange) -> PayloadKey:
    """Signature of a built candidate record."""
    kind = change.kind.value if change.kind is not None else ""
    image = change.imageDataUrl or ""
    return _digest(
        kind.encode("ascii"),
        _text_bounds(change.content),
        (change.sourceUrl or "").encode("utf-8", errors="ignore"),
        _text_bounds(change.richHtml),
        str(len(image)).encode("ascii"),
        image[:IMAGE_WINDOW].encode("ascii", errors="ignore"),
    )
