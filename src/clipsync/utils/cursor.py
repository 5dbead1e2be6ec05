"""
Opaque continuation tokens for list browsing and sync pull.

A token is the url-safe base64 of a small versioned JSON document holding the
``(serverUpdatedAt, id)`` pair of the last row a client has seen. Clients must
treat it as opaque.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Optional, Union

CURSOR_VERSION = 1


class CursorError(ValueError):
    pass


@dataclass(frozen=True, order=True)
class Cursor:
    server_updated_at: int
    id: str


def encode_cursor(cursor: Cursor) -> str:
    doc = {"v": CURSOR_VERSION, "t": cursor.server_updated_at, "id": cursor.id}
    raw = json.dumps(doc, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(token: str) -> Cursor:
    if not token or not isinstance(token, str):
        raise CursorError("cursor is empty")
    padded = token + "=" * (-len(token) % 4)
    try:
        doc = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise CursorError("cursor is not decodable") from exc

    if not isinstance(doc, dict) or doc.get("v") != CURSOR_VERSION:
        raise CursorError("unsupported cursor version")
    t = doc.get("t")
    clip_id = doc.get("id")
    if isinstance(t, bool) or not isinstance(t, int) or t < 0:
        raise CursorError("cursor timestamp is invalid")
    if not isinstance(clip_id, str) or not clip_id:
        raise CursorError("cursor id is invalid")
    return Cursor(server_updated_at=t, id=clip_id)


def parse_since(raw: Optional[str]) -> Union[None, int, Cursor]:
    """Parse the ``since`` value of a sync pull.

    Returns ``None`` (from the beginning), an ``int`` (legacy millisecond
    value, strictly after) or a ``Cursor``.
    """
    if raw is None or raw == "":
        return None
    if raw.isascii() and raw.isdigit():
        return int(raw)
    return decode_cursor(raw)
