"""
Last-write-wins merge of a partial clip change into the stored record.

``apply_change`` is pure and shared by the server (``MergeEngine``), the
device-local store and the sync client mirror, so every copy of a record is
rebuilt by the same rules.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from clipsync.errors import NotFound, ValidationFailed
from clipsync.models.clip import ClipChange, ClipKind, ClipRecord, new_clip_id, now_ms
from clipsync.models.devices import Identity
from clipsync.services.tiering import ImageTieringPolicy
from clipsync.utils.content import derive_summary, infer_kind, is_probably_url, normalize_tags

logger = logging.getLogger(__name__)

APPLIED = "applied"
CONFLICT = "conflict"


@dataclass
class MergeResult:
    status: str
    record: ClipRecord
    tags_replaced: bool = False

    @property
    def applied(self) -> bool:
        return self.status == APPLIED


def lww_accepts(incoming: int, current: int) -> bool:
    """Equal timestamps re-affirm the stored version and are accepted."""
    return incoming >= current


def apply_change(
    current: Optional[ClipRecord],
    change: ClipChange,
    identity: Identity,
    now: int,
    images: ImageTieringPolicy,
) -> MergeResult:
    if not change.id:
        raise ValidationFailed("INVALID_CHANGE", "change has no id")

    incoming_ts = change.clientUpdatedAt if change.clientUpdatedAt is not None else now

    if current is not None and not lww_accepts(incoming_ts, current.clientUpdatedAt):
        logger.info(
            f"Conflict on {change.id}: incoming {incoming_ts} < stored {current.clientUpdatedAt}"
        )
        return MergeResult(status=CONFLICT, record=current)

    def pick(field: str, default):
        if change.has(field):
            return getattr(change, field)
        if current is not None:
            return getattr(current, field)
        return default

    content = pick("content", "") or ""
    rich_html = pick("richHtml", None) or None
    source_url = pick("sourceUrl", None) or None
    if source_url is not None:
        source_url = source_url.strip()
        if not is_probably_url(source_url):
            raise ValidationFailed("INVALID_URL", f"sourceUrl is not an http(s) URL: {source_url[:80]}")

    image_payload = current.imagePayload if current is not None else None
    image_preview = current.imagePreview if current is not None else None
    if change.has("imageDataUrl"):
        if change.imageDataUrl is None:
            image_payload, image_preview = None, None
        else:
            preview = change.imagePreview if change.has("imagePreview") else None
            image_payload, image_preview = images.store(change.imageDataUrl, preview)
    elif change.has("imagePreview"):
        if change.imagePreview is not None and image_payload is None:
            raise ValidationFailed("INVALID_IMAGE", "imagePreview without an image")
        image_preview = change.imagePreview

    if change.has("kind") and change.kind is not None:
        kind = change.kind
    else:
        kind = infer_kind(content, rich_html, source_url, image_payload is not None)
    if kind == ClipKind.IMAGE and image_payload is None:
        raise ValidationFailed("INVALID_IMAGE", "image clips need imageDataUrl")

    if change.has("summary") and change.summary and change.summary.strip():
        summary = derive_summary(kind, content, source_url, change.summary)
    else:
        summary = derive_summary(kind, content, source_url)

    tags_replaced = change.has("tags")
    if tags_replaced:
        tags = normalize_tags(change.tags or [])
    else:
        tags = list(current.tags) if current is not None else []

    server_updated_at = now
    if current is not None:
        server_updated_at = max(now, current.serverUpdatedAt + 1)

    record = ClipRecord(
        id=change.id,
        ownerId=current.ownerId if current is not None else identity.owner_id,
        originDeviceId=change.deviceId or identity.device_id,
        kind=kind,
        summary=summary,
        content=content,
        richHtml=rich_html,
        sourceUrl=source_url,
        imagePayload=image_payload,
        imagePreview=image_preview,
        isFavorite=bool(pick("isFavorite", False)),
        isDeleted=bool(pick("isDeleted", False)),
        tags=tags,
        clientUpdatedAt=incoming_ts,
        serverUpdatedAt=server_updated_at,
        createdAt=current.createdAt if current is not None else now,
    )
    return MergeResult(status=APPLIED, record=record, tags_replaced=tags_replaced)


class MergeEngine:
    """Authoritative conflict resolver on top of the Redis metadata store."""

    def __init__(self, store, images: ImageTieringPolicy, clock: Callable[[], int] = now_ms):
        self.store = store
        self.images = images
        self.clock = clock

    def apply(self, identity: Identity, change: ClipChange, must_exist: bool = False) -> MergeResult:
        if not change.id:
            change = change.model_copy(update={"id": new_clip_id()})

        def decide(current: Optional[ClipRecord]) -> MergeResult:
            if current is None and must_exist:
                raise NotFound(f"clip {change.id} not found")
            return apply_change(current, change, identity, self.clock(), self.images)

        result = self.store.mutate_clip(identity.owner_id, change.id, decide)
        if result.applied:
            logger.debug(f"Applied {result.record.id} at {result.record.serverUpdatedAt}")
        return result
