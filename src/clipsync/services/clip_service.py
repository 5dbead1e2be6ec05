"""
Server-side operations behind the HTTP API.

Parses and bounds request parameters, runs writes through the merge engine,
serves the recent-list cache and resolves image bytes from either tier.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from clipsync import API_VERSION, __version__
from clipsync.database.object_store import FileObjectStore
from clipsync.database.redis_manager import ClipQuery, RedisClipStore
from clipsync.errors import CapacityError, ConflictError, NotFound, ValidationFailed
from clipsync.models.clip import ClipChange, ClipRecord, Tag, TagSummary, now_ms, parse_change
from clipsync.models.devices import Identity
from clipsync.services.merge import MergeEngine
from clipsync.services.tiering import ImageTieringPolicy
from clipsync.utils.content import normalize_tag_name, parse_data_url
from clipsync.utils.cursor import CursorError, decode_cursor, encode_cursor, parse_since

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 200
DEFAULT_SYNC_LIMIT = 100
MAX_SYNC_LIMIT = 300


def parse_limit(raw: Optional[str], default: int, maximum: int) -> int:
    try:
        value = int(raw) if raw not in (None, "") else default
    except (TypeError, ValueError):
        return default
    if value <= 0:
        return default
    return min(value, maximum)


def parse_flag(raw: Optional[str]) -> bool:
    return raw == "1" or (raw or "").lower() == "true"


class ClipService:
    def __init__(
        self,
        store: RedisClipStore,
        images: ImageTieringPolicy,
        object_store: Optional[FileObjectStore] = None,
        service_name: str = "clipsync",
    ) -> None:
        self.store = store
        self.images = images
        self.object_store = object_store or images.object_store
        self.merge = MergeEngine(store, images)
        self.service_name = service_name

    def health(self) -> Dict[str, Any]:
        return {
            "service": self.service_name,
            "version": __version__,
            "api": API_VERSION,
            "now": now_ms(),
        }

    # ==================== CLIPS ====================

    def list_clips(
        self,
        identity: Identity,
        q: Optional[str] = None,
        tag: Optional[str] = None,
        favorite: Optional[str] = None,
        include_deleted: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[str] = None,
        lite: bool = False,
    ) -> Dict[str, Any]:
        query = ClipQuery(
            q=(q or "").strip(),
            tag=normalize_tag_name(tag or ""),
            favorite_only=parse_flag(favorite),
            include_deleted=parse_flag(include_deleted),
        )
        page_size = parse_limit(limit, DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT)

        position = None
        if cursor:
            try:
                position = decode_cursor(cursor)
            except CursorError as e:
                raise ValidationFailed("INVALID_CURSOR", f"cursor is invalid: {e}") from e

        cacheable = query.is_default() and position is None and page_size == DEFAULT_LIST_LIMIT
        if cacheable:
            cached = self.store.read_recent_cache(identity.owner_id)
            if cached is not None:
                logger.debug(f"Recent clips cache hit for {identity.owner_id}")
                return self._page_view(cached, lite)

        records, next_position = self.store.list_clips(identity.owner_id, query, position, page_size)
        page = {
            "items": [r.model_dump(mode="json") for r in records],
            "nextCursor": encode_cursor(next_position) if next_position else None,
            "hasMore": next_position is not None,
        }
        if cacheable:
            self.store.write_recent_cache(identity.owner_id, page)
        return self._page_view(page, lite)

    @staticmethod
    def _page_view(page: Dict[str, Any], lite: bool) -> Dict[str, Any]:
        if not lite:
            return page
        items = [ClipRecord.model_validate(raw).lite().model_dump(mode="json") for raw in page["items"]]
        return {**page, "items": items}

    def get_clip(self, identity: Identity, clip_id: str) -> ClipRecord:
        record = self.store.get_clip(identity.owner_id, clip_id)
        if record is None:
            raise NotFound(f"clip {clip_id} not found")
        return record

    def _write(self, identity: Identity, change: ClipChange, must_exist: bool) -> ClipRecord:
        result = self.merge.apply(identity, change, must_exist=must_exist)
        if not result.applied:
            raise ConflictError(
                f"server has a newer version of {result.record.id}",
                record=result.record,
            )
        return result.record

    def create_clip(self, identity: Identity, payload: Any) -> ClipRecord:
        change = parse_change(payload)
        return self._write(identity, change, must_exist=False)

    def update_clip(self, identity: Identity, clip_id: str, payload: Any) -> ClipRecord:
        change = parse_change(payload)
        change = change.model_copy(update={"id": clip_id})
        return self._write(identity, change, must_exist=True)

    def delete_clip(self, identity: Identity, clip_id: str, payload: Any = None) -> ClipRecord:
        fields: Dict[str, Any] = {"id": clip_id, "isDeleted": True}
        if isinstance(payload, dict) and payload.get("clientUpdatedAt") is not None:
            fields["clientUpdatedAt"] = payload["clientUpdatedAt"]
        return self._write(identity, parse_change(fields), must_exist=True)

    # ==================== TAGS ====================

    def list_tags(self, identity: Identity) -> List[TagSummary]:
        return self.store.list_tags(identity.owner_id)

    def create_tag(self, identity: Identity, payload: Any) -> Tag:
        name = payload.get("name") if isinstance(payload, dict) else None
        if not isinstance(name, str) or not normalize_tag_name(name):
            raise ValidationFailed("INVALID_TAG", "name is required")
        return self.store.upsert_tag(identity.owner_id, name, now_ms())

    def delete_tag(self, identity: Identity, tag_id: str) -> Dict[str, Any]:
        if not self.store.delete_tag(identity.owner_id, tag_id, now_ms()):
            raise NotFound(f"tag {tag_id} not found")
        return {"id": tag_id, "deleted": True}

    # ==================== SYNC ====================

    def pull(
        self,
        identity: Identity,
        since: Optional[str] = None,
        limit: Optional[str] = None,
        lite: bool = False,
    ) -> Dict[str, Any]:
        try:
            position = parse_since(since)
        except CursorError as e:
            raise ValidationFailed("INVALID_SINCE", f"since is invalid: {e}") from e
        page_size = parse_limit(limit, DEFAULT_SYNC_LIMIT, MAX_SYNC_LIMIT)

        records, has_more, last = self.store.changes_since(identity.owner_id, position, page_size)
        changes = [r.lite() if lite else r for r in records]
        return {
            "changes": [r.model_dump(mode="json") for r in changes],
            "nextSince": encode_cursor(last) if last is not None else (since or None),
            "hasMore": has_more,
        }

    def push(self, identity: Identity, payload: Any) -> Dict[str, Any]:
        raw_changes = payload.get("changes") if isinstance(payload, dict) else None
        if not isinstance(raw_changes, list) or not raw_changes:
            raise ValidationFailed("INVALID_CHANGES", "changes must be a non-empty array")
        if len(raw_changes) > MAX_SYNC_LIMIT:
            raise ValidationFailed("SYNC_BATCH_TOO_LARGE", f"changes cannot exceed {MAX_SYNC_LIMIT}")

        changes = [parse_change(raw) for raw in raw_changes]
        for change in changes:
            if not change.id:
                raise ValidationFailed("INVALID_CHANGE", "each change must include id")

        applied: List[Dict[str, Any]] = []
        conflicts: List[Dict[str, Any]] = []
        rejected: List[Dict[str, Any]] = []
        for change in changes:
            try:
                result = self.merge.apply(identity, change)
            except (ValidationFailed, CapacityError) as e:
                # a bad change does not abort the rest of the batch
                rejected.append({"id": change.id, "code": e.code, "message": e.message})
                continue
            target = applied if result.applied else conflicts
            target.append(result.record.model_dump(mode="json"))

        logger.info(
            f"Push from {identity.device_id}: {len(applied)} applied, {len(conflicts)} conflicts, {len(rejected)} rejected"
        )
        return {"applied": applied, "conflicts": conflicts, "rejected": rejected, "serverTime": now_ms()}

    # ==================== IMAGES ====================

    def read_image(self, owner_id: Optional[str], clip_id: str, content_hash: Optional[str]) -> Tuple[bytes, str, bool]:
        """Image bytes, MIME type, and whether the response may be cached forever."""
        if not owner_id:
            raise ValidationFailed("IDENTITY_REQUIRED", "owner is required")
        record = self.store.get_clip(owner_id, clip_id)
        if record is None or record.imagePayload is None:
            raise NotFound(f"image for clip {clip_id} not found")

        payload = record.imagePayload
        if payload.storage == "inline":
            _, data = parse_data_url(payload.dataUrl)
        else:
            if self.object_store is None:
                raise NotFound(f"image for clip {clip_id} not found")
            data = self.object_store.get(payload.objectKey)

        return data, payload.mime, bool(content_hash) and content_hash == payload.sha256
