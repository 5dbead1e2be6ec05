"""
Device-local clip collection kept in a single JSON document.

Used directly when no remote endpoint is configured, and as the sync
client's mirror of the server history otherwise. Every mutation rewrites the
whole document atomically and applies retention and the count cap first.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError

from clipsync.errors import NotFound
from clipsync.models.clip import ClipChange, ClipRecord, new_clip_id, now_ms
from clipsync.models.devices import Identity
from clipsync.services.merge import MergeResult, apply_change
from clipsync.services.tiering import ImageTieringPolicy
from clipsync.utils.content import normalize_tags

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_RETENTION_MS = 180 * DAY_MS
MAX_LOCAL_CLIPS = 5000
LOCAL_LIST_LIMIT = 60


def write_json_atomic(path: Path, document: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(document, handle, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class LocalStore:
    def __init__(
        self,
        path: Optional[Path] = None,
        identity: Identity = Identity("local", "desktop"),
        retention_ms: Optional[int] = DEFAULT_RETENTION_MS,
        max_clips: int = MAX_LOCAL_CLIPS,
        images: Optional[ImageTieringPolicy] = None,
        clock: Callable[[], int] = now_ms,
    ):
        if path is None:
            path = Path.home() / ".clipsync" / "clips.json"
        self.path = Path(path)
        self.identity = identity
        self.retention_ms = retention_ms
        self.max_clips = max_clips
        self.images = images or ImageTieringPolicy(object_store=None)
        self.clock = clock
        self._lock = threading.RLock()

    # ==================== PERSISTENCE ====================

    def _load(self) -> List[ClipRecord]:
        if not self.path.exists():
            return []
        try:
            doc = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Local clip file {self.path} is unreadable, starting empty: {e}")
            return []
        if not isinstance(doc, dict) or not isinstance(doc.get("clips"), list):
            return []

        records = []
        for raw in doc["clips"]:
            try:
                records.append(ClipRecord.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed local clip: {e.errors()[0]['msg']}")
        return records

    def _save(self, records: List[ClipRecord]) -> None:
        records = self._cleaned(records)
        write_json_atomic(self.path, {"clips": [r.model_dump(mode="json") for r in records]})

    def _cleaned(self, records: List[ClipRecord]) -> List[ClipRecord]:
        """Apply retention by age and the count cap. Favorites are never dropped."""
        if self.retention_ms is not None:
            cutoff = self.clock() - self.retention_ms
            records = [r for r in records if r.isFavorite or r.createdAt >= cutoff]

        if len(records) > self.max_clips:
            favorites = [r for r in records if r.isFavorite]
            rest = sorted((r for r in records if not r.isFavorite), key=lambda r: r.createdAt, reverse=True)
            records = favorites + rest[:max(0, self.max_clips - len(favorites))]

        records.sort(key=lambda r: (r.createdAt, r.id), reverse=True)
        return records

    def _mutate(self, fn: Callable[[List[ClipRecord]], Any]) -> Any:
        with self._lock:
            records = self._load()
            result = fn(records)
            self._save(records)
            return result

    @staticmethod
    def _index(records: List[ClipRecord], clip_id: str) -> int:
        for i, record in enumerate(records):
            if record.id == clip_id:
                return i
        raise NotFound(f"clip {clip_id} not found")

    # ==================== OPERATIONS ====================

    def cleanup(self) -> int:
        """Rewrite the file after retention; returns the number of records dropped."""
        with self._lock:
            records = self._load()
            kept = self._cleaned(list(records))
            write_json_atomic(self.path, {"clips": [r.model_dump(mode="json") for r in kept]})
            removed = len(records) - len(kept)
            if removed:
                logger.info(f"Retention removed {removed} local clips")
            return removed

    def all(self) -> List[ClipRecord]:
        with self._lock:
            return self._load()

    def get(self, clip_id: str) -> Optional[ClipRecord]:
        with self._lock:
            for record in self._load():
                if record.id == clip_id:
                    return record
        return None

    def list(self, q: str = "", favorite_only: bool = False, limit: int = LOCAL_LIST_LIMIT) -> Dict[str, Any]:
        needle = (q or "").strip().lower()
        with self._lock:
            records = self._cleaned(self._load())

        items = []
        for record in records:
            if record.isDeleted:
                continue
            if favorite_only and not record.isFavorite:
                continue
            if needle:
                fields = (record.summary, record.content, record.sourceUrl or "", record.richHtml or "")
                if not any(needle in f.lower() for f in fields):
                    continue
            items.append(record)

        return {"items": items[:limit], "nextCursor": None, "hasMore": len(items) > limit}

    def apply(self, change: ClipChange) -> MergeResult:
        """Merge a change with the same last-write-wins rules as the server."""
        if not change.id:
            change = change.model_copy(update={"id": new_clip_id()})
        if change.clientUpdatedAt is None:
            change = change.model_copy(update={"clientUpdatedAt": self.clock()})

        def run(records: List[ClipRecord]) -> MergeResult:
            try:
                i = self._index(records, change.id)
                current = records[i]
            except NotFound:
                i, current = None, None
            result = apply_change(current, change, self.identity, self.clock(), self.images)
            if result.applied:
                if i is None:
                    records.insert(0, result.record)
                else:
                    records[i] = result.record
            return result

        return self._mutate(run)

    def create(self, change: ClipChange) -> ClipRecord:
        return self.apply(change).record

    def replace(self, record: ClipRecord) -> None:
        """Store a record as-is, as received from the server."""

        def run(records: List[ClipRecord]) -> None:
            try:
                records[self._index(records, record.id)] = record
            except NotFound:
                records.insert(0, record)

        self._mutate(run)

    def replace_many(self, incoming: Iterable[ClipRecord]) -> int:
        incoming = list(incoming)

        def run(records: List[ClipRecord]) -> int:
            positions = {r.id: i for i, r in enumerate(records)}
            for record in incoming:
                if record.id in positions:
                    records[positions[record.id]] = record
                else:
                    positions[record.id] = len(records)
                    records.append(record)
            return len(incoming)

        return self._mutate(run)

    def _touch(self, clip_id: str, update: Dict[str, Any]) -> ClipRecord:
        def run(records: List[ClipRecord]) -> ClipRecord:
            i = self._index(records, clip_id)
            now = self.clock()
            current = records[i]
            stamps = {
                "clientUpdatedAt": max(now, current.clientUpdatedAt),
                "serverUpdatedAt": max(now, current.serverUpdatedAt + 1),
            }
            records[i] = current.model_copy(update={**update, **stamps})
            return records[i]

        return self._mutate(run)

    def set_favorite(self, clip_id: str, favorite: bool) -> ClipRecord:
        return self._touch(clip_id, {"isFavorite": bool(favorite)})

    def delete(self, clip_id: str) -> ClipRecord:
        return self._touch(clip_id, {"isDeleted": True})

    def merge_into(self, clip_id: str, tags: Iterable[str], favorite: bool) -> ClipRecord:
        """Fold a repeated capture's tags and favorite flag into an existing clip."""
        with self._lock:
            current = self.get(clip_id)
            if current is None:
                raise NotFound(f"clip {clip_id} not found")
            merged_tags = normalize_tags(list(current.tags) + list(tags))
            return self._touch(clip_id, {
                "tags": merged_tags,
                "isFavorite": current.isFavorite or bool(favorite),
                "isDeleted": False,
            })
