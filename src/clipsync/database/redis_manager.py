"""
Redis metadata store for ClipSync.

Handles clip records, tag rows and tag links for every owner, and the
per-owner ordering index used by list browsing and sync pull.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

import redis

from clipsync.errors import TransientError
from clipsync.models.clip import ClipRecord, Tag, TagSummary, new_tag_id
from clipsync.services.merge import APPLIED, MergeResult
from clipsync.utils.content import normalize_tag_key, normalize_tag_name
from clipsync.utils.cursor import Cursor

logger = logging.getLogger(__name__)

ORDER_WIDTH = 15
SCAN_BATCH = 200
RECENT_CLIPS_CACHE_TTL_SECONDS = 20


def order_member(server_updated_at: int, clip_id: str) -> str:
    """Lexicographically sortable member: zero padded timestamp, then id."""
    return f"{server_updated_at:0{ORDER_WIDTH}d}:{clip_id}"


def member_cursor(member: str) -> Cursor:
    t, clip_id = member.split(":", 1)
    return Cursor(server_updated_at=int(t), id=clip_id)


@dataclass
class ClipQuery:
    q: str = ""
    tag: str = ""
    favorite_only: bool = False
    include_deleted: bool = False

    def is_default(self) -> bool:
        return not (self.q or self.tag or self.favorite_only or self.include_deleted)

    def matches(self, record: ClipRecord) -> bool:
        if not self.include_deleted and record.isDeleted:
            return False
        if self.favorite_only and not record.isFavorite:
            return False
        if self.tag:
            key = normalize_tag_key(self.tag)
            if key not in {normalize_tag_key(name) for name in record.tags}:
                return False
        if self.q:
            needle = self.q.strip().lower()
            haystacks = (record.summary, record.content, record.sourceUrl or "", record.richHtml or "")
            if not any(needle in h.lower() for h in haystacks):
                return False
        return True


@dataclass
class _TagWrite:
    tag_id: str
    key: str
    display: str
    mapping: Dict[str, str] = field(default_factory=dict)
    new: bool = False


class RedisClipStore:
    """
    Data Structure:
    - clip:<ownerId>:<clipId> -> Clip record without tags (JSON string)
    - clip:<ownerId>:<clipId>:tags -> Linked tag IDs (set)
    - clips:<ownerId>:order -> "<serverUpdatedAt>:<clipId>" members (sorted set, lex)
    - clips:<ownerId>:recent -> Cached first page of the default list (string, TTL)
    - tag:<ownerId>:<tagId> -> Tag row (hash)
    - tag:<ownerId>:<tagId>:clips -> Clip IDs linked to the tag (set)
    - tags:<ownerId>:index -> normalizedKey -> tagId (hash)
    """

    def __init__(self, client: redis.Redis, max_retries: int = 8,
                 recent_ttl: int = RECENT_CLIPS_CACHE_TTL_SECONDS):
        self.client = client
        self.max_retries = max_retries
        self.recent_ttl = recent_ttl

    # ==================== KEYS ====================

    @staticmethod
    def _clip_key(owner_id: str, clip_id: str) -> str:
        return f"clip:{owner_id}:{clip_id}"

    @staticmethod
    def _clip_tags_key(owner_id: str, clip_id: str) -> str:
        return f"clip:{owner_id}:{clip_id}:tags"

    @staticmethod
    def _order_key(owner_id: str) -> str:
        return f"clips:{owner_id}:order"

    @staticmethod
    def _recent_key(owner_id: str) -> str:
        return f"clips:{owner_id}:recent"

    @staticmethod
    def _tag_key(owner_id: str, tag_id: str) -> str:
        return f"tag:{owner_id}:{tag_id}"

    @staticmethod
    def _tag_clips_key(owner_id: str, tag_id: str) -> str:
        return f"tag:{owner_id}:{tag_id}:clips"

    @staticmethod
    def _tag_index_key(owner_id: str) -> str:
        return f"tags:{owner_id}:index"

    # ==================== CLIP READS ====================

    def _tag_names(self, conn, owner_id: str, tag_ids: Iterable[str]) -> Dict[str, Optional[str]]:
        """Map tag id -> display name, ``None`` for deleted or missing rows."""
        tag_ids = list(tag_ids)
        if not tag_ids:
            return {}
        if isinstance(conn, redis.client.Pipeline):
            rows = [conn.hmget(self._tag_key(owner_id, t), "name", "isDeleted") for t in tag_ids]
        else:
            with conn.pipeline(transaction=False) as pipe:
                for t in tag_ids:
                    pipe.hmget(self._tag_key(owner_id, t), "name", "isDeleted")
                rows = pipe.execute()
        names: Dict[str, Optional[str]] = {}
        for tag_id, (name, deleted) in zip(tag_ids, rows):
            names[tag_id] = name if name and deleted != "1" else None
        return names

    @staticmethod
    def _with_tags(record: ClipRecord, tag_ids: Iterable[str], names: Dict[str, Optional[str]]) -> ClipRecord:
        display = [names[t] for t in tag_ids if names.get(t)]
        return record.model_copy(update={"tags": sorted(display, key=str.lower)})

    def _read_clip(self, conn, owner_id: str, clip_id: str) -> Tuple[Optional[ClipRecord], Set[str]]:
        raw = conn.get(self._clip_key(owner_id, clip_id))
        if raw is None:
            return None, set()
        tag_ids = set(conn.smembers(self._clip_tags_key(owner_id, clip_id)))
        record = ClipRecord.model_validate_json(raw)
        names = self._tag_names(conn, owner_id, tag_ids)
        return self._with_tags(record, tag_ids, names), tag_ids

    def get_clip(self, owner_id: str, clip_id: str) -> Optional[ClipRecord]:
        record, _ = self._read_clip(self.client, owner_id, clip_id)
        return record

    def _load_many(self, owner_id: str, clip_ids: List[str]) -> List[Optional[ClipRecord]]:
        if not clip_ids:
            return []
        with self.client.pipeline(transaction=False) as pipe:
            for clip_id in clip_ids:
                pipe.get(self._clip_key(owner_id, clip_id))
                pipe.smembers(self._clip_tags_key(owner_id, clip_id))
            replies = pipe.execute()

        raws = replies[0::2]
        tag_sets = [set(s) for s in replies[1::2]]
        names = self._tag_names(self.client, owner_id, set().union(*tag_sets))

        records: List[Optional[ClipRecord]] = []
        for raw, tag_ids in zip(raws, tag_sets):
            if raw is None:
                records.append(None)
                continue
            records.append(self._with_tags(ClipRecord.model_validate_json(raw), tag_ids, names))
        return records

    def list_clips(
        self,
        owner_id: str,
        query: ClipQuery,
        cursor: Optional[Cursor],
        limit: int,
    ) -> Tuple[List[ClipRecord], Optional[Cursor]]:
        """Newest first by ``(serverUpdatedAt, id)``.

        Returns the page and the cursor of its last row when more rows follow.
        """
        order_key = self._order_key(owner_id)
        upper = "+" if cursor is None else "(" + order_member(cursor.server_updated_at, cursor.id)

        page: List[Tuple[str, ClipRecord]] = []
        while True:
            members = self.client.zrevrangebylex(order_key, upper, "-", start=0, num=SCAN_BATCH)
            if not members:
                break
            records = self._load_many(owner_id, [m.split(":", 1)[1] for m in members])
            for member, record in zip(members, records):
                if record is None or not query.matches(record):
                    continue
                if len(page) == limit:
                    last_member = page[-1][0]
                    return [r for _, r in page], member_cursor(last_member)
                page.append((member, record))
            if len(members) < SCAN_BATCH:
                break
            upper = "(" + members[-1]

        return [r for _, r in page], None

    def changes_since(
        self,
        owner_id: str,
        since: Union[None, int, Cursor],
        limit: int,
    ) -> Tuple[List[ClipRecord], bool, Optional[Cursor]]:
        """Oldest unseen first, tombstones included."""
        if since is None:
            lower = "-"
        elif isinstance(since, int):
            lower = "[" + f"{since + 1:0{ORDER_WIDTH}d}:"
        else:
            lower = "(" + order_member(since.server_updated_at, since.id)

        members = self.client.zrangebylex(self._order_key(owner_id), lower, "+", start=0, num=limit + 1)
        has_more = len(members) > limit
        members = members[:limit]
        records = self._load_many(owner_id, [m.split(":", 1)[1] for m in members])
        last = member_cursor(members[-1]) if members else None
        return [r for r in records if r is not None], has_more, last

    # ==================== CLIP WRITES ====================

    def _plan_tags(self, conn, owner_id: str, names: List[str], now: int) -> List[_TagWrite]:
        index = conn.hgetall(self._tag_index_key(owner_id))
        plans: List[_TagWrite] = []
        for name in names:
            display = normalize_tag_name(name)
            key = display.lower()
            tag_id = index.get(key)
            if tag_id:
                existing = conn.hget(self._tag_key(owner_id, tag_id), "name")
                plans.append(_TagWrite(
                    tag_id=tag_id,
                    key=key,
                    display=existing or display,
                    mapping={"isDeleted": "0", "updatedAt": str(now)},
                ))
                continue
            tag_id = new_tag_id()
            plans.append(_TagWrite(
                tag_id=tag_id,
                key=key,
                display=display,
                mapping={
                    "id": tag_id,
                    "ownerId": owner_id,
                    "name": display,
                    "normalizedKey": key,
                    "isDeleted": "0",
                    "createdAt": str(now),
                    "updatedAt": str(now),
                },
                new=True,
            ))
        return plans

    def mutate_clip(
        self,
        owner_id: str,
        clip_id: str,
        decide: Callable[[Optional[ClipRecord]], MergeResult],
    ) -> MergeResult:
        """Read-decide-write one clip atomically.

        ``decide`` sees a fresh read of the current record. If the record or
        the owner's tag index changes before the write commits, the whole
        cycle runs again.
        """
        clip_key = self._clip_key(owner_id, clip_id)
        clip_tags_key = self._clip_tags_key(owner_id, clip_id)
        index_key = self._tag_index_key(owner_id)
        order_key = self._order_key(owner_id)

        for attempt in range(self.max_retries):
            with self.client.pipeline() as pipe:
                try:
                    pipe.watch(clip_key, clip_tags_key, index_key)
                    current, old_tag_ids = self._read_clip(pipe, owner_id, clip_id)
                    result = decide(current)
                    if result.status != APPLIED:
                        pipe.unwatch()
                        return result

                    record = result.record
                    plans = None
                    if result.tags_replaced:
                        plans = self._plan_tags(pipe, owner_id, record.tags, record.serverUpdatedAt)

                    pipe.multi()
                    pipe.set(clip_key, record.model_dump_json(exclude={"tags"}))
                    if current is not None:
                        pipe.zrem(order_key, order_member(current.serverUpdatedAt, clip_id))
                    pipe.zadd(order_key, {order_member(record.serverUpdatedAt, clip_id): 0})

                    if plans is not None:
                        for tag_id in old_tag_ids:
                            pipe.srem(self._tag_clips_key(owner_id, tag_id), clip_id)
                        pipe.delete(clip_tags_key)
                        for plan in plans:
                            pipe.hset(self._tag_key(owner_id, plan.tag_id), mapping=plan.mapping)
                            if plan.new:
                                pipe.hset(index_key, plan.key, plan.tag_id)
                            pipe.sadd(clip_tags_key, plan.tag_id)
                            pipe.sadd(self._tag_clips_key(owner_id, plan.tag_id), clip_id)
                        record = record.model_copy(
                            update={"tags": sorted((p.display for p in plans), key=str.lower)}
                        )

                    pipe.delete(self._recent_key(owner_id))
                    pipe.execute()
                    return MergeResult(status=APPLIED, record=record, tags_replaced=result.tags_replaced)
                except redis.WatchError:
                    logger.debug(f"Concurrent write on {clip_key}, retrying ({attempt + 1})")
                    continue

        raise TransientError(f"clip {clip_id} is being written concurrently, retry later", code="BUSY")

    # ==================== TAG OPERATIONS ====================

    def upsert_tag(self, owner_id: str, name: str, now: int) -> Tag:
        index_key = self._tag_index_key(owner_id)
        display = normalize_tag_name(name)
        key = display.lower()

        for attempt in range(self.max_retries):
            with self.client.pipeline() as pipe:
                try:
                    pipe.watch(index_key)
                    plan = self._plan_tags(pipe, owner_id, [display], now)[0]
                    pipe.multi()
                    pipe.hset(self._tag_key(owner_id, plan.tag_id), mapping=plan.mapping)
                    if plan.new:
                        pipe.hset(index_key, key, plan.tag_id)
                    pipe.execute()
                    break
                except redis.WatchError:
                    continue
        else:
            raise TransientError(f"tag {display!r} is being written concurrently, retry later", code="BUSY")

        return self.get_tag(owner_id, plan.tag_id)

    def get_tag(self, owner_id: str, tag_id: str) -> Optional[Tag]:
        row = self.client.hgetall(self._tag_key(owner_id, tag_id))
        if not row:
            return None
        return Tag(
            id=row["id"],
            ownerId=row["ownerId"],
            displayName=row["name"],
            normalizedKey=row["normalizedKey"],
            isDeleted=row.get("isDeleted") == "1",
            createdAt=int(row["createdAt"]),
            updatedAt=int(row["updatedAt"]),
        )

    def list_tags(self, owner_id: str) -> List[TagSummary]:
        tag_ids = list(self.client.hvals(self._tag_index_key(owner_id)))
        if not tag_ids:
            return []

        with self.client.pipeline(transaction=False) as pipe:
            for tag_id in tag_ids:
                pipe.hgetall(self._tag_key(owner_id, tag_id))
                pipe.smembers(self._tag_clips_key(owner_id, tag_id))
            replies = pipe.execute()

        rows = replies[0::2]
        linked = [sorted(s) for s in replies[1::2]]
        all_clip_ids = sorted(set().union(*[set(ids) for ids in linked]))
        alive = self._live_clip_ids(owner_id, all_clip_ids)

        summaries = []
        for row, clip_ids in zip(rows, linked):
            if not row or row.get("isDeleted") == "1":
                continue
            summaries.append(TagSummary(
                id=row["id"],
                name=row["name"],
                updatedAt=int(row["updatedAt"]),
                clipCount=sum(1 for c in clip_ids if c in alive),
            ))
        summaries.sort(key=lambda t: (-t.clipCount, t.name.lower()))
        return summaries

    def _live_clip_ids(self, owner_id: str, clip_ids: List[str]) -> Set[str]:
        if not clip_ids:
            return set()
        raws = self.client.mget([self._clip_key(owner_id, c) for c in clip_ids])
        alive = set()
        for clip_id, raw in zip(clip_ids, raws):
            if raw is not None and not json.loads(raw).get("isDeleted"):
                alive.add(clip_id)
        return alive

    def delete_tag(self, owner_id: str, tag_id: str, now: int) -> bool:
        """Unlink a tag from every clip and mark it deleted. The row is kept for reuse."""
        tag_key = self._tag_key(owner_id, tag_id)
        tag_clips_key = self._tag_clips_key(owner_id, tag_id)
        if not self.client.exists(tag_key):
            return False

        for attempt in range(self.max_retries):
            with self.client.pipeline() as pipe:
                try:
                    pipe.watch(tag_key, tag_clips_key)
                    clip_ids = pipe.smembers(tag_clips_key)
                    pipe.multi()
                    for clip_id in clip_ids:
                        pipe.srem(self._clip_tags_key(owner_id, clip_id), tag_id)
                    pipe.delete(tag_clips_key)
                    pipe.hset(tag_key, mapping={"isDeleted": "1", "updatedAt": str(now)})
                    pipe.delete(self._recent_key(owner_id))
                    pipe.execute()
                    return True
                except redis.WatchError:
                    continue

        raise TransientError(f"tag {tag_id} is being written concurrently, retry later", code="BUSY")

    # ==================== RECENT LIST CACHE ====================

    def read_recent_cache(self, owner_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self.client.get(self._recent_key(owner_id))
            if not raw:
                return None
            parsed = json.loads(raw)
        except (redis.RedisError, ValueError) as e:
            logger.debug(f"Recent clips cache read failed: {e}")
            return None
        if not isinstance(parsed, dict) or not isinstance(parsed.get("items"), list):
            return None
        return parsed

    def write_recent_cache(self, owner_id: str, payload: Dict[str, Any]) -> None:
        try:
            self.client.set(self._recent_key(owner_id), json.dumps(payload), ex=self.recent_ttl)
        except redis.RedisError as e:
            logger.debug(f"Recent clips cache write failed: {e}")

    def invalidate_recent_cache(self, owner_id: str) -> None:
        try:
            self.client.delete(self._recent_key(owner_id))
        except redis.RedisError as e:
            logger.debug(f"Recent clips cache invalidation failed: {e}")

    # ==================== UTILITY OPERATIONS ====================

    def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy" if self.client.ping() else "unhealthy"}

    def close(self):
        self.client.close()
