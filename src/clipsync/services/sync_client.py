"""
Device side of the sync protocol.

Local writes land in the mirror (a ``LocalStore``) immediately and are queued
in an outbox. ``push`` sends the outbox in batches and adopts the server's
copy of every record it answers with; ``pull`` walks the server's change
feed from the stored cursor. Network failures leave the outbox and cursor
untouched and push the next attempt back exponentially.
"""

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from clipsync import API_VERSION
from clipsync.config import DeviceConfig
from clipsync.database.local_store import LocalStore, write_json_atomic
from clipsync.errors import AuthError, ClipSyncError, ConflictError, NotFound, TransientError, ValidationFailed
from clipsync.models.clip import ClipChange, ClipRecord

logger = logging.getLogger(__name__)

PUSH_BATCH_SIZE = 300
PULL_PAGE_SIZE = 300
BACKOFF_BASE_SECONDS = 2.0
BACKOFF_MAX_SECONDS = 300.0
# statuses that reject a single change rather than the whole request
CHANGE_REJECTED_STATUSES = (400, 413)


@dataclass
class SyncState:
    cursor: Optional[str] = None
    outbox: List[Dict[str, Any]] = field(default_factory=list)
    failures: int = 0
    nextAttemptAt: float = 0.0
    lastSyncAt: Optional[float] = None

    @classmethod
    def load(cls, path: Path) -> "SyncState":
        if not path.exists():
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return cls(
                cursor=data.get("cursor"),
                outbox=[e for e in data.get("outbox", []) if isinstance(e, dict) and e.get("id")],
                failures=int(data.get("failures", 0)),
                nextAttemptAt=float(data.get("nextAttemptAt", 0.0)),
                lastSyncAt=data.get("lastSyncAt"),
            )
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Sync state {path} is unreadable, starting fresh: {e}")
            return cls()

    def save(self, path: Path) -> None:
        write_json_atomic(path, asdict(self))


@dataclass
class PushReport:
    applied: List[ClipRecord] = field(default_factory=list)
    conflicts: List[ClipRecord] = field(default_factory=list)
    dropped: List[Dict[str, Any]] = field(default_factory=list)


class SyncClient:
    def __init__(
        self,
        config: DeviceConfig,
        store: LocalStore,
        state_path: Optional[Path] = None,
        http: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.store = store
        self.state_path = Path(state_path or store.path.with_name("sync-state.json"))
        self.http = http or httpx.Client(base_url=config.apiBase.strip().rstrip("/"), timeout=10.0)
        self.clock = clock
        self.state = SyncState.load(self.state_path)
        self._state_lock = threading.RLock()
        self._sync_lock = threading.Lock()

    # ==================== HTTP ====================

    def _headers(self) -> Dict[str, str]:
        headers = {"x-user-id": self.config.userId, "x-device-id": self.config.deviceId}
        if self.config.sessionToken:
            headers["Authorization"] = f"Bearer {self.config.sessionToken}"
        return headers

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self.http.request(method, f"/{API_VERSION}{path}", headers=self._headers(), **kwargs)
        except httpx.TransportError as e:
            raise TransientError(f"{method} {path} failed: {e}") from e

    def _request(self, method: str, path: str, **kwargs) -> Any:
        response = self._send(method, path, **kwargs)
        if response.status_code >= 500:
            raise TransientError(f"{method} {path} answered {response.status_code}")
        try:
            body = response.json()
        except ValueError as e:
            raise TransientError(f"{method} {path} answered with a non-JSON body") from e

        if body.get("ok"):
            return body.get("data")

        code = body.get("code", "UNKNOWN")
        message = body.get("message", "")
        if response.status_code == 409:
            record = body.get("record")
            raise ConflictError(message, ClipRecord.model_validate(record) if record else None)
        if response.status_code == 404:
            raise NotFound(message)
        if response.status_code in (401, 403):
            raise AuthError(code, message, status=response.status_code)
        raise ValidationFailed(code, message, status=response.status_code)

    # ==================== OUTBOX ====================

    def _save_state(self) -> None:
        with self._state_lock:
            self.state.save(self.state_path)

    def enqueue(self, wire: Dict[str, Any]) -> None:
        with self._state_lock:
            self.state.outbox.append(wire)
            self._save_state()

    @property
    def pending(self) -> int:
        return len(self.state.outbox)

    def _pending_ids(self) -> set:
        with self._state_lock:
            return {e["id"] for e in self.state.outbox}

    # ==================== LOCAL WRITES ====================

    def create(self, change: ClipChange) -> ClipRecord:
        result = self.store.apply(change)
        wire = change.model_copy(update={"id": result.record.id}).to_wire()
        wire.setdefault("clientUpdatedAt", result.record.clientUpdatedAt)
        self.enqueue(wire)
        return result.record

    def _enqueue_state_of(self, record: ClipRecord, *fields: str) -> None:
        wire = {"id": record.id, "clientUpdatedAt": record.clientUpdatedAt}
        for name in fields:
            wire[name] = getattr(record, name)
        self.enqueue(wire)

    def merge_into(self, clip_id: str, tags: Iterable[str], favorite: bool) -> ClipRecord:
        record = self.store.merge_into(clip_id, tags, favorite)
        self._enqueue_state_of(record, "tags", "isFavorite", "isDeleted")
        return record

    def set_favorite(self, clip_id: str, favorite: bool) -> ClipRecord:
        record = self.store.set_favorite(clip_id, favorite)
        self._enqueue_state_of(record, "isFavorite")
        return record

    def delete(self, clip_id: str) -> ClipRecord:
        record = self.store.delete(clip_id)
        self._enqueue_state_of(record, "isDeleted")
        return record

    def list(self, q: str = "", favorite_only: bool = False) -> Dict[str, Any]:
        return self.store.list(q=q, favorite_only=favorite_only)

    # ==================== PUSH / PULL ====================

    def _post_batch(self, batch: List[Dict[str, Any]], report: PushReport) -> List[ClipRecord]:
        """Send one batch; an invalid batch is retried change by change."""
        try:
            data = self._request("POST", "/sync/push", json={"changes": batch})
        except ValidationFailed as e:
            if e.status not in CHANGE_REJECTED_STATUSES:
                raise
            if len(batch) == 1:
                logger.warning(f"Server rejected change {batch[0].get('id')}: {e.code} {e.message}")
                report.dropped.append(batch[0])
                return []
            records: List[ClipRecord] = []
            for entry in batch:
                records.extend(self._post_batch([entry], report))
            return records

        applied = [ClipRecord.model_validate(r) for r in data.get("applied", [])]
        conflicts = [ClipRecord.model_validate(r) for r in data.get("conflicts", [])]
        report.applied.extend(applied)
        report.conflicts.extend(conflicts)
        sent = {entry.get("id"): entry for entry in batch}
        for rejection in data.get("rejected", []):
            logger.warning(f"Server rejected change {rejection.get('id')}: {rejection.get('code')} {rejection.get('message')}")
            report.dropped.append(sent.get(rejection.get("id"), rejection))
        for record in conflicts:
            logger.info(f"Server had a newer version of {record.id}; adopting it")
        return applied + conflicts

    def push(self) -> PushReport:
        report = PushReport()
        with self._state_lock:
            batch = list(self.state.outbox[:PUSH_BATCH_SIZE])
        if not batch:
            return report

        records = self._post_batch(batch, report)

        final: Dict[str, ClipRecord] = {}
        for record in records:
            seen = final.get(record.id)
            if seen is None or record.serverUpdatedAt >= seen.serverUpdatedAt:
                final[record.id] = record

        with self._state_lock:
            del self.state.outbox[:len(batch)]
            still_pending = {e["id"] for e in self.state.outbox}
            self._save_state()

        self.store.replace_many(r for r in final.values() if r.id not in still_pending)
        return report

    def pull(self) -> int:
        received = 0
        while True:
            params: Dict[str, Any] = {"limit": PULL_PAGE_SIZE}
            if self.state.cursor:
                params["since"] = self.state.cursor
            data = self._request("GET", "/sync/pull", params=params)

            records = [ClipRecord.model_validate(c) for c in data.get("changes", [])]
            pending = self._pending_ids()
            self.store.replace_many(r for r in records if r.id not in pending)
            received += len(records)

            with self._state_lock:
                self.state.cursor = data.get("nextSince") or self.state.cursor
                self._save_state()

            if not data.get("hasMore") or not records:
                break
        return received

    def sync(self, force: bool = False) -> bool:
        """One push/pull cycle. Returns ``False`` when skipped or failed transiently."""
        now = self.clock()
        if not force and now < self.state.nextAttemptAt:
            return False
        if not self._sync_lock.acquire(blocking=False):
            return False

        try:
            while self.state.outbox:
                before = len(self.state.outbox)
                self.push()
                if len(self.state.outbox) >= before:
                    break
            received = self.pull()
        except TransientError as e:
            with self._state_lock:
                self.state.failures += 1
                delay = min(BACKOFF_MAX_SECONDS, BACKOFF_BASE_SECONDS * (2 ** (self.state.failures - 1)))
                self.state.nextAttemptAt = now + delay
                self._save_state()
            logger.warning(f"Sync failed, retrying in {delay:.0f}s: {e.message}")
            return False
        except AuthError as e:
            logger.error(f"Sync stopped, the server refused this device ({e.code}): {e.message}")
            return False
        except ClipSyncError as e:
            logger.error(f"Sync stopped: {e.code} {e.message}")
            return False
        finally:
            self._sync_lock.release()

        with self._state_lock:
            self.state.failures = 0
            self.state.nextAttemptAt = 0.0
            self.state.lastSyncAt = now
            self._save_state()
        if received:
            logger.info(f"Pulled {received} changes")
        return True

    # ==================== IMAGES ====================

    def fetch_image(self, record: ClipRecord) -> bytes:
        payload = record.imagePayload
        if payload is None:
            raise NotFound(f"clip {record.id} has no image")
        response = self._send(
            "GET",
            f"/images/{record.id}",
            params={"owner": record.ownerId, "hash": payload.sha256},
        )
        if response.status_code == 404:
            raise NotFound(f"image for clip {record.id} not found")
        if response.status_code >= 400:
            raise TransientError(f"image fetch answered {response.status_code}")
        return response.content

    def close(self) -> None:
        self.http.close()
