"""
Clipboard capture: read, classify, encode, dedup, hand off to a sink.

The sink is the local store in local-only mode and the sync client in remote
mode. Both expose ``create(change) -> ClipRecord`` and
``merge_into(clip_id, tags, favorite)``.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Tuple

from clipsync.clipboard import ClipboardImage, ClipboardSnapshot, read_clipboard, write_clipboard
from clipsync.errors import CapacityError, ClipSyncError, NotFound
from clipsync.models.clip import ClipChange, ClipRecord, new_clip_id, now_ms
from clipsync.services.fingerprint import PayloadKey, ProbeKey, payload_key, probe
from clipsync.services.image_encoder import DEFAULT_IMAGE_BUDGET, DEFAULT_PREVIEW_BUDGET, ImageEncoder
from clipsync.services.worker import PeriodicWorker
from clipsync.utils.content import classify, parse_data_url

logger = logging.getLogger(__name__)

CAPTURED = "captured"
DUPLICATE = "duplicate"
BUSY = "busy"
REJECTED = "rejected"

RECENT_WINDOW_SECONDS = 30.0
FAILURE_COOLDOWN_SECONDS = 30.0
AUTO_CAPTURE_TAG = "auto"


@dataclass(frozen=True)
class CaptureOutcome:
    status: str
    reason: str = ""
    clip_id: Optional[str] = None
    category: Optional[str] = None
    attempted_bytes: int = 0

    def __str__(self) -> str:
        if self.status == REJECTED:
            return f"{REJECTED}({self.reason})"
        return self.status


@dataclass
class CaptureSession:
    """Per-device capture state owned by one pipeline."""

    recent_window: float = RECENT_WINDOW_SECONDS
    failure_cooldown: float = FAILURE_COOLDOWN_SECONDS
    last_probe: Optional[ProbeKey] = None
    recent: Deque[Tuple[PayloadKey, str, float]] = field(default_factory=lambda: deque(maxlen=64))
    failed_probes: Dict[ProbeKey, float] = field(default_factory=dict)
    in_flight: threading.Lock = field(default_factory=threading.Lock)

    def _prune(self, now: float) -> None:
        while self.recent and now - self.recent[0][2] > self.recent_window:
            self.recent.popleft()
        for key, at in list(self.failed_probes.items()):
            if now - at > self.failure_cooldown:
                del self.failed_probes[key]

    def find_recent(self, key: PayloadKey, now: float) -> Optional[str]:
        self._prune(now)
        for recent_key, clip_id, _ in reversed(self.recent):
            if recent_key == key:
                return clip_id
        return None

    def remember(self, key: PayloadKey, clip_id: str, now: float) -> None:
        self.recent.append((key, clip_id, now))

    def forget(self, clip_id: str) -> None:
        self.recent = deque((e for e in self.recent if e[1] != clip_id), maxlen=self.recent.maxlen)

    def mark_failed(self, probe_key: ProbeKey, now: float) -> None:
        self.failed_probes[probe_key] = now

    def is_cooling_down(self, probe_key: ProbeKey, now: float) -> bool:
        self._prune(now)
        return probe_key in self.failed_probes


class CapturePipeline:
    def __init__(
        self,
        sink,
        device_id: Optional[str] = None,
        reader: Callable[[], ClipboardSnapshot] = read_clipboard,
        encoder: Optional[ImageEncoder] = None,
        session: Optional[CaptureSession] = None,
        image_budget: int = DEFAULT_IMAGE_BUDGET,
        preview_budget: int = DEFAULT_PREVIEW_BUDGET,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], int] = now_ms,
    ) -> None:
        self.sink = sink
        self.device_id = device_id
        self.reader = reader
        self.encoder = encoder or ImageEncoder()
        self.session = session or CaptureSession()
        self.image_budget = image_budget
        self.preview_budget = preview_budget
        self.clock = clock
        self.wall_clock = wall_clock

    def capture(self, manual: bool = False, tags: Optional[List[str]] = None, favorite: bool = False) -> CaptureOutcome:
        """Run one capture.

        Watcher ticks (``manual=False``) give up with ``busy`` while another
        capture is in flight; manual captures wait for it.
        """
        lock = self.session.in_flight
        if manual:
            lock.acquire()
        elif not lock.acquire(blocking=False):
            logger.debug("Capture already in flight, skipping tick")
            return CaptureOutcome(BUSY)

        try:
            return self._capture(manual, list(tags or []), favorite)
        finally:
            lock.release()

    def prime(self) -> None:
        """Remember the current clipboard as already seen."""
        with self.session.in_flight:
            try:
                snapshot = self.reader()
            except Exception as e:
                logger.debug(f"Could not read clipboard to prime: {e}")
                return
            self.session.last_probe = probe(snapshot) if snapshot is not None else None

    def _capture(self, manual: bool, tags: List[str], favorite: bool) -> CaptureOutcome:
        now = self.clock()
        try:
            snapshot = self.reader()
        except Exception as e:
            logger.warning(f"Clipboard read failed: {e}")
            return CaptureOutcome(REJECTED, reason=f"clipboard unreadable: {e}")

        if snapshot is None or snapshot.is_empty():
            return CaptureOutcome(REJECTED, reason="clipboard is empty")

        probe_key = probe(snapshot)
        if not manual:
            if probe_key == self.session.last_probe:
                return CaptureOutcome(DUPLICATE)
            if self.session.is_cooling_down(probe_key, now):
                logger.debug("Skipping clipboard content that failed to encode recently")
                return CaptureOutcome(REJECTED, reason="cooling down after failed encode", category="CAPACITY")
        self.session.last_probe = probe_key

        built = self._build_change(snapshot, tags, favorite)
        if isinstance(built, CaptureOutcome):
            if built.category == "CAPACITY":
                self.session.mark_failed(probe_key, now)
            return built

        key = payload_key(built)
        retained = self.session.find_recent(key, now)
        if retained is not None:
            try:
                self.sink.merge_into(retained, tags, favorite)
                logger.debug(f"Clipboard repeated recent clip {retained}")
                return CaptureOutcome(DUPLICATE, clip_id=retained)
            except NotFound:
                self.session.forget(retained)

        try:
            record: ClipRecord = self.sink.create(built)
        except CapacityError as e:
            logger.warning(f"Clip rejected: {e.message}")
            self.session.mark_failed(probe_key, now)
            return CaptureOutcome(REJECTED, reason=e.message, category=e.category, attempted_bytes=e.attempted_bytes)
        except ClipSyncError as e:
            logger.warning(f"Clip rejected: {e.message}")
            return CaptureOutcome(REJECTED, reason=e.message, category=e.category)

        self.session.remember(key, record.id, now)
        logger.info(f"Clipboard captured: {record.kind.value}")
        return CaptureOutcome(CAPTURED, clip_id=record.id)

    def _build_change(self, snapshot: ClipboardSnapshot, tags: List[str], favorite: bool):
        has_image = snapshot.image is not None
        classification = classify(snapshot.text, snapshot.html, has_image)
        if classification is None:
            return CaptureOutcome(REJECTED, reason="clipboard is empty")

        fields = {
            "id": new_clip_id(),
            "kind": classification.kind,
            "content": classification.content,
            "tags": tags,
            "isFavorite": favorite,
            "clientUpdatedAt": self.wall_clock(),
        }
        if self.device_id:
            fields["deviceId"] = self.device_id
        if classification.rich_html:
            fields["richHtml"] = classification.rich_html
        if classification.source_url:
            fields["sourceUrl"] = classification.source_url

        if has_image:
            result = self.encoder.encode(snapshot.image, self.image_budget)
            if not result.ok:
                logger.warning(f"Image capture rejected: {result.reason}")
                return CaptureOutcome(
                    REJECTED,
                    reason=result.reason,
                    category="CAPACITY",
                    attempted_bytes=result.attempted_bytes,
                )
            fields["imageDataUrl"] = result.data_url()
            preview = self.encoder.preview(snapshot.image, self.preview_budget)
            if preview is not None:
                fields["imagePreview"] = preview.data_url()

        return ClipChange(**fields)


def snapshot_from_record(record: ClipRecord, image_bytes: Optional[bytes] = None) -> ClipboardSnapshot:
    """Clipboard content for writing a stored clip back."""
    image = None
    payload = record.imagePayload
    if payload is not None:
        if image_bytes is None and payload.dataUrl:
            _, image_bytes = parse_data_url(payload.dataUrl)
        if image_bytes is not None:
            image = ClipboardImage(data=image_bytes, mime=payload.mime)

    text = record.content
    if image is not None and text == "[Image]":
        text = ""
    return ClipboardSnapshot(text=text, html=record.richHtml or "", image=image)


class ClipboardService:
    """Watches the clipboard on a background worker and restores clips on demand."""

    def __init__(
        self,
        pipeline: CapturePipeline,
        poll_interval: float = 1.2,
        auto_capture: bool = True,
        writer: Callable[[ClipboardSnapshot], bool] = write_clipboard,
        image_loader: Optional[Callable[[ClipRecord], bytes]] = None,
    ) -> None:
        self.pipeline = pipeline
        self.auto_capture = auto_capture
        self._writer = writer
        self._image_loader = image_loader
        self._worker = PeriodicWorker("clipboard-watcher", self._tick, poll_interval)

    def start(self) -> None:
        if not self.auto_capture:
            return
        # content already on the clipboard at startup is not captured
        self.pipeline.prime()
        self._worker.start()

    def stop(self) -> None:
        self._worker.stop()

    def _tick(self) -> None:
        outcome = self.pipeline.capture(manual=False, tags=[AUTO_CAPTURE_TAG])
        if outcome.status in (DUPLICATE, BUSY):
            logger.debug(f"Watcher tick: {outcome}")

    def capture_now(self, tags: Optional[List[str]] = None, favorite: bool = False) -> CaptureOutcome:
        return self.pipeline.capture(manual=True, tags=tags, favorite=favorite)

    def restore(self, record: ClipRecord) -> bool:
        image_bytes = None
        if record.imagePayload is not None and record.imagePayload.storage == "object":
            if self._image_loader is None:
                logger.warning(f"Cannot restore image of {record.id}: no image loader")
            else:
                image_bytes = self._image_loader(record)

        ok = self._writer(snapshot_from_record(record, image_bytes))
        if ok:
            self.pipeline.prime()
            logger.info(f"Restored clip {record.id} to the clipboard")
        else:
            logger.warning(f"Failed to write clip {record.id} to the clipboard")
        return ok

    def __enter__(self) -> "ClipboardService":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
