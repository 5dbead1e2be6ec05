#!/usr/bin/env python3

import argparse
import logging
import signal
import sys
import time
from pathlib import Path
from typing import Optional, Union

from clipsync.config import DEFAULT_CONFIG_DIR, DeviceConfig
from clipsync.database.local_store import LocalStore
from clipsync.errors import ClipSyncError
from clipsync.models.devices import Identity
from clipsync.services.capture_service import CapturePipeline, ClipboardService
from clipsync.services.sync_client import SyncClient
from clipsync.services.worker import PeriodicWorker

logger = logging.getLogger(__name__)


class ClipSyncApp:
    """Device agent: clipboard watcher plus local storage or remote sync."""

    def __init__(self, config_dir: Optional[Path] = None, config: Optional[DeviceConfig] = None):
        self.config_dir = Path(config_dir or DEFAULT_CONFIG_DIR)
        self.config = config or DeviceConfig.load(self.config_dir)
        self.store = LocalStore(
            path=self.config_dir / "clips.json",
            identity=Identity(owner_id=self.config.userId, device_id=self.config.deviceId),
            retention_ms=self.config.retention_ms,
            max_clips=self.config.maxLocalClips,
        )
        self.sync_client: Optional[SyncClient] = None
        if self.config.is_remote_enabled:
            self.sync_client = SyncClient(self.config, self.store, state_path=self.config_dir / "sync-state.json")

        self.pipeline = CapturePipeline(sink=self.sink, device_id=self.config.deviceId)
        self.clipboard_service = ClipboardService(
            self.pipeline,
            poll_interval=self.config.pollInterval,
            auto_capture=self.config.autoCapture,
            image_loader=self.sync_client.fetch_image if self.sync_client else None,
        )
        self.sync_worker: Optional[PeriodicWorker] = None
        if self.sync_client is not None:
            self.sync_worker = PeriodicWorker("sync", self.sync_client.sync, self.config.syncInterval)
        self.running = False

    @property
    def sink(self) -> Union[LocalStore, SyncClient]:
        return self.sync_client if self.sync_client is not None else self.store

    @property
    def mode(self) -> str:
        return "remote" if self.sync_client is not None else "local"

    def start(self):
        if self.running:
            return

        removed = self.store.cleanup()
        logger.info(f"ClipSync starting in {self.mode} mode (device {self.config.deviceId}, {removed} expired clips removed)")
        self.running = True
        self.clipboard_service.start()
        if self.sync_worker is not None:
            self.sync_worker.start()

    def stop(self):
        if not self.running:
            return

        self.running = False
        self.clipboard_service.stop()
        if self.sync_worker is not None:
            self.sync_worker.stop()
        if self.sync_client is not None:
            self.sync_client.close()
        logger.info("ClipSync stopped")

    def run_forever(self):
        self.start()

        try:
            while self.running:
                time.sleep(1.0)
        except KeyboardInterrupt:
            print("\nStopping...")
        finally:
            self.stop()

    def set_favorite(self, clip_id: str, favorite: bool):
        return self.sink.set_favorite(clip_id, favorite)

    def delete(self, clip_id: str):
        return self.sink.delete(clip_id)

    def restore(self, clip_id: str) -> bool:
        record = self.store.get(clip_id)
        if record is None:
            logger.error(f"Clip {clip_id} not found")
            return False
        return self.clipboard_service.restore(record)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="clipsync",
        description="ClipSync - clipboard history with multi-device sync"
    )
    parser.add_argument(
        "-c", "--config-dir",
        type=Path,
        default=DEFAULT_CONFIG_DIR,
        help=f"Directory holding config and local data (default: {DEFAULT_CONFIG_DIR})"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose debug logging"
    )

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="watch the clipboard (default)")

    capture = sub.add_parser("capture", help="capture the clipboard once")
    capture.add_argument("-t", "--tag", action="append", default=[], help="tag to attach, repeatable")
    capture.add_argument("-f", "--favorite", action="store_true")

    listing = sub.add_parser("list", help="list recent clips")
    listing.add_argument("-q", "--query", default="")
    listing.add_argument("-f", "--favorites", action="store_true")

    sub.add_parser("sync", help="push and pull once")

    restore = sub.add_parser("restore", help="copy a stored clip back to the clipboard")
    restore.add_argument("clip_id")

    favorite = sub.add_parser("favorite", help="mark or unmark a clip as favorite")
    favorite.add_argument("clip_id")
    favorite.add_argument("--off", action="store_true")

    delete = sub.add_parser("delete", help="delete a clip")
    delete.add_argument("clip_id")

    configure = sub.add_parser("config", help="show or change device settings")
    configure.add_argument("--api-base")
    configure.add_argument("--user-id")
    configure.add_argument("--retention", choices=["30d", "180d", "365d", "forever"])
    configure.add_argument("--auto-capture", choices=["on", "off"])
    configure.add_argument("--session-token")

    return parser.parse_args(argv)


def _configure(args) -> int:
    config = DeviceConfig.load(args.config_dir)
    changes = {}
    if args.api_base is not None:
        changes["apiBase"] = args.api_base
    if args.user_id is not None:
        changes["userId"] = args.user_id
    if args.retention is not None:
        changes["retention"] = args.retention
    if args.auto_capture is not None:
        changes["autoCapture"] = args.auto_capture == "on"
    if args.session_token is not None:
        changes["sessionToken"] = args.session_token

    if changes:
        config = config.update(**changes)
        config.save(args.config_dir)
        # retention may have shrunk
        LocalStore(
            path=Path(args.config_dir) / "clips.json",
            retention_ms=config.retention_ms,
            max_clips=config.maxLocalClips,
        ).cleanup()

    for key, value in sorted(vars(config).items()):
        if key == "sessionToken" and value:
            value = "<set>"
        print(f"{key}: {value}")
    return 0


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='%(levelname)s: %(message)s')

    if args.command == "config":
        return _configure(args)

    app = ClipSyncApp(config_dir=args.config_dir)
    command = args.command or "run"

    try:
        if command == "run":
            def signal_handler(signum, frame):
                app.stop()
                sys.exit(0)

            signal.signal(signal.SIGINT, signal_handler)
            signal.signal(signal.SIGTERM, signal_handler)
            app.run_forever()
        elif command == "capture":
            outcome = app.clipboard_service.capture_now(tags=args.tag, favorite=args.favorite)
            print(outcome)
            if outcome.category == "CAPACITY":
                print(f"Content too large: {outcome.reason}")
                return 1
        elif command == "list":
            page = app.sink.list(q=args.query, favorite_only=args.favorites)
            for record in page["items"]:
                star = "*" if record.isFavorite else " "
                print(f"{star} {record.id}  {record.kind.value:<5}  {record.summary}")
        elif command == "sync":
            if app.sync_client is None:
                print("No apiBase configured; running in local-only mode")
                return 1
            return 0 if app.sync_client.sync(force=True) else 1
        elif command == "restore":
            return 0 if app.restore(args.clip_id) else 1
        elif command == "favorite":
            app.set_favorite(args.clip_id, not args.off)
        elif command == "delete":
            app.delete(args.clip_id)
    except ClipSyncError as e:
        logger.error(f"{e.code}: {e.message}")
        return 1
    finally:
        if command != "run" and app.sync_client is not None:
            if command in ("capture", "favorite", "delete"):
                app.sync_client.sync(force=True)
            app.sync_client.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
