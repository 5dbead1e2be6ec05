import os
import shutil
import subprocess
from typing import Callable, List, Optional

from clipsync.clipboard.base import ClipboardImage, ClipboardItem, ClipboardSnapshot

READ_TIMEOUT = 1.5
WRITE_TIMEOUT = 2.0


class LinuxClipboard(ClipboardItem):
    """Clipboard access through ``wl-paste``/``wl-copy`` on Wayland or ``xclip`` on X11."""

    _IMAGE_TARGETS = {
        "image/png": "image/png",
        "image/jpeg": "image/jpeg",
        "image/jpg": "image/jpeg",
        "image/pjpeg": "image/jpeg",
        "image/bmp": "image/bmp",
        "image/x-ms-bmp": "image/bmp",
        "image/webp": "image/webp",
        "image/tiff": "image/tiff",
    }
    _HTML_TARGETS = ("text/html", "text/html;charset=utf-8")
    _TEXT_TARGETS = (
        "text/plain;charset=utf-8",
        "text/plain;charset=utf8",
        "utf8_string",
        "text/plain",
        "string",
    )

    def _get_cbi(self) -> ClipboardSnapshot:
        for strategy in (self._from_wayland, self._from_xclip):
            try:
                snapshot = strategy()
            except Exception:
                snapshot = None
            if snapshot is not None:
                return snapshot
        return ClipboardSnapshot()

    # ==================== READ ====================

    def _from_wayland(self) -> Optional[ClipboardSnapshot]:
        if not os.environ.get("WAYLAND_DISPLAY") or not shutil.which("wl-paste"):
            return None

        def reader(target: str) -> Optional[bytes]:
            command = ["wl-paste", "--type", target]
            if target.lower().startswith("text/"):
                command.append("--no-newline")
            return self._run(command, READ_TIMEOUT)

        targets = self._targets(self._run(["wl-paste", "--list-types"], READ_TIMEOUT))
        return self._snapshot(targets, reader)

    def _from_xclip(self) -> Optional[ClipboardSnapshot]:
        if not shutil.which("xclip"):
            return None

        def reader(target: str) -> Optional[bytes]:
            return self._run(["xclip", "-selection", "clipboard", "-t", target, "-o"], READ_TIMEOUT)

        return self._snapshot(self._targets(reader("TARGETS")), reader)

    def _snapshot(self, targets: List[str], reader: Callable[[str], Optional[bytes]]) -> Optional[ClipboardSnapshot]:
        if not targets:
            return None
        offered = {t.lower(): t for t in targets}

        def first(candidates) -> Optional[tuple]:
            for name in candidates:
                if name in offered:
                    data = reader(offered[name])
                    if data:
                        return name, data
            return None

        image = None
        found = first(self._IMAGE_TARGETS)
        if found is not None:
            image = ClipboardImage(data=found[1], mime=self._IMAGE_TARGETS[found[0]])

        html = first(self._HTML_TARGETS)
        text = first(self._TEXT_TARGETS)
        return ClipboardSnapshot(
            text=text[1].decode("utf-8", errors="ignore") if text else "",
            html=html[1].decode("utf-8", errors="ignore") if html else "",
            image=image,
        )

    @staticmethod
    def _targets(data: Optional[bytes]) -> List[str]:
        if not data:
            return []
        return [line.strip() for line in data.decode("utf-8", errors="ignore").splitlines() if line.strip()]

    @staticmethod
    def _run(command: List[str], timeout: float, stdin: Optional[bytes] = None) -> Optional[bytes]:
        try:
            result = subprocess.run(
                command,
                input=stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=True,
                timeout=timeout,
            )
            return result.stdout
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
            return None

    # ==================== WRITE ====================

    def _set_clipboard(self, snapshot: ClipboardSnapshot) -> bool:
        if snapshot.image is not None:
            mime, payload = snapshot.image.mime, snapshot.image.data
        elif snapshot.html:
            mime, payload = "text/html", snapshot.html.encode("utf-8")
        else:
            mime, payload = None, snapshot.text.encode("utf-8")

        if shutil.which("wl-copy"):
            command = ["wl-copy"] + (["--type", mime] if mime else [])
        elif shutil.which("xclip"):
            command = ["xclip", "-selection", "clipboard"] + (["-t", mime] if mime else [])
        else:
            return False
        return self._run(command, WRITE_TIMEOUT, stdin=payload) is not None
