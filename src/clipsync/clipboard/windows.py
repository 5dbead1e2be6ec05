import io
import time
from contextlib import contextmanager
from typing import Optional

import win32clipboard as wc
import win32con
from PIL import Image, ImageGrab

from clipsync.clipboard.base import RAW_PIXELS_MIME, ClipboardImage, ClipboardItem, ClipboardSnapshot

HTML_FORMAT_NAME = "HTML Format"


@contextmanager
def _open_clipboard(retries: int = 3, delay_s: float = 0.05):
    opened = False
    for _ in range(retries):
        try:
            wc.OpenClipboard()
            opened = True
            break
        except Exception:
            time.sleep(delay_s)
    try:
        yield opened
    finally:
        if opened:
            try:
                wc.CloseClipboard()
            except Exception:
                pass


class WindowsClipboard(ClipboardItem):
    def _get_cbi(self) -> ClipboardSnapshot:
        image = self._from_imagegrab()

        text = ""
        html = ""
        with _open_clipboard() as opened:
            if not opened:
                return ClipboardSnapshot(image=image)

            if wc.IsClipboardFormatAvailable(wc.CF_UNICODETEXT):
                try:
                    text = wc.GetClipboardData(wc.CF_UNICODETEXT) or ""
                except Exception:
                    text = ""

            html_fmt = wc.RegisterClipboardFormat(HTML_FORMAT_NAME)
            if wc.IsClipboardFormatAvailable(html_fmt):
                try:
                    raw = wc.GetClipboardData(html_fmt)
                    raw_b = raw if isinstance(raw, (bytes, bytearray)) else str(raw).encode("utf-8")
                    html = self._extract_html_fragment(bytes(raw_b))
                except Exception:
                    html = ""

        return ClipboardSnapshot(text=str(text), html=html, image=image)

    def _from_imagegrab(self) -> Optional[ClipboardImage]:
        try:
            clipboard_data = ImageGrab.grabclipboard()
        except Exception:
            return None

        # file lists come back as a list of paths; only bitmaps count here
        if clipboard_data is None or not hasattr(clipboard_data, "tobytes"):
            return None

        return ClipboardImage(
            data=clipboard_data.tobytes(),
            mime=RAW_PIXELS_MIME,
            size=clipboard_data.size,
            mode=clipboard_data.mode,
        )

    @staticmethod
    def _extract_html_fragment(raw: bytes) -> str:
        header = raw[:4096].decode("ascii", errors="ignore")
        start_i = header.find("StartFragment:")
        end_i = header.find("EndFragment:")
        if start_i != -1 and end_i != -1:
            try:
                start = int(header[start_i: header.find("\n", start_i)].split(":", 1)[1].strip())
                end = int(header[end_i: header.find("\n", end_i)].split(":", 1)[1].strip())
            except ValueError:
                start, end = -1, -1
            if 0 <= start < end <= len(raw):
                return raw[start:end].decode("utf-8", errors="ignore")
        return raw.decode("utf-8", errors="ignore")

    def _set_clipboard(self, snapshot: ClipboardSnapshot) -> bool:
        with _open_clipboard() as opened:
            if not opened:
                return False

            wc.EmptyClipboard()

            if snapshot.image is not None:
                if snapshot.image.mime == RAW_PIXELS_MIME:
                    image = Image.frombytes(snapshot.image.mode, snapshot.image.size, snapshot.image.data)
                else:
                    image = Image.open(io.BytesIO(snapshot.image.data))

                if image.mode == "RGBA":
                    background = Image.new("RGB", image.size, (255, 255, 255))
                    background.paste(image, mask=image.split()[3])
                    image = background
                elif image.mode != "RGB":
                    image = image.convert("RGB")

                output = io.BytesIO()
                image.save(output, "BMP")
                bmp_data = output.getvalue()
                if len(bmp_data) <= 14:
                    return False
                # CF_DIB is the BMP file minus its 14-byte file header
                wc.SetClipboardData(win32con.CF_DIB, bmp_data[14:])

            if snapshot.text:
                wc.SetClipboardData(wc.CF_UNICODETEXT, snapshot.text)
            return True
