from typing import Optional

try:
    from AppKit import (
        NSPasteboard,
        NSPasteboardTypeHTML,
        NSPasteboardTypePNG,
        NSPasteboardTypeString,
        NSPasteboardTypeTIFF,
    )
    from Foundation import NSData
    HAS_APPKIT = True
except ImportError:
    HAS_APPKIT = False

from clipsync.clipboard.base import ClipboardImage, ClipboardItem, ClipboardSnapshot


class MacOSClipboard(ClipboardItem):

    def _get_cbi(self) -> ClipboardSnapshot:
        if not HAS_APPKIT:
            return ClipboardSnapshot()

        pasteboard = NSPasteboard.generalPasteboard()
        types = pasteboard.types() or []

        image = None
        if NSPasteboardTypePNG in types:
            image = self._get_image(pasteboard, NSPasteboardTypePNG, "image/png")
        if image is None and NSPasteboardTypeTIFF in types:
            image = self._get_image(pasteboard, NSPasteboardTypeTIFF, "image/tiff")

        html = ""
        if NSPasteboardTypeHTML in types:
            html = pasteboard.stringForType_(NSPasteboardTypeHTML) or ""

        text = ""
        if NSPasteboardTypeString in types:
            text = pasteboard.stringForType_(NSPasteboardTypeString) or ""

        return ClipboardSnapshot(text=str(text), html=str(html), image=image)

    def _get_image(self, pasteboard, pb_type: str, mime_type: str) -> Optional[ClipboardImage]:
        try:
            data = pasteboard.dataForType_(pb_type)
        except Exception:
            return None
        if not data:
            return None
        return ClipboardImage(data=bytes(data), mime=mime_type)

    def _set_clipboard(self, snapshot: ClipboardSnapshot) -> bool:
        if not HAS_APPKIT:
            return False

        pasteboard = NSPasteboard.generalPasteboard()
        pasteboard.clearContents()

        if snapshot.image is not None:
            payload = snapshot.image.data
            ns_data = NSData.dataWithBytes_length_(payload, len(payload))
            pb_type = NSPasteboardTypeTIFF if "tif" in snapshot.image.mime else NSPasteboardTypePNG
            pasteboard.setData_forType_(ns_data, pb_type)
        if snapshot.html:
            pasteboard.setString_forType_(snapshot.html, NSPasteboardTypeHTML)
        if snapshot.text:
            pasteboard.setString_forType_(snapshot.text, NSPasteboardTypeString)
        return True
