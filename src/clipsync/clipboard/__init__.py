from clipsync.clipboard.base import ClipboardImage, ClipboardItem, ClipboardSnapshot, RAW_PIXELS_MIME
from clipsync.clipboard.factory import get_clipboard_class, get_clipboard_item, read_clipboard, write_clipboard

__all__ = [
    'ClipboardImage',
    'ClipboardItem',
    'ClipboardSnapshot',
    'RAW_PIXELS_MIME',
    'get_clipboard_class',
    'get_clipboard_item',
    'read_clipboard',
    'write_clipboard',
]
