import platform
from typing import Type

from clipsync.clipboard.base import ClipboardItem, ClipboardSnapshot


def get_clipboard_class() -> Type[ClipboardItem]:
    system = platform.system()

    if system == "Windows":
        from clipsync.clipboard.windows import WindowsClipboard
        return WindowsClipboard
    elif system == "Linux":
        from clipsync.clipboard.linux import LinuxClipboard
        return LinuxClipboard
    elif system == "Darwin":
        from clipsync.clipboard.macos import MacOSClipboard
        return MacOSClipboard
    else:
        raise NotImplementedError(f"Platform '{system}' is not supported")


def get_clipboard_item() -> ClipboardItem:
    clipboard_class = get_clipboard_class()
    return clipboard_class()


def read_clipboard() -> ClipboardSnapshot:
    return get_clipboard_item().snapshot


def write_clipboard(snapshot: ClipboardSnapshot) -> bool:
    return get_clipboard_class().set_clipboard(snapshot)
