from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple
import datetime

RAW_PIXELS_MIME = "image/x-raw-pixels"


@dataclass(frozen=True)
class ClipboardImage:
    """Image bytes exactly as the OS handed them over.

    ``data`` is either an encoded container (``mime`` names it) or a raw pixel
    buffer (``RAW_PIXELS_MIME``) described by ``mode`` and ``size``.
    """
    data: bytes
    mime: str
    size: Optional[Tuple[int, int]] = None
    mode: Optional[str] = None


@dataclass(frozen=True)
class ClipboardSnapshot:
    text: str = ""
    html: str = ""
    image: Optional[ClipboardImage] = None

    def is_empty(self) -> bool:
        return not (self.text.strip() or self.html.strip() or self.image)


class ClipboardItem(ABC):

    def __init__(self):
        self.snapshot: ClipboardSnapshot = self._get_cbi()
        self.timestamp: datetime.datetime = datetime.datetime.now()

    @abstractmethod
    def _get_cbi(self) -> ClipboardSnapshot:
        pass

    @abstractmethod
    def _set_clipboard(self, snapshot: ClipboardSnapshot) -> bool:
        pass

    @classmethod
    def set_clipboard(cls, snapshot: ClipboardSnapshot) -> bool:
        try:
            instance = cls.__new__(cls)
            return instance._set_clipboard(snapshot)
        except Exception:
            return False
