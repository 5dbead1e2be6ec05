"""
Image encoding under a hard byte budget.

The encoder first tries a lossless PNG. When that is over budget it walks a
ladder of maximum pixel dimensions, and for each dimension a ladder of JPEG
qualities, returning the first encoding that fits.
"""

import io
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

from PIL import Image, UnidentifiedImageError

from clipsync.clipboard.base import RAW_PIXELS_MIME, ClipboardImage
from clipsync.utils.content import to_data_url

logger = logging.getLogger(__name__)

DEFAULT_MAX_DIMENSIONS: Tuple[int, ...] = (2560, 1920, 1440, 1080, 720, 480)
DEFAULT_QUALITIES: Tuple[int, ...] = (85, 72, 60, 45)
PREVIEW_MAX_DIMENSIONS: Tuple[int, ...] = (480, 320, 200)
PREVIEW_QUALITIES: Tuple[int, ...] = (70, 50, 35)

DEFAULT_IMAGE_BUDGET = 1_000_000
DEFAULT_PREVIEW_BUDGET = 24_000


@dataclass(frozen=True)
class EncodeResult:
    ok: bool
    data: bytes = b""
    mime: str = ""
    reason: str = ""
    size: Tuple[int, int] = (0, 0)
    attempted_bytes: int = 0

    def data_url(self) -> str:
        return to_data_url(self.mime, self.data)


def load_image(source: Union[ClipboardImage, bytes, Image.Image]) -> Image.Image:
    if isinstance(source, Image.Image):
        return source
    if isinstance(source, ClipboardImage):
        if source.mime == RAW_PIXELS_MIME:
            return Image.frombytes(source.mode, source.size, source.data)
        source = source.data
    image = Image.open(io.BytesIO(source))
    image.load()
    return image


def _flatten(image: Image.Image) -> Image.Image:
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[3])
        return background
    if image.mode != "RGB":
        return image.convert("RGB")
    return image


def _png_bytes(image: Image.Image) -> bytes:
    if image.mode not in ("1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16"):
        image = image.convert("RGBA")
    out = io.BytesIO()
    image.save(out, format="PNG", optimize=True)
    return out.getvalue()


def _jpeg_bytes(image: Image.Image, quality: int) -> bytes:
    out = io.BytesIO()
    image.save(out, format="JPEG", quality=quality, optimize=True)
    return out.getvalue()


class ImageEncoder:
    def __init__(
        self,
        max_dimensions: Sequence[int] = DEFAULT_MAX_DIMENSIONS,
        qualities: Sequence[int] = DEFAULT_QUALITIES,
        preview_dimensions: Sequence[int] = PREVIEW_MAX_DIMENSIONS,
        preview_qualities: Sequence[int] = PREVIEW_QUALITIES,
    ) -> None:
        self.max_dimensions = tuple(sorted(max_dimensions, reverse=True))
        self.qualities = tuple(sorted(qualities, reverse=True))
        self.preview_dimensions = tuple(sorted(preview_dimensions, reverse=True))
        self.preview_qualities = tuple(sorted(preview_qualities, reverse=True))

    def encode(self, source, budget: int) -> EncodeResult:
        return self._encode(source, budget, self.max_dimensions, self.qualities)

    def preview(self, source, budget: int = DEFAULT_PREVIEW_BUDGET) -> Optional[EncodeResult]:
        """Small rendition for list views. ``None`` when no rung fits."""
        try:
            result = self._encode(source, budget, self.preview_dimensions, self.preview_qualities, lossless=False)
        except Exception as e:
            logger.warning(f"Preview encoding failed: {e}")
            return None
        return result if result.ok else None

    def _encode(
        self,
        source,
        budget: int,
        dimensions: Sequence[int],
        qualities: Sequence[int],
        lossless: bool = True,
    ) -> EncodeResult:
        try:
            image = load_image(source)
        except (UnidentifiedImageError, OSError, ValueError, TypeError) as e:
            return EncodeResult(ok=False, reason=f"unreadable image: {e}")

        lossless_size = 0
        if lossless:
            png = _png_bytes(image)
            lossless_size = len(png)
            if lossless_size <= budget:
                return EncodeResult(ok=True, data=png, mime="image/png", size=image.size, attempted_bytes=lossless_size)

        flat = _flatten(image)
        longest = max(flat.size)
        rungs = [d for d in dimensions if d < longest]
        if longest <= dimensions[0]:
            rungs.insert(0, longest)

        for rung in rungs:
            candidate = flat
            if longest > rung:
                candidate = flat.copy()
                candidate.thumbnail((rung, rung), Image.Resampling.LANCZOS)
            for quality in qualities:
                data = _jpeg_bytes(candidate, quality)
                logger.debug(f"Encoded {candidate.size} at quality {quality}: {len(data)} bytes")
                if len(data) <= budget:
                    return EncodeResult(
                        ok=True,
                        data=data,
                        mime="image/jpeg",
                        size=candidate.size,
                        attempted_bytes=lossless_size,
                    )

        if not lossless:
            lossless_size = len(_png_bytes(image))
        return EncodeResult(
            ok=False,
            reason=f"Image too large ({lossless_size} bytes lossless, budget {budget} bytes)",
            attempted_bytes=lossless_size,
        )
