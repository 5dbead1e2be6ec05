"""
Decides where an image written to a clip lives.

Encoded bytes up to ``inline_threshold`` stay inline in the record as a data
URL. Larger bytes go to the object store under their content hash and the
record keeps the key, MIME type, length and hash, plus an inline preview.
"""

import hashlib
import logging
from typing import Optional, Tuple

from clipsync.database.object_store import FileObjectStore
from clipsync.errors import CapacityError, ValidationFailed
from clipsync.models.clip import ImagePayload
from clipsync.services.image_encoder import DEFAULT_PREVIEW_BUDGET, ImageEncoder
from clipsync.utils.content import parse_data_url, to_data_url

logger = logging.getLogger(__name__)

DEFAULT_INLINE_THRESHOLD = 48 * 1024
DEFAULT_MAX_IMAGE_BYTES = 1_500_000


class ImageTieringPolicy:
    def __init__(
        self,
        object_store: Optional[FileObjectStore] = None,
        inline_threshold: int = DEFAULT_INLINE_THRESHOLD,
        max_image_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
        encoder: Optional[ImageEncoder] = None,
        preview_budget: int = DEFAULT_PREVIEW_BUDGET,
    ) -> None:
        # without an object store every image stays inline (device-local mode)
        self.object_store = object_store
        self.inline_threshold = inline_threshold
        self.max_image_bytes = max_image_bytes
        self.encoder = encoder or ImageEncoder()
        self.preview_budget = preview_budget

    def store(self, data_url: str, preview: Optional[str] = None) -> Tuple[ImagePayload, Optional[str]]:
        try:
            mime, data = parse_data_url(data_url)
        except ValueError as e:
            raise ValidationFailed("INVALID_IMAGE", f"imageDataUrl: {e}") from e
        if not mime.startswith("image/"):
            raise ValidationFailed("INVALID_IMAGE", f"imageDataUrl must be an image, got {mime}")
        if not data:
            raise ValidationFailed("INVALID_IMAGE", "imageDataUrl is empty")
        if len(data) > self.max_image_bytes:
            raise CapacityError(
                f"image is {len(data)} bytes, limit is {self.max_image_bytes} bytes",
                attempted_bytes=len(data),
            )
        if preview is not None:
            self._check_preview(preview)

        digest = hashlib.sha256(data).hexdigest()

        if self.object_store is None or len(data) <= self.inline_threshold:
            payload = ImagePayload(
                storage="inline",
                mime=mime,
                byteLength=len(data),
                sha256=digest,
                dataUrl=to_data_url(mime, data),
            )
            return payload, preview

        key = self.object_store.put(data, mime)
        payload = ImagePayload(
            storage="object",
            mime=mime,
            byteLength=len(data),
            sha256=digest,
            objectKey=key,
        )
        if preview is None:
            preview = self._make_preview(data)
        return payload, preview

    def _check_preview(self, preview: str) -> None:
        try:
            mime, data = parse_data_url(preview)
        except ValueError as e:
            raise ValidationFailed("INVALID_IMAGE", f"imagePreview: {e}") from e
        if not mime.startswith("image/") or len(data) > self.inline_threshold:
            raise ValidationFailed("INVALID_IMAGE", "imagePreview must be a small inline image")

    def _make_preview(self, data: bytes) -> Optional[str]:
        result = self.encoder.preview(data, self.preview_budget)
        if result is None:
            logger.info("No preview could be generated; storing image without one")
            return None
        return result.data_url()
