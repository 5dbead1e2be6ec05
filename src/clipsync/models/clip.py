import time
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from ulid import ULID

from clipsync.errors import ValidationFailed


def now_ms() -> int:
    return int(time.time() * 1000)


def new_clip_id() -> str:
    return f"c_{ULID()}"


def new_tag_id() -> str:
    return f"t_{ULID()}"


class ClipKind(str, Enum):
    TEXT = "text"
    LINK = "link"
    HTML = "html"
    IMAGE = "image"


class ImagePayload(BaseModel):
    """Encoded image of a clip, stored inline (``dataUrl``) or in object storage (``objectKey``)."""

    storage: Literal["inline", "object"]
    mime: str
    byteLength: int = Field(ge=0)
    sha256: str
    dataUrl: Optional[str] = None
    objectKey: Optional[str] = None

    @model_validator(mode="after")
    def _one_tier(self) -> "ImagePayload":
        if self.storage == "inline":
            if self.objectKey is not None or not self.dataUrl:
                raise ValueError("inline images carry dataUrl and no objectKey")
        else:
            if self.dataUrl is not None or not self.objectKey:
                raise ValueError("object images carry objectKey and no dataUrl")
        return self


class ClipRecord(BaseModel):
    id: str
    ownerId: str
    originDeviceId: str
    kind: ClipKind
    summary: str
    content: str = ""
    richHtml: Optional[str] = None
    sourceUrl: Optional[str] = None
    imagePayload: Optional[ImagePayload] = None
    imagePreview: Optional[str] = None
    isFavorite: bool = False
    isDeleted: bool = False
    tags: List[str] = Field(default_factory=list)
    clientUpdatedAt: int
    serverUpdatedAt: int
    createdAt: int

    def lite(self) -> "ClipRecord":
        """Copy without the large fields (HTML body and inline image bytes)."""
        payload = self.imagePayload
        if payload is not None and payload.dataUrl is not None:
            payload = payload.model_copy(update={"dataUrl": None})
        return self.model_copy(update={"richHtml": None, "imagePayload": payload})


class ClipChange(BaseModel):
    """A partial record sent by a device.

    Fields left out keep their stored value, fields sent as ``null`` are
    cleared. ``model_fields_set`` tells the two apart.
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    deviceId: Optional[str] = None
    kind: Optional[ClipKind] = None
    summary: Optional[str] = None
    content: Optional[str] = None
    richHtml: Optional[str] = None
    sourceUrl: Optional[str] = None
    imageDataUrl: Optional[str] = None
    imagePreview: Optional[str] = None
    isFavorite: Optional[bool] = None
    isDeleted: Optional[bool] = None
    tags: Optional[List[str]] = None
    clientUpdatedAt: Optional[int] = Field(default=None, ge=0)

    def has(self, field: str) -> bool:
        return field in self.model_fields_set

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_unset=True)


class Tag(BaseModel):
    id: str
    ownerId: str
    displayName: str
    normalizedKey: str
    isDeleted: bool = False
    createdAt: int
    updatedAt: int


class TagSummary(BaseModel):
    id: str
    name: str
    updatedAt: int
    clipCount: int = 0


_FIELD_CODES = {
    "kind": "INVALID_CLIP_KIND",
    "clientUpdatedAt": "INVALID_CLIENT_UPDATED_AT",
    "tags": "INVALID_TAG",
}


def parse_change(payload: Any) -> ClipChange:
    """Validate a JSON body into a ``ClipChange``, raising ``ValidationFailed``."""
    if not isinstance(payload, dict):
        raise ValidationFailed("INVALID_CHANGE", "change must be a JSON object")
    try:
        return ClipChange.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        field = str(first["loc"][0]) if first.get("loc") else ""
        code = _FIELD_CODES.get(field, "INVALID_CHANGE")
        raise ValidationFailed(code, f"{field or 'change'}: {first['msg']}") from e
