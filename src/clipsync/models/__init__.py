from clipsync.models.clip import (
    ClipChange,
    ClipKind,
    ClipRecord,
    ImagePayload,
    Tag,
    TagSummary,
    new_clip_id,
    new_tag_id,
    now_ms,
    parse_change,
)
from clipsync.models.devices import Identity

__all__ = [
    'ClipChange',
    'ClipKind',
    'ClipRecord',
    'Identity',
    'ImagePayload',
    'Tag',
    'TagSummary',
    'new_clip_id',
    'new_tag_id',
    'now_ms',
    'parse_change',
]
