"""
Content helpers: URL detection, HTML handling, kind classification, summaries
and tag normalisation.

``infer_kind`` is the only place a clip kind is decided. Capture, the local
store and the server merge all call it.
"""

import base64
import binascii
import html as _html
import re
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import Iterable, List, Optional, Tuple

from clipsync.models.clip import ClipKind

SUMMARY_LENGTH = 120
MAX_TAGS_PER_CLIP = 20

_RE_URL = re.compile(r"^https?://\S+$", re.IGNORECASE)
_RE_SCRIPT_STYLE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)
_RE_TAG = re.compile(r"<[^>]+>")
_RE_WS = re.compile(r"\s+")
_RE_STRUCTURAL = re.compile(r"<(img|table|a|code|pre)\b", re.IGNORECASE)
_RE_STRUCTURAL_EMPTY = re.compile(r"<(img|table|a)\b", re.IGNORECASE)
_RE_DATA_URL = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)(?P<params>(;[^,;]+)*);base64,(?P<data>.*)$", re.DOTALL)
_BARE_META = {"<meta charset='utf-8'>", '<meta charset="utf-8">'}


def is_probably_url(value: Optional[str]) -> bool:
    return bool(value) and bool(_RE_URL.match(value.strip()))


class _AnchorHrefParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.hrefs: List[str] = []

    def handle_starttag(self, tag, attrs):
        # <link href>, <base href> and data-href attributes are not links
        if tag != "a":
            return
        for name, value in attrs:
            if name == "href" and value:
                self.hrefs.append(value.strip())


def extract_url_from_html(value: Optional[str]) -> Optional[str]:
    """Return the first anchor ``href`` that is a real http(s) URL."""
    if not value:
        return None
    parser = _AnchorHrefParser()
    try:
        parser.feed(value)
        parser.close()
    except Exception:
        return None
    for href in parser.hrefs:
        if is_probably_url(href):
            return href
    return None


def html_to_text(value: Optional[str]) -> str:
    if not value:
        return ""
    s = _RE_SCRIPT_STYLE.sub(" ", value)
    s = _RE_TAG.sub(" ", s)
    # truncated markup like "<ul style=..." has no closing ">"
    lt = s.rfind("<")
    gt = s.rfind(">")
    if lt > gt:
        s = s[:lt]
    s = _html.unescape(s)
    return _RE_WS.sub(" ", s).strip()


def has_meaningful_html(value: Optional[str], text: Optional[str]) -> bool:
    normalized = (value or "").strip()
    if not normalized or normalized in _BARE_META:
        return False
    plain = html_to_text(normalized)
    if not plain:
        return bool(_RE_STRUCTURAL_EMPTY.search(normalized))
    plain_text = _RE_WS.sub(" ", (text or "").strip())
    return plain != plain_text or bool(_RE_STRUCTURAL.search(normalized))


def infer_kind(
    content: str,
    rich_html: Optional[str],
    source_url: Optional[str],
    has_image: bool,
) -> ClipKind:
    if has_image:
        return ClipKind.IMAGE
    if rich_html and has_meaningful_html(rich_html, content):
        return ClipKind.LINK if source_url else ClipKind.HTML
    if source_url or is_probably_url(content):
        return ClipKind.LINK
    return ClipKind.TEXT


@dataclass(frozen=True)
class Classification:
    kind: ClipKind
    content: str
    rich_html: Optional[str]
    source_url: Optional[str]


def classify(text: str, html: str, has_image: bool) -> Optional[Classification]:
    """Classify a clipboard read. Returns ``None`` for an empty clipboard."""
    text = (text or "").strip()
    html = (html or "").strip()
    rich_html = html if has_meaningful_html(html, text) else None

    if not (has_image or rich_html or text):
        return None

    source_url: Optional[str] = None
    if is_probably_url(text):
        source_url = text
    elif rich_html:
        source_url = extract_url_from_html(rich_html)

    content = text
    if not content and rich_html:
        content = html_to_text(rich_html)
    if not content:
        content = "[Image]" if has_image else "[HTML]"

    kind = infer_kind(content, rich_html, source_url, has_image)
    return Classification(kind=kind, content=content, rich_html=rich_html, source_url=source_url)


def derive_summary(kind: ClipKind, content: str, source_url: Optional[str], summary: Optional[str] = None) -> str:
    explicit = (summary or "").strip()
    if explicit:
        return explicit[:SUMMARY_LENGTH]
    if kind == ClipKind.IMAGE:
        return "Image"
    if kind == ClipKind.LINK and source_url:
        return source_url[:SUMMARY_LENGTH]
    derived = (content or "").strip()[:SUMMARY_LENGTH]
    return derived or "Untitled"


def normalize_tag_name(name: str) -> str:
    return _RE_WS.sub(" ", (name or "").strip())


def normalize_tag_key(name: str) -> str:
    return normalize_tag_name(name).lower()


def normalize_tags(names: Iterable[str]) -> List[str]:
    """Collapse whitespace and drop case-insensitive duplicates, keeping the first spelling."""
    seen = set()
    result: List[str] = []
    for raw in names:
        name = normalize_tag_name(raw if isinstance(raw, str) else "")
        if not name:
            continue
        key = name.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(name)
        if len(result) >= MAX_TAGS_PER_CLIP:
            break
    return result


def to_data_url(mime: str, data: bytes) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def parse_data_url(value: str) -> Tuple[str, bytes]:
    match = _RE_DATA_URL.match((value or "").strip())
    if not match:
        raise ValueError("not a base64 data URL")
    try:
        data = base64.b64decode(match.group("data"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc
    return match.group("mime").lower(), data
