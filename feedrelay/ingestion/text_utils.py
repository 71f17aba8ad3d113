"""Plain-text helpers for feed summaries and embed fields."""

from __future__ import annotations

import html
import re
from typing import Optional

_TAG_RE = re.compile(r"<[^>]*>")
_BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_WS_RE = re.compile(r"\s+")
_IMG_TAG_RE = re.compile(r"<img[^>]*>", re.IGNORECASE)
_MARKDOWN_RE = re.compile(r"([\\*_`~|\[\]()])")


def clean_html(raw: Optional[str], *, max_length: Optional[int] = None, max_breaks: Optional[int] = None) -> str:
    """Strip tags, decode entities, collapse whitespace.

    ``max_breaks`` keeps only the text before the n-th ``<br>``; FB-style
    feeds put the headline in the first lines and boilerplate after.
    """
    if not raw:
        return ""
    text = raw
    if max_breaks:
        breaks = list(_BR_RE.finditer(text))
        if len(breaks) >= max_breaks:
            text = text[: breaks[max_breaks - 1].start()]
    text = _BR_RE.sub(" ", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    text = _WS_RE.sub(" ", text).strip()
    if max_length is not None:
        text = limit_plain_text(text, max_length)
    return text


def limit_plain_text(text: str, max_length: int) -> str:
    if max_length <= 0 or len(text) <= max_length:
        return text
    if max_length <= 3:
        return "." * max_length
    return text[: max_length - 3].rstrip() + "..."


def sanitize_markdown(text: Optional[str], max_length: int = 50, *, placeholder: str = "[no content]") -> str:
    """Escape Discord Markdown and flatten newlines for use inside link text."""
    if not text or not isinstance(text, str):
        return placeholder
    flat = text.replace("\n", " ")[:max_length]
    escaped = _MARKDOWN_RE.sub(r"\\\1", flat).strip()
    return escaped or placeholder


def first_image_src(fragment: Optional[str]) -> Optional[str]:
    """First image URL in an HTML fragment (data-src > src > first data-srcset entry)."""
    if not fragment:
        return None
    tag_match = _IMG_TAG_RE.search(fragment)
    if not tag_match:
        return None
    tag = tag_match.group(0)
    for attr in ("data-src", "src"):
        m = re.search(r'\s%s=["\']([^"\']+)["\']' % attr, tag, re.IGNORECASE)
        if m:
            return m.group(1).strip()
    m = re.search(r'\sdata-srcset=["\']([^"\']+)["\']', tag, re.IGNORECASE)
    if m:
        first = m.group(1).split(",")[0].strip().split(" ")[0]
        return first or None
    return None
