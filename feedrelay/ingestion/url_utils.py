"""URL helpers for in-fetch dedup and link completion."""

from __future__ import annotations

from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse


DEFAULT_STRIP_QUERY_PARAMS = {
    # tracking
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "utm_id",
    "gclid",
    "fbclid",
    "mc_cid",
    "mc_eid",
}


def canonicalize_url(url: str, *, strip_params: Optional[Iterable[str]] = None) -> str:
    """Canonicalize a link so two spellings of one article collapse in a fetch.

    - Lowercase scheme + hostname
    - Remove fragments
    - Strip tracking query parameters, sort the rest
    """
    if not url:
        return ""
    strip = set(strip_params) if strip_params is not None else set(DEFAULT_STRIP_QUERY_PARAMS)
    p = urlparse(url.strip())
    scheme = (p.scheme or "https").lower()
    netloc = (p.netloc or "").lower()
    path = p.path or "/"

    kept = [(k, v) for k, v in parse_qsl(p.query, keep_blank_values=True) if k.lower() not in strip]
    kept.sort(key=lambda kv: (kv[0].lower(), kv[1]))
    query = urlencode(kept, doseq=True)

    return urlunparse((scheme, netloc, path, "", query, ""))


def absolute_url(url: Optional[str], base_url: Optional[str] = None, *, drop_query: bool = False) -> Optional[str]:
    """Complete protocol-relative and site-relative links.

    ``drop_query`` removes cache-busting query strings from image URLs so the
    same thumbnail does not count as a changed field on every fetch.
    """
    if not url:
        return None
    u = url.strip()
    if not u:
        return None
    if drop_query:
        u = u.split("?", 1)[0]
    if u.startswith("//"):
        return "https:" + u
    if u.startswith("/") and base_url:
        return urljoin(base_url.rstrip("/") + "/", u.lstrip("/"))
    return u
