"""Scraper for the FFXIV TW official news list.

Builds the news document that ``NewsSnapshotSource`` relays:

    {"meta": {...}, "categories": {name: [item, ...]}, "timeline": [item, ...]}

where each item is ``{id, category, title, url, date, views, isTop}`` and
``date`` is ``YYYY-MM-DD``.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import requests

from feedrelay.ingestion.http import FetchError, get_with_retry
from feedrelay.state.timeutil import to_iso, utc_now

logger = logging.getLogger(__name__)

NEWS_LIST_URL = "https://www.ffxiv.com.tw/web/news/news_list.aspx"
NEWS_SITE_URL = "https://www.ffxiv.com.tw"
NEWS_MAX_ITEMS = 500

NEWS_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Referer": "https://www.ffxiv.com.tw/",
}

# css class on div.type -> category label
TYPE_CATEGORIES = (
    ("event", "活動"),
    ("maintain", "維護"),
    ("update", "更新"),
    ("other", "其他"),
)

_ITEM_SPLIT_RE = re.compile(r'<div class="item[\s"]')
_TAG_RE = re.compile(r"<[^>]+>")


def _div_text(block: str, css_class: str) -> str:
    m = re.search(r'<div class="%s"[^>]*>([\s\S]*?)</div>' % re.escape(css_class), block)
    if not m:
        return ""
    return html.unescape(_TAG_RE.sub("", m.group(1))).strip()


def _news_url(href: str) -> str:
    href = html.unescape(href.strip())
    if href.startswith("http"):
        return href
    if href.startswith("/"):
        return NEWS_SITE_URL + href
    return f"{NEWS_SITE_URL}/web/news/{href}"


def parse_news_list(page_html: str) -> List[Dict[str, Any]]:
    """Rows of one news_list.aspx page; header and malformed rows are dropped."""
    items = []
    for block in _ITEM_SPLIT_RE.split(page_html or "")[1:]:
        news_id = _div_text(block, "news_id")
        if not news_id.isdigit():
            continue

        title_m = re.search(r'<div class="title"[^>]*>[\s\S]*?<a[^>]*href="([^"]*)"[^>]*>([\s\S]*?)</a>', block)
        if not title_m:
            continue
        title = html.unescape(_TAG_RE.sub("", title_m.group(2))).strip()
        if not title:
            continue

        category = "其他"
        type_m = re.search(r'<div class="type([^"]*)"', block)
        if type_m:
            classes = type_m.group(1)
            for css_class, label in TYPE_CATEGORIES:
                if css_class in classes:
                    category = label
                    break

        items.append(
            {
                "id": news_id,
                "category": category,
                "title": title,
                "url": _news_url(title_m.group(1)) if title_m.group(1).strip() else "",
                "date": _div_text(block, "publish_date"),
                "views": _div_text(block, "view_count"),
                "isTop": bool(re.search(r'<span class="badge top', block)),
            }
        )
    return items


def _normalize_date(value: str) -> str:
    parts = value.split("/")
    if len(parts) == 3:
        year, month, day = parts
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"
    return value


def build_news_document(
    rows: Sequence[Dict[str, Any]],
    now: Optional[datetime] = None,
    max_items: int = NEWS_MAX_ITEMS,
) -> Dict[str, Any]:
    """Dedupe by id, pinned first then newest id, capped and grouped by category."""
    unique: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        item = dict(row)
        item["category"] = (item.get("category") or "").strip() or "公告"
        item["date"] = _normalize_date((item.get("date") or "").strip())
        views = re.sub(r"[^0-9]", "", str(item.get("views") or ""))
        item["views"] = int(views) if views else 0
        unique.setdefault(item["id"], item)

    timeline = sorted(unique.values(), key=lambda i: (not i.get("isTop"), -int(i["id"])))
    if len(timeline) > max_items:
        logger.info(f"Limiting news items from {len(timeline)} to {max_items}")
        timeline = timeline[:max_items]

    categories: Dict[str, List[Dict[str, Any]]] = {}
    for item in timeline:
        categories.setdefault(item["category"], []).append(item)

    return {
        "meta": {
            "last_updated": to_iso(now or utc_now()),
            "total_count": len(timeline),
            "source": "FFXIV Taiwan Official News",
            "version": "v3",
        },
        "categories": categories,
        "timeline": timeline,
    }


@dataclass
class NewsScraper:
    """Fetches the first news list pages and assembles the news document."""

    list_url: str = NEWS_LIST_URL
    pages: Sequence[int] = (1, 2, 3)
    timeout: int = 30
    session: requests.Session = field(default_factory=requests.Session, repr=False)

    def scrape(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        rows: List[Dict[str, Any]] = []
        for page in self.pages:
            try:
                resp = get_with_retry(
                    self.session, self.list_url, params={"page": page}, headers=NEWS_HEADERS, timeout=self.timeout
                )
            except FetchError as e:
                logger.error(f"News list page {page} failed: {e}")
                continue
            page_rows = parse_news_list(resp.text)
            logger.info(f"News list page {page}: {len(page_rows)} items")
            rows.extend(page_rows)

        if not rows:
            raise FetchError("news list returned 0 items; the page layout may have changed or the request was blocked")
        return build_news_document(rows, now=now)
