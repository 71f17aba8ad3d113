"""Source adapters: fetch a feed and normalize it into CandidateItems.

Each adapter offers three capabilities:

- ``parse`` (required): raw fetch result -> list of ``CandidateItem``
- ``filter`` (optional): drop candidates that should never be announced
- ``format_payload`` (optional): build the webhook body for one item

and declares how its state is kept: ``strategy`` is ``"incremental"``
(bucket + ledger, oldest unsent first) or ``"ranked"`` (ledger only, highest
score first), and ``scope`` decides how buckets rotate.
"""

from __future__ import annotations

import calendar
import email.utils
import html
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

import feedparser
import requests

from feedrelay.delivery.discord import build_embed
from feedrelay.ingestion.http import FetchError, get_with_retry
from feedrelay.ingestion.identity import clean_identity
from feedrelay.ingestion.item_types import CandidateItem
from feedrelay.ingestion.news_scraper import NewsScraper
from feedrelay.ingestion.text_utils import clean_html, first_image_src, limit_plain_text, sanitize_markdown
from feedrelay.ingestion.url_utils import absolute_url, canonicalize_url
from feedrelay.state.bucket import DailyScope, SnapshotScope, TrackedItem
from feedrelay.state.timeutil import resolve_timezone, to_iso, utc_now
from feedrelay.storage.kv_store import KVStore, StoreError

logger = logging.getLogger(__name__)

# (title, plain_text) -> (new_title, new_description); either may be None to keep the original.
ContentRewriter = Callable[[str, str], Optional[Tuple[Optional[str], Optional[str]]]]


class SourceAdapter:
    name: str = "base"
    source_id: str = "base"
    color: Optional[int] = None
    strategy: str = "incremental"
    scope: Any = SnapshotScope()

    def fetch_raw(self) -> Any:
        raise NotImplementedError

    def parse(self, raw: Any, existing: Mapping[str, TrackedItem]) -> List[CandidateItem]:
        raise NotImplementedError

    def filter(self, candidate: CandidateItem) -> bool:
        return True

    def format_payload(self, item: TrackedItem) -> Dict[str, Any]:
        return {"embeds": [build_embed(item, source_name=self.name, color=self.color)]}

    def fetch_candidates(self, existing: Optional[Mapping[str, TrackedItem]] = None) -> List[CandidateItem]:
        """Fetch and normalize; raises ``FetchError`` on transport or parse failure."""
        raw = self.fetch_raw()
        try:
            items = self.parse(raw, existing or {})
        except (KeyError, TypeError, ValueError) as e:
            raise FetchError(f"{self.name}: unable to parse response: {e}") from e
        return [c for c in items if c.identity and self.filter(c)]


def _struct_time_to_dt(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass
class RSSSource(SourceAdapter):
    """RSS 2.0 or Atom feed, one bucket per local calendar day."""

    feed_url: str
    name: str = "rss"
    source_id: str = ""
    color: Optional[int] = None
    base_url: Optional[str] = None
    max_items: int = 50
    description_max_length: int = 300
    description_max_breaks: Optional[int] = None
    rewriter: Optional[ContentRewriter] = None
    timezone: str = "Asia/Taipei"
    timeout: int = 30
    session: requests.Session = field(default_factory=requests.Session, repr=False)
    strategy: str = "incremental"

    def __post_init__(self):
        self.source_id = self.source_id or self.feed_url
        self.scope = DailyScope(self.timezone)

    def fetch_raw(self) -> str:
        resp = get_with_retry(self.session, self.feed_url, timeout=self.timeout)
        return resp.text

    def parse(self, raw: Any, existing: Mapping[str, TrackedItem]) -> List[CandidateItem]:
        parsed = feedparser.parse(raw)
        if parsed.get("bozo") and not parsed.entries:
            raise FetchError(f"{self.name}: unreadable feed ({parsed.get('bozo_exception')})")

        out: List[CandidateItem] = []
        seen_links = set()
        for entry in parsed.entries:
            if len(out) >= self.max_items:
                break
            link = (entry.get("link") or "").strip()
            identity = clean_identity(entry.get("id")) or clean_identity(link)
            if not identity:
                continue
            # published / updated are the common RSS/Atom date fields
            published = _struct_time_to_dt(entry.get("published_parsed") or entry.get("updated_parsed"))
            if published is None:
                continue
            dedup_key = canonicalize_url(link) if link else identity
            if dedup_key in seen_links:
                continue
            seen_links.add(dedup_key)

            summary_html = entry.get("summary") or ""
            content_html = ""
            if entry.get("content"):
                content_html = entry.content[0].get("value") or ""
            body_html = summary_html or content_html

            title = clean_html(entry.get("title")) or "No Title"
            description = clean_html(
                body_html,
                max_length=self.description_max_length,
                max_breaks=self.description_max_breaks,
            )

            stored = existing.get(identity)
            if stored is not None:
                # Keep what is already stored so rewritten text is not recomputed every cycle.
                title = stored.title or title
                description = stored.description or description
            elif self.rewriter is not None:
                title, description = self._rewrite(title, description, clean_html(body_html))

            out.append(
                CandidateItem(
                    identity=identity,
                    title=title,
                    link=absolute_url(link, self.base_url) if link else None,
                    description=description or None,
                    thumbnail=self._thumbnail(entry, body_html),
                    published_at=published,
                )
            )
        return out

    def _rewrite(self, title: str, description: str, full_text: str) -> Tuple[str, str]:
        try:
            result = self.rewriter(title, full_text)
        except Exception as e:
            logger.warning(f"{self.name}: rewriter failed for {title!r}: {e}")
            return title, description
        if not result:
            return title, description
        new_title, new_description = result
        if new_description:
            new_description = limit_plain_text(new_description, self.description_max_length)
        return new_title or title, new_description or description

    def _thumbnail(self, entry: Any, body_html: str) -> Optional[str]:
        for media in (entry.get("media_content") or []) + (entry.get("media_thumbnail") or []):
            url = media.get("url") if isinstance(media, dict) else None
            if url:
                return absolute_url(url, self.base_url, drop_query=True)
        for enclosure in entry.get("enclosures") or []:
            if str(enclosure.get("type") or "").startswith("image/") and enclosure.get("href"):
                return absolute_url(enclosure.get("href"), self.base_url, drop_query=True)
        return absolute_url(first_image_src(body_html), self.base_url, drop_query=True)


CATEGORY_COLORS = {
    "活動": 0xD9912B,
    "維修": 0x993D3D,
    "維護": 0x993D3D,
    "公告": 0x6BCF7F,
    "更新": 0x6B993D,
    "其他": 0xCCCCCC,
}

CATEGORY_ICONS = {
    "活動": "https://cdn.discordapp.com/emojis/1441345802365833227.png",
    "維修": "https://cdn.discordapp.com/emojis/1441333060619468800.png",
    "維護": "https://cdn.discordapp.com/emojis/1441333060619468800.png",
    "公告": "https://cdn.discordapp.com/emojis/1441333039941812224.png",
    "更新": "https://cdn.discordapp.com/emojis/1441333039941812224.png",
    "其他": "https://cdn.discordapp.com/emojis/1441333039941812224.png",
}


@dataclass
class NewsSnapshotSource(SourceAdapter):
    """Official news list kept as a document in the KV store.

    The document looks like ``{"categories": {name: [{id, title, url, date}]}}``
    with ``date`` as ``YYYY-MM-DD`` in local time. With a ``scraper`` the
    document is refreshed from the site first; when that fails the last stored
    copy is relayed. The whole list is tracked in one rolling snapshot bucket.
    """

    store: KVStore
    news_key: str = "ffxiv_news_v3"
    scraper: Optional[NewsScraper] = None
    name: str = "FFXIV 官方網站"
    source_id: str = "ffxiv-tw-news"
    color: Optional[int] = 0xCCCCCC
    timezone: str = "Asia/Taipei"
    thumbnail_url: Optional[str] = "https://www.ffxiv.com.tw/web/images/news/news_content/avatar_01.png"
    strategy: str = "incremental"

    def __post_init__(self):
        self.scope = SnapshotScope()
        self._tz = resolve_timezone(self.timezone)

    def refresh(self) -> Optional[Dict[str, Any]]:
        """Scrape and store a fresh news document; None when scraping failed."""
        try:
            document = self.scraper.scrape()
        except FetchError as e:
            logger.warning(f"{self.name}: scrape failed, using stored document: {e}")
            return None
        try:
            self.store.put(self.news_key, json.dumps(document))
        except StoreError as e:
            logger.error(f"{self.name}: failed to store news document {self.news_key}: {e}")
        else:
            logger.info(f"{self.name}: stored {document['meta']['total_count']} news items under {self.news_key}")
        return document

    def fetch_raw(self) -> Any:
        if self.scraper is not None:
            document = self.refresh()
            if document is not None:
                return document
        try:
            raw = self.store.get(self.news_key)
        except StoreError as e:
            raise FetchError(f"{self.name}: news document unreadable: {e}") from e
        if not raw:
            raise FetchError(f"{self.name}: no news document under {self.news_key}")
        return raw

    def parse(self, raw: Any, existing: Mapping[str, TrackedItem]) -> List[CandidateItem]:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        categories = data.get("categories") if isinstance(data, dict) else None
        if not isinstance(categories, dict):
            raise ValueError("news document has no categories")

        out: List[CandidateItem] = []
        for category, articles in categories.items():
            for article in articles or []:
                if not isinstance(article, dict):
                    continue
                identity = clean_identity(article.get("id"))
                if not identity:
                    continue
                out.append(
                    CandidateItem(
                        identity=identity,
                        title=str(article.get("title") or "").strip() or "No Title",
                        link=article.get("url") or None,
                        thumbnail=self.thumbnail_url,
                        published_at=self._local_midnight(article.get("date")),
                        extra={"category": category},
                    )
                )
        return out

    def _local_midnight(self, value: Any) -> Optional[datetime]:
        try:
            day = datetime.strptime(str(value or "").strip(), "%Y-%m-%d")
        except ValueError:
            return None
        return day.replace(tzinfo=self._tz)

    def format_payload(self, item: TrackedItem) -> Dict[str, Any]:
        category = item.extra.get("category") or "其他"
        embed: Dict[str, Any] = {
            "author": {"name": category, "icon_url": CATEGORY_ICONS.get(category, CATEGORY_ICONS["其他"])},
            "title": item.title,
            "color": CATEGORY_COLORS.get(category, CATEGORY_COLORS["其他"]),
            "timestamp": item.published_at or to_iso(utc_now()),
            "footer": {"text": self.name},
        }
        if item.link:
            embed["url"] = item.link
            embed["author"]["url"] = item.link
        if item.description:
            embed["description"] = item.description
        if item.thumbnail:
            embed["thumbnail"] = {"url": item.thumbnail}
        return {"embeds": [embed]}


_FORUM_ROW_RE = re.compile(
    r'<tr class="b-list__row[^"]*">[\s\S]*?<td class="b-list__main">([\s\S]*?)</td>'
    r'[\s\S]*?<td class="b-list__count">([\s\S]*?)</td>'
    r'[\s\S]*?<td class="b-list__time">([\s\S]*?)</td>'
)
_RELATIVE_UNITS = (
    (re.compile(r"(\d+)\s*分鐘前"), timedelta(minutes=1)),
    (re.compile(r"(\d+)\s*小時前"), timedelta(hours=1)),
    (re.compile(r"(\d+)\s*天前"), timedelta(days=1)),
    (re.compile(r"(\d+)\s*[週周]前"), timedelta(weeks=1)),
    (re.compile(r"(\d+)\s*個?月前"), timedelta(days=30)),
    (re.compile(r"(\d+)\s*年前"), timedelta(days=365)),
)


def _count_from_title(block: str, label: str) -> int:
    m = re.search(r'<span title="%s：([0-9,]+)">' % label, block)
    return int(m.group(1).replace(",", "")) if m else 0


def parse_reply_time(text: Optional[str], now: datetime, tz) -> Optional[datetime]:
    """Forum "last reply" text (``6 小時前``, ``12-25 10:30``) to an aware datetime."""
    if not text:
        return None
    for pattern, unit in _RELATIVE_UNITS:
        m = pattern.search(text)
        if m:
            return now - unit * int(m.group(1))
    m = re.search(r"(\d{1,2})-(\d{1,2})\s+(\d{1,2}):(\d{2})", text)
    if m:
        local_now = now.astimezone(tz)
        month, day, hour, minute = (int(g) for g in m.groups())
        try:
            when = local_now.replace(month=month, day=day, hour=hour, minute=minute, second=0, microsecond=0)
        except ValueError:
            return None
        if when > local_now:
            try:
                when = when.replace(year=local_now.year - 1)
            except ValueError:
                return None
        return when
    return None


@dataclass
class ForumSource(SourceAdapter):
    """Bahamut forum board list; announces the most popular recent thread."""

    board_url: str = "https://forum.gamer.com.tw/B.php?bsn=17608&subbsn=23"
    base_url: str = "https://forum.gamer.com.tw/"
    name: str = "巴哈姆特 FFXIV 板"
    source_id: str = "bahamut-forum"
    color: Optional[int] = 0x009CAD
    max_age: timedelta = timedelta(days=7)
    timezone: str = "Asia/Taipei"
    timeout: int = 30
    clock: Callable[[], datetime] = field(default=utc_now, repr=False)
    session: requests.Session = field(default_factory=requests.Session, repr=False)
    strategy: str = "ranked"

    def __post_init__(self):
        self._tz = resolve_timezone(self.timezone)

    def fetch_raw(self) -> str:
        return get_with_retry(self.session, self.board_url, timeout=self.timeout).text

    def parse(self, raw: Any, existing: Mapping[str, TrackedItem]) -> List[CandidateItem]:
        now = self.clock()
        out: List[CandidateItem] = []
        for main, counts, times in _FORUM_ROW_RE.findall(raw or ""):
            link_m = re.search(r'href="(C\.php\?[^"]+)"', main)
            title_m = re.search(r'<p[^>]*class="b-list__main__title"[^>]*>([^<]+)</p>', main)
            if not link_m or not title_m:
                continue
            relative = link_m.group(1).replace("&amp;", "&")
            sn_m = re.search(r"snA=(\d+)", relative)
            if not sn_m:
                continue
            brief_m = re.search(r'<p class="b-list__brief">([^<]+)</p>', main)
            thumb_m = re.search(r'data-thumbnail="([^"]+)"', main)
            reply_m = re.search(r'<p class="b-list__time__edittime">[\s\S]*?>([^<]+)</a>', times)
            reply_text = reply_m.group(1).strip() if reply_m else None
            popularity = _count_from_title(counts, "人氣")
            out.append(
                CandidateItem(
                    identity=sn_m.group(1),
                    title=clean_html(title_m.group(1)),
                    link=self.base_url + relative,
                    description=clean_html(brief_m.group(1)) if brief_m else None,
                    thumbnail=thumb_m.group(1) if thumb_m else None,
                    published_at=parse_reply_time(reply_text, now, self._tz),
                    score=float(popularity),
                    extra={
                        "interaction": _count_from_title(counts, "互動"),
                        "popularity": popularity,
                        "last_reply": reply_text,
                    },
                )
            )
        return out

    def filter(self, candidate: CandidateItem) -> bool:
        if candidate.published_at is None:
            # Unknown format: keep it rather than silently losing a thread.
            logger.info(f"{self.name}: unparsed reply time {(candidate.extra or {}).get('last_reply')!r}")
            return True
        return self.clock() - candidate.published_at < self.max_age

    def format_payload(self, item: TrackedItem) -> Dict[str, Any]:
        interaction = int(item.extra.get("interaction") or 0)
        popularity = int(item.extra.get("popularity") or 0)
        embed: Dict[str, Any] = {
            "title": item.title,
            "description": item.description or "無簡介",
            "color": self.color,
            "timestamp": to_iso(self.clock()),
            "fields": [
                {"name": "", "value": f"💬 互動：{interaction:,} 🔥 人氣：{popularity:,}", "inline": True},
            ],
            "footer": {"text": self.name},
        }
        if item.link:
            embed["url"] = item.link
        if item.thumbnail:
            embed["image"] = {"url": item.thumbnail}
        return {"embeds": [embed]}


_PTT_ROW_SPLIT_RE = re.compile(r'<div class="r-ent">')
_PTT_PREV_RE = re.compile(r'<a[^>]*class="btn\s+wide"[^>]*href="([^"]+)"[^>]*>[^<]*上頁[^<]*</a>', re.IGNORECASE)
_PTT_TIME_RE = re.compile(r"^M\.(\d+)\.A\b")


def parse_push_count(text: Optional[str]) -> int:
    """PTT recommend column: ``爆`` is 100, ``X1``..``XX`` (net boos) count as 0."""
    value = (text or "").strip()
    if not value or value.startswith("X"):
        return 0
    if value == "爆":
        return 100
    try:
        return int(value)
    except ValueError:
        return 0


def parse_ptt_rows(page_html: str) -> List[Dict[str, Any]]:
    """Rows of one PTT board index page; deleted posts (no link) are skipped."""
    rows = []
    for block in _PTT_ROW_SPLIT_RE.split(page_html or "")[1:]:
        link_m = re.search(r'<div class="title">\s*<a href="([^"]+)"[^>]*>([\s\S]*?)</a>', block)
        if not link_m:
            continue
        title = clean_html(link_m.group(2))
        if not title:
            continue
        push_m = re.search(r'<div class="nrec">([\s\S]*?)</div>', block)
        author_m = re.search(r'<div class="author">([\s\S]*?)</div>', block)
        date_m = re.search(r'<div class="date">([\s\S]*?)</div>', block)
        rows.append(
            {
                "href": link_m.group(1).strip(),
                "title": title,
                "author": clean_html(author_m.group(1)) if author_m else "",
                "date": clean_html(date_m.group(1)) if date_m else "",
                "push": parse_push_count(clean_html(push_m.group(1)) if push_m else ""),
            }
        )
    return rows


def _is_same_day(raw_date: str, local_day: datetime) -> bool:
    # board index shows "M/DD"
    parts = raw_date.split("/")
    if len(parts) != 2:
        return False
    try:
        return int(parts[0]) == local_day.month and int(parts[1]) == local_day.day
    except ValueError:
        return False


@dataclass
class PttSource(SourceAdapter):
    """PTT board index; relays today's posts once they reach ``push_threshold``.

    The index is paged backwards while every post on the page is from today,
    so a busy day spanning several pages is still covered.
    """

    board: str = "Lifeismoney"
    base_url: str = "https://www.ptt.cc"
    name: str = "PTT 省錢板"
    source_id: str = "ptt-lifeismoney"
    color: Optional[int] = 0x0066CC
    push_threshold: int = 30
    max_pages: int = 10
    timezone: str = "Asia/Taipei"
    timeout: int = 30
    clock: Callable[[], datetime] = field(default=utc_now, repr=False)
    session: requests.Session = field(default_factory=requests.Session, repr=False)
    strategy: str = "incremental"

    def __post_init__(self):
        self.scope = DailyScope(self.timezone)
        self._tz = resolve_timezone(self.timezone)

    @property
    def index_url(self) -> str:
        return f"{self.base_url}/bbs/{self.board}/index.html"

    def fetch_raw(self) -> List[str]:
        today = self.clock().astimezone(self._tz)
        pages: List[str] = []
        url: Optional[str] = self.index_url
        while url and len(pages) < self.max_pages:
            try:
                page_html = get_with_retry(self.session, url, timeout=self.timeout).text
            except FetchError:
                if not pages:
                    raise
                logger.warning(f"{self.name}: stopped paging at {url}")
                break
            pages.append(page_html)

            dated = [row for row in parse_ptt_rows(page_html) if row["date"]]
            today_only = bool(dated) and all(_is_same_day(row["date"], today) for row in dated)
            prev_m = _PTT_PREV_RE.search(page_html)
            url = self.base_url + html.unescape(prev_m.group(1)) if today_only and prev_m else None
        logger.info(f"{self.name}: read {len(pages)} index pages")
        return pages

    def parse(self, raw: Any, existing: Mapping[str, TrackedItem]) -> List[CandidateItem]:
        today = self.clock().astimezone(self._tz)
        midnight = today.replace(hour=0, minute=0, second=0, microsecond=0)
        board_re = re.compile(r"/bbs/%s/([^/]+)\.html" % re.escape(self.board))
        out: List[CandidateItem] = []
        for page_html in raw or []:
            for row in parse_ptt_rows(page_html):
                if not _is_same_day(row["date"], today):
                    continue
                id_m = board_re.search(row["href"])
                if not id_m:
                    continue
                article_id = id_m.group(1)
                time_m = _PTT_TIME_RE.match(article_id)
                published = datetime.fromtimestamp(int(time_m.group(1)), tz=timezone.utc) if time_m else midnight
                out.append(
                    CandidateItem(
                        identity=article_id,
                        title=row["title"],
                        link=self.base_url + row["href"],
                        published_at=published,
                        score=float(row["push"]),
                        extra={"author": row["author"], "push": row["push"]},
                    )
                )
        return out

    def filter(self, candidate: CandidateItem) -> bool:
        return (candidate.score or 0) >= self.push_threshold

    def format_payload(self, item: TrackedItem) -> Dict[str, Any]:
        author = str(item.extra.get("author") or "")
        embed: Dict[str, Any] = {
            "title": item.title,
            "color": self.color,
            "timestamp": to_iso(self.clock()),
            "footer": {"text": f"{self.name} • 📈 推文數 {int(item.extra.get('push') or 0)}"},
        }
        if author:
            embed["author"] = {
                "name": author,
                "url": f"{self.base_url}/bbs/{self.board}/search?q={quote('author:' + author)}",
            }
        if item.link:
            embed["url"] = item.link
        return {"embeds": [embed]}


def to_base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    n = int(value)
    if n == 0:
        return "0"
    sign = "-" if n < 0 else ""
    n = abs(n)
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(digits[r])
    return sign + "".join(reversed(out))


@dataclass
class PlurkSource(SourceAdapter):
    """Plurk anonymous hot list; announces the hottest plurks not yet sent."""

    api_url: str = "https://www.plurk.com/Stats/getAnonymousPlurks"
    params: Dict[str, Any] = field(default_factory=lambda: {"lang": "zh", "limit": 50})
    name: str = "噗浪偷偷說"
    source_id: str = "plurk-anonymous"
    color: Optional[int] = 0x0099FF
    response_weight: int = 2
    favorite_weight: int = 1
    replurker_weight: int = 1
    title_max_length: int = 50
    timeout: int = 30
    session: requests.Session = field(default_factory=requests.Session, repr=False)
    strategy: str = "ranked"

    def fetch_raw(self) -> Any:
        resp = get_with_retry(self.session, self.api_url, params=self.params, timeout=self.timeout)
        try:
            return resp.json()
        except ValueError as e:
            raise FetchError(f"{self.name}: non-JSON response: {e}") from e

    def hotness(self, plurk: Dict[str, Any]) -> int:
        return (
            int(plurk.get("response_count") or 0) * self.response_weight
            + int(plurk.get("favorite_count") or 0) * self.favorite_weight
            + int(plurk.get("replurkers_count") or 0) * self.replurker_weight
        )

    def parse(self, raw: Any, existing: Mapping[str, TrackedItem]) -> List[CandidateItem]:
        records = raw.values() if isinstance(raw, dict) else (raw or [])
        out: List[CandidateItem] = []
        for plurk in records:
            if not isinstance(plurk, dict):
                continue
            plurk_id = plurk.get("plurk_id")
            if not isinstance(plurk_id, int) or isinstance(plurk_id, bool):
                continue
            content = plurk.get("content_raw") or ""
            posted = None
            if plurk.get("posted"):
                try:
                    posted = email.utils.parsedate_to_datetime(str(plurk["posted"]))
                except (TypeError, ValueError):
                    posted = None
            out.append(
                CandidateItem(
                    identity=str(plurk_id),
                    title=sanitize_markdown(content, self.title_max_length, placeholder="[空白]"),
                    link=f"https://www.plurk.com/p/{to_base36(plurk_id)}",
                    description=limit_plain_text(clean_html(content), 300) or None,
                    published_at=posted,
                    score=float(self.hotness(plurk)),
                    extra={
                        "response_count": int(plurk.get("response_count") or 0),
                        "favorite_count": int(plurk.get("favorite_count") or 0),
                        "replurkers_count": int(plurk.get("replurkers_count") or 0),
                    },
                )
            )
        return out

    def filter(self, candidate: CandidateItem) -> bool:
        return bool(candidate.score)

    def format_payload(self, item: TrackedItem) -> Dict[str, Any]:
        stats = (
            f"💬 {item.extra.get('response_count', 0)} • ❤️ {item.extra.get('favorite_count', 0)}"
            f" • 🔄 {item.extra.get('replurkers_count', 0)} • 🔥 {int(item.extra.get('score') or 0)}"
        )
        embed: Dict[str, Any] = {
            "title": item.title,
            "description": f"{item.description or ''}\n\n{stats}".strip(),
            "color": self.color,
            "timestamp": item.published_at or to_iso(utc_now()),
            "footer": {"text": self.name},
        }
        if item.link:
            embed["url"] = item.link
        return {"embeds": [embed]}
