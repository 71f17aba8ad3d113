"""State buckets: the per-scope record of what a source has shown us.

A bucket holds every item observed within one scope (a calendar day in a
fixed timezone, or one rolling snapshot of a source) together with its
delivery status. Buckets are read once at the start of a cycle and written
once at the end; see ``feedrelay.pipeline.cycle``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from feedrelay.ingestion.identity import clean_identity
from feedrelay.ingestion.item_types import CandidateItem
from feedrelay.state.timeutil import (
    is_finite_number,
    iso_to_ms,
    local_date_key,
    ms_to_iso,
    resolve_timezone,
    to_epoch_ms,
    to_iso,
    utc_now,
)
from feedrelay.storage.kv_store import KVStore

logger = logging.getLogger(__name__)

DAILY_BUCKET_TTL_SECONDS = 2 * 24 * 60 * 60
SNAPSHOT_BUCKET_TTL_SECONDS = 30 * 24 * 60 * 60

# Keys older stored records may use for their natural key, in priority order.
_IDENTITY_FIELDS = ("identity", "guid", "link", "id", "url")


@dataclass
class TrackedItem:
    identity: str
    title: str = ""
    link: Optional[str] = None
    description: Optional[str] = None
    thumbnail: Optional[str] = None
    published_at: Optional[str] = None
    published_at_ms: Optional[int] = None
    sent: bool = False
    sent_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_candidate(cls, candidate: CandidateItem) -> "TrackedItem":
        published_at, published_at_ms = published_fields(candidate.published_at)
        extra = dict(candidate.extra or {})
        if candidate.score is not None:
            extra.setdefault("score", candidate.score)
        return cls(
            identity=candidate.identity,
            title=candidate.title or "",
            link=candidate.link,
            description=candidate.description,
            thumbnail=candidate.thumbnail,
            published_at=published_at,
            published_at_ms=published_at_ms,
            extra=extra,
        )

    @classmethod
    def from_dict(cls, raw: Any, *, default_sent_at: Optional[str] = None) -> Optional["TrackedItem"]:
        """Normalize one stored record; None when it has no usable identity."""
        if not isinstance(raw, dict):
            return None
        identity = None
        for key in _IDENTITY_FIELDS:
            identity = clean_identity(raw.get(key))
            if identity:
                break
        if not identity:
            return None

        published_at = raw.get("publishedAt") if isinstance(raw.get("publishedAt"), str) else None
        ms_raw = raw.get("publishedAtMs")
        if is_finite_number(ms_raw):
            published_at_ms: Optional[int] = int(ms_raw)
        else:
            published_at_ms = iso_to_ms(published_at)
        if published_at is None and published_at_ms is not None:
            published_at = ms_to_iso(published_at_ms)

        sent = raw.get("sent") is True
        sent_at = raw.get("sentAt") if isinstance(raw.get("sentAt"), str) else None
        if sent and not sent_at:
            sent_at = default_sent_at

        link = raw.get("link") if isinstance(raw.get("link"), str) else None
        if link is None and isinstance(raw.get("url"), str):
            link = raw["url"]
        extra = raw.get("extra") if isinstance(raw.get("extra"), dict) else {}

        return cls(
            identity=identity,
            title=raw.get("title") if isinstance(raw.get("title"), str) else "",
            link=link,
            description=raw.get("description") if isinstance(raw.get("description"), str) else None,
            thumbnail=raw.get("thumbnail") if isinstance(raw.get("thumbnail"), str) else None,
            published_at=published_at,
            published_at_ms=published_at_ms,
            sent=sent,
            sent_at=sent_at,
            extra=dict(extra),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "identity": self.identity,
            "link": self.link,
            "title": self.title,
            "description": self.description,
            "thumbnail": self.thumbnail,
            "publishedAt": self.published_at,
            "publishedAtMs": self.published_at_ms,
            "sent": self.sent,
            "sentAt": self.sent_at,
        }
        if self.extra:
            out["extra"] = self.extra
        return out

    def mark_sent(self, sent_at: str) -> None:
        self.sent = True
        self.sent_at = sent_at


def published_fields(published: Optional[datetime]) -> Tuple[Optional[str], Optional[int]]:
    if published is None:
        return None, None
    return to_iso(published), to_epoch_ms(published)


class DailyScope:
    """One bucket per calendar day in a fixed timezone."""

    kind = "daily"

    def __init__(self, tz_name: str = "Asia/Taipei", fallback_offset_hours: float = 8.0):
        self.label = tz_name
        self.tz: tzinfo = resolve_timezone(tz_name, fallback_offset_hours)

    def scope_for(self, now: datetime) -> str:
        return local_date_key(now, self.tz)

    def bucket_key(self, source_id: str, scope: str) -> str:
        return f"daily:{quote(source_id, safe='')}:{scope}"


class SnapshotScope:
    """A single rolling bucket holding the latest full snapshot of a source."""

    kind = "snapshot"
    label = "snapshot"

    def scope_for(self, now: datetime) -> str:
        return "snapshot"

    def bucket_key(self, source_id: str, scope: str) -> str:
        return f"snapshot:{source_id}"


@dataclass
class StateBucket:
    key: str
    scope: str
    source_id: str
    source_name: str = ""
    timezone: str = ""
    items: List[TrackedItem] = field(default_factory=list)
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "sourceName": self.source_name,
            "scope": self.scope,
            "dateKey": self.scope,
            "timezone": self.timezone,
            "articles": [item.to_dict() for item in self.items],
            "updatedAt": self.updated_at,
        }

    def pending(self) -> List[TrackedItem]:
        return [item for item in self.items if not item.sent]


def _stored_records(data: Dict[str, Any]) -> List[Any]:
    articles = data.get("articles")
    if isinstance(articles, list):
        return articles
    items = data.get("items")
    if isinstance(items, dict):
        return list(items.values())
    if isinstance(items, list):
        return items
    return []


def load_bucket(
    store: KVStore,
    key: str,
    *,
    scope: str,
    source_id: str,
    source_name: str = "",
    timezone_label: str = "",
) -> Tuple[StateBucket, bool]:
    """Read and normalize a bucket.

    Returns ``(bucket, existed)``. A missing, undecodable or wrongly shaped
    entry yields an empty bucket with ``existed=False``: starting fresh risks a
    duplicate delivery but never blocks the source. ``StoreError`` from the
    store itself is not caught here.
    """
    empty = StateBucket(key=key, scope=scope, source_id=source_id, source_name=source_name, timezone=timezone_label)
    raw = store.get(key)
    if raw is None:
        return empty, False
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"expected object, got {type(data).__name__}")
    except (TypeError, ValueError) as e:
        logger.warning(f"Discarding malformed bucket {key}: {e}")
        return empty, False

    updated_at = data.get("updatedAt") if isinstance(data.get("updatedAt"), str) else None
    items: List[TrackedItem] = []
    seen = set()
    dropped = 0
    for record in _stored_records(data):
        item = TrackedItem.from_dict(record, default_sent_at=updated_at)
        if item is None or item.identity in seen:
            dropped += 1
            continue
        seen.add(item.identity)
        items.append(item)
    if dropped:
        logger.info(f"Bucket {key}: dropped {dropped} unusable or duplicate records")

    bucket = StateBucket(
        key=key,
        scope=scope,
        source_id=data.get("sourceId") or source_id,
        source_name=data.get("sourceName") or source_name,
        timezone=data.get("timezone") or timezone_label,
        items=items,
        updated_at=updated_at,
    )
    return bucket, True


def save_bucket(store: KVStore, bucket: StateBucket, ttl_seconds: Optional[int], now: Optional[datetime] = None) -> None:
    """Write the whole bucket as one put."""
    bucket.updated_at = to_iso(now or utc_now())
    store.put(bucket.key, json.dumps(bucket.to_dict()), ttl_seconds)
