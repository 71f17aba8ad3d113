"""Merge freshly fetched candidates into a bucket's tracked items."""

from __future__ import annotations

import copy
import math
from typing import Dict, Iterable, List, Tuple

from feedrelay.ingestion.item_types import CandidateItem
from feedrelay.state.bucket import TrackedItem, published_fields

_REFRESHABLE_FIELDS = ("title", "description", "thumbnail", "link")


def delivery_sort_key(item: TrackedItem) -> Tuple[float, str]:
    """Oldest first; undated items last; identity breaks ties."""
    ms = item.published_at_ms
    return (float(ms) if ms is not None else math.inf, item.identity)


def merge_items(
    existing: Iterable[TrackedItem],
    candidates: Iterable[CandidateItem],
) -> Tuple[List[TrackedItem], bool]:
    """Fold ``candidates`` into ``existing``.

    New identities are inserted unsent. Known identities only take field
    values that are non-empty and actually different; ``sent``/``sent_at`` are
    never touched, so re-observing a delivered item cannot re-arm it. The
    returned flag is True iff something was inserted or updated, which lets a
    pure re-read finish without a store write. Inputs are not mutated.
    """
    by_identity: Dict[str, TrackedItem] = {}
    for item in existing:
        if item.identity and item.identity not in by_identity:
            by_identity[item.identity] = copy.deepcopy(item)

    changed = False
    for cand in candidates:
        if not cand.identity:
            continue
        current = by_identity.get(cand.identity)
        if current is None:
            by_identity[cand.identity] = TrackedItem.from_candidate(cand)
            changed = True
            continue
        if _refresh(current, cand):
            changed = True

    merged = sorted(by_identity.values(), key=delivery_sort_key)
    return merged, changed


def _refresh(item: TrackedItem, cand: CandidateItem) -> bool:
    updated = False
    for name in _REFRESHABLE_FIELDS:
        value = getattr(cand, name)
        if value and value != getattr(item, name):
            setattr(item, name, value)
            updated = True

    published_at, published_at_ms = published_fields(cand.published_at)
    if published_at and published_at != item.published_at:
        item.published_at = published_at
        item.published_at_ms = published_at_ms
        updated = True

    for key, value in (cand.extra or {}).items():
        if value is not None and item.extra.get(key) != value:
            item.extra[key] = value
            updated = True
    if cand.score is not None and item.extra.get("score") != cand.score:
        item.extra["score"] = cand.score
        updated = True
    return updated
