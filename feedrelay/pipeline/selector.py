"""Choose which tracked items go out this cycle."""

from __future__ import annotations

import math
from typing import Iterable, List, Optional

from feedrelay.ingestion.item_types import CandidateItem
from feedrelay.state.bucket import TrackedItem
from feedrelay.state.ledger import SentLedger
from feedrelay.state.merge import delivery_sort_key


def select_for_delivery(items: Iterable[TrackedItem], limit: int) -> List[TrackedItem]:
    """Oldest unsent first, at most ``limit``.

    ``items`` is expected in merge order already; it is sorted again so the
    result does not depend on the caller.
    """
    if limit <= 0:
        return []
    pending = sorted((item for item in items if not item.sent), key=delivery_sort_key)
    return pending[:limit]


def select_newest_unsent(items: Iterable[TrackedItem]) -> Optional[TrackedItem]:
    """Single newest unsent item, for test runs. Undated items are never preferred.

    Items already sent are skipped before picking, so when the newest candidate
    went out earlier an older pending item is chosen instead of a resend.
    """
    pending = [item for item in items if not item.sent]
    if not pending:
        return None
    # newest timestamp first, identity ascending on ties
    return min(
        pending,
        key=lambda item: (
            -float(item.published_at_ms) if item.published_at_ms is not None else math.inf,
            item.identity,
        ),
    )


def ranked_sort_key(candidate: CandidateItem):
    return (-(candidate.score or 0.0), candidate.identity)


def select_top_ranked(candidates: Iterable[CandidateItem], ledger: SentLedger, limit: int) -> List[CandidateItem]:
    """Highest score first among candidates the ledger has not seen."""
    if limit <= 0:
        return []
    unsent = []
    seen = set()
    for cand in candidates:
        if not cand.identity or cand.identity in seen or ledger.lookup(cand.identity) is not None:
            continue
        seen.add(cand.identity)
        unsent.append(cand)
    unsent.sort(key=ranked_sort_key)
    return unsent[:limit]
