"""Short-lived, in-process memory of recent deliveries.

Only a shortcut for bursts inside one long-running process (for example a
manual test trigger right after a scheduled run). It is consulted after the
durable ledger and is never the source of truth: it vanishes on restart.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, Optional, Tuple

from feedrelay.state.bucket import TrackedItem

RECENT_DELIVERY_TTL_SECONDS = 10 * 60


class RecentDeliveryCache:
    def __init__(self, ttl_seconds: float = RECENT_DELIVERY_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._seen: Dict[Tuple[str, str], Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def _expire(self, now: float) -> None:
        for key, (stamp, _) in list(self._seen.items()):
            if now - stamp > self.ttl_seconds:
                del self._seen[key]

    def remember(self, source_id: str, identity: str, sent_at: str) -> None:
        with self._lock:
            self._seen[(source_id, identity)] = (self._clock(), sent_at)

    def recent_sent_at(self, source_id: str, identity: str) -> Optional[str]:
        with self._lock:
            self._expire(self._clock())
            hit = self._seen.get((source_id, identity))
            return hit[1] if hit else None

    def reconcile(self, source_id: str, items: Iterable[TrackedItem]) -> bool:
        """Mark unsent items delivered by this process moments ago; returns whether any changed."""
        mutated = False
        for item in items:
            if item.sent:
                continue
            sent_at = self.recent_sent_at(source_id, item.identity)
            if sent_at:
                item.mark_sent(sent_at)
                mutated = True
        return mutated

    def __len__(self) -> int:
        with self._lock:
            self._expire(self._clock())
            return len(self._seen)
