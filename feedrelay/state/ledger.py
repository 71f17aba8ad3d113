"""The sent ledger: long-lived memory of delivered identities.

Buckets rotate (new day, expired snapshot) far more often than a feed forgets
an item, so every delivery is also recorded here under the identity's FNV-1a
fingerprint. The ledger is bounded by entry count, not by age: a source that
posts twice a month must not lose its history just because nothing happened
for a while. Expiry on the store key is only a backstop.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from urllib.parse import quote

from feedrelay.ingestion.identity import hash_identity
from feedrelay.state.bucket import TrackedItem
from feedrelay.state.timeutil import iso_to_ms
from feedrelay.storage.kv_store import KVStore

logger = logging.getLogger(__name__)

LEDGER_MAX_ENTRIES = 500
LEDGER_TTL_SECONDS = 365 * 24 * 60 * 60


@dataclass
class LedgerEntry:
    sent_at: str
    identity: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"sentAt": self.sent_at, "identity": self.identity}


def ledger_key(source_id: str) -> str:
    return f"sent:{quote(source_id, safe='')}"


class SentLedger:
    def __init__(self, key: str, entries: Optional[Dict[str, LedgerEntry]] = None, max_entries: int = LEDGER_MAX_ENTRIES):
        self.key = key
        self.entries: Dict[str, LedgerEntry] = dict(entries or {})
        self.max_entries = max_entries
        self.dirty = False

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, identity: object) -> bool:
        return self.lookup(str(identity)) is not None

    def lookup(self, identity: str) -> Optional[LedgerEntry]:
        if not identity:
            return None
        return self.entries.get(hash_identity(identity))

    def record(self, identity: str, sent_at: str) -> bool:
        """Upsert a delivery; returns False when the entry was already identical."""
        if not identity:
            return False
        h = hash_identity(identity)
        prev = self.entries.get(h)
        if prev is not None and prev.sent_at == sent_at:
            return False
        self.entries[h] = LedgerEntry(sent_at=sent_at, identity=identity)
        self.dirty = True
        return True

    def prune(self) -> int:
        """Drop unparseable entries, then the oldest by ``sentAt`` above capacity."""
        removed = 0
        for h, entry in list(self.entries.items()):
            if iso_to_ms(entry.sent_at) is None:
                del self.entries[h]
                removed += 1

        excess = len(self.entries) - self.max_entries
        if excess > 0:
            oldest = sorted(self.entries.items(), key=lambda kv: iso_to_ms(kv[1].sent_at))[:excess]
            for h, _ in oldest:
                del self.entries[h]
            removed += excess
            logger.info(f"Pruned {excess} old entries from {self.key} (limit {self.max_entries})")

        if removed:
            self.dirty = True
        return removed

    def to_dict(self) -> Dict[str, Dict[str, Optional[str]]]:
        return {h: entry.to_dict() for h, entry in self.entries.items()}


def load_ledger(store: KVStore, key: str, max_entries: int = LEDGER_MAX_ENTRIES) -> SentLedger:
    """Read a ledger; malformed content yields an empty ledger, entries without ``sentAt`` are skipped."""
    raw = store.get(key)
    ledger = SentLedger(key, max_entries=max_entries)
    if raw is None:
        return ledger
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"expected object, got {type(data).__name__}")
    except (TypeError, ValueError) as e:
        logger.warning(f"Discarding malformed ledger {key}: {e}")
        return ledger

    for h, entry in data.items():
        if not isinstance(entry, dict):
            continue
        sent_at = entry.get("sentAt")
        if not isinstance(sent_at, str) or not sent_at:
            continue
        identity = entry.get("identity")
        ledger.entries[h] = LedgerEntry(sent_at=sent_at, identity=identity if isinstance(identity, str) else None)
    return ledger


def save_ledger(store: KVStore, ledger: SentLedger, ttl_seconds: Optional[int] = LEDGER_TTL_SECONDS) -> None:
    ledger.prune()
    store.put(ledger.key, json.dumps(ledger.to_dict()), ttl_seconds)
    ledger.dirty = False


def reconcile_against_ledger(items: Iterable[TrackedItem], ledger: SentLedger) -> bool:
    """Mark unsent items the ledger already remembers as delivered.

    Covers bucket rotation: yesterday's deliveries show up as brand-new items
    in today's bucket. Returns whether any item changed.
    """
    mutated = False
    for item in items:
        if item.sent:
            continue
        entry = ledger.lookup(item.identity)
        if entry is None:
            continue
        item.sent = True
        if not item.sent_at:
            item.sent_at = entry.sent_at
        mutated = True
    return mutated


def record_deliveries(ledger: SentLedger, items: Iterable[TrackedItem]) -> List[TrackedItem]:
    """Record every sent item of ``items``; returns the ones that were new to the ledger."""
    added = []
    for item in items:
        if item.sent and item.sent_at and ledger.record(item.identity, item.sent_at):
            added.append(item)
    return added
