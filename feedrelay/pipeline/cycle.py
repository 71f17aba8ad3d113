"""Reconciliation cycles: fetch -> merge -> select -> deliver -> persist.

One cycle handles one source. The store is read once at the start and
written once at the end per bucket/ledger pair; everything in between works
on the in-memory copy. No locking is available from the store, so two
overlapping cycles may deliver the same item once more. That is accepted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

from feedrelay.delivery.recent_cache import RecentDeliveryCache
from feedrelay.ingestion.http import FetchError
from feedrelay.ingestion.sources import SourceAdapter
from feedrelay.pipeline.selector import ranked_sort_key, select_for_delivery, select_newest_unsent, select_top_ranked
from feedrelay.state.bucket import (
    DAILY_BUCKET_TTL_SECONDS,
    SNAPSHOT_BUCKET_TTL_SECONDS,
    TrackedItem,
    load_bucket,
    save_bucket,
)
from feedrelay.state.ledger import (
    LEDGER_MAX_ENTRIES,
    LEDGER_TTL_SECONDS,
    SentLedger,
    ledger_key,
    load_ledger,
    reconcile_against_ledger,
    record_deliveries,
    save_ledger,
)
from feedrelay.state.merge import merge_items
from feedrelay.state.timeutil import iso_to_ms, to_epoch_ms, to_iso, utc_now
from feedrelay.storage.kv_store import KVStore, StoreError

logger = logging.getLogger(__name__)

MODE_PRODUCTION = "production"
MODE_TEST = "test"
MODE_REPLAY = "replay"


@dataclass
class CyclePolicy:
    send_limit: int = 5
    delay_seconds: float = 1.0
    bucket_ttl_seconds: Optional[int] = None
    ledger_ttl_seconds: int = LEDGER_TTL_SECONDS
    ledger_max_entries: int = LEDGER_MAX_ENTRIES
    seed_on_first_run: bool = False
    min_interval_seconds: Optional[int] = None


@dataclass
class RelayJob:
    """A source paired with the sink its items go to.

    ``sink`` needs one method, ``deliver(item) -> bool``.
    """

    source: SourceAdapter
    sink: Any
    policy: CyclePolicy = field(default_factory=CyclePolicy)

    @property
    def source_id(self) -> str:
        return self.source.source_id


@dataclass
class CycleReport:
    source_id: str
    mode: str = MODE_PRODUCTION
    fetched: int = 0
    new: int = 0
    selected: int = 0
    delivered: int = 0
    failed: int = 0
    seeded: int = 0
    bucket_written: bool = False
    ledger_written: bool = False
    skipped: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def run_gate_key(source_id: str) -> str:
    return f"lastrun:{quote(source_id, safe='')}"


def bucket_ttl_for(job: RelayJob) -> int:
    if job.policy.bucket_ttl_seconds is not None:
        return job.policy.bucket_ttl_seconds
    if job.source.scope.kind == "daily":
        return DAILY_BUCKET_TTL_SECONDS
    return SNAPSHOT_BUCKET_TTL_SECONDS


def deliver_all(
    items: Iterable[TrackedItem],
    sink: Any,
    *,
    source_id: str = "",
    ledger: Optional[SentLedger] = None,
    recent_cache: Optional[RecentDeliveryCache] = None,
    delay_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    now: Callable[[], datetime] = utc_now,
) -> int:
    """Deliver ``items`` one by one, in order; returns how many were accepted.

    Each accepted item is marked sent (and recorded in the ledger) before the
    next call, so an interrupted loop still leaves correct marks behind. A
    rejected item stays pending for a later cycle; the loop moves on.
    """
    delivered = 0
    for index, item in enumerate(items):
        if index and delay_seconds > 0:
            sleep(delay_seconds)
        try:
            accepted = bool(sink.deliver(item))
        except Exception as e:
            logger.error(f"[{source_id}] sink raised while delivering {item.identity}: {e}")
            accepted = False

        if not accepted:
            logger.warning(f"[{source_id}] delivery failed for {item.identity}, left pending")
            continue

        sent_at = to_iso(now())
        item.mark_sent(sent_at)
        if ledger is not None:
            ledger.record(item.identity, sent_at)
        if recent_cache is not None:
            recent_cache.remember(source_id, item.identity, sent_at)
        delivered += 1
    return delivered


def _persist_ledger(store: KVStore, ledger: SentLedger, job: RelayJob, report: CycleReport) -> None:
    ledger.prune()
    if not ledger.dirty:
        return
    try:
        save_ledger(store, ledger, job.policy.ledger_ttl_seconds)
        report.ledger_written = True
    except StoreError as e:
        logger.error(f"[{job.source_id}] failed to persist ledger {ledger.key}: {e}")


def run_incremental_cycle(
    job: RelayJob,
    store: KVStore,
    *,
    mode: str = MODE_PRODUCTION,
    recent_cache: Optional[RecentDeliveryCache] = None,
    now: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], None] = time.sleep,
) -> CycleReport:
    """Bucket + ledger cycle: deliver the oldest unsent items of the current scope."""
    source, policy = job.source, job.policy
    report = CycleReport(source.source_id, mode=mode)
    moment = now()
    scope = source.scope.scope_for(moment)
    key = source.scope.bucket_key(source.source_id, scope)

    try:
        bucket, existed = load_bucket(
            store,
            key,
            scope=scope,
            source_id=source.source_id,
            source_name=source.name,
            timezone_label=source.scope.label,
        )
        ledger = load_ledger(store, ledger_key(source.source_id), policy.ledger_max_entries)
    except StoreError as e:
        logger.error(f"[{source.source_id}] state unavailable, skipping cycle: {e}")
        report.skipped, report.error = "store_unavailable", str(e)
        return report

    try:
        candidates = source.fetch_candidates({item.identity: item for item in bucket.items})
    except FetchError as e:
        logger.warning(f"[{source.source_id}] fetch failed, nothing changed: {e}")
        report.skipped, report.error = "fetch_failed", str(e)
        return report

    known = {item.identity for item in bucket.items}
    report.fetched = len(candidates)
    report.new = len({c.identity for c in candidates} - known)

    merged, changed = merge_items(bucket.items, candidates)
    bucket.items = merged
    marked = reconcile_against_ledger(merged, ledger)
    if recent_cache is not None and recent_cache.reconcile(source.source_id, merged):
        marked = True

    first_run = policy.seed_on_first_run and not existed and len(ledger) == 0 and bool(merged)
    if mode == MODE_TEST:
        newest = select_newest_unsent(merged)
        selected: List[TrackedItem] = [newest] if newest is not None else []
    elif first_run:
        selected = []
    else:
        selected = select_for_delivery(merged, policy.send_limit)

    seeded = False
    if first_run:
        # baseline is the same in every mode; only the test pick stays unsent
        stamp = to_iso(moment)
        held = {item.identity for item in selected}
        for item in merged:
            if not item.sent and item.identity not in held:
                item.mark_sent(stamp)
        report.seeded = len(record_deliveries(ledger, merged))
        seeded = True
        logger.info(f"[{source.source_id}] first run: seeded {report.seeded} items without delivery")

    report.selected = len(selected)
    report.delivered = deliver_all(
        selected,
        job.sink,
        source_id=source.source_id,
        ledger=ledger,
        recent_cache=recent_cache,
        delay_seconds=policy.delay_seconds,
        sleep=sleep,
        now=now,
    )
    report.failed = report.selected - report.delivered

    if changed or marked or seeded or report.delivered or not existed:
        try:
            save_bucket(store, bucket, bucket_ttl_for(job), now=moment)
            report.bucket_written = True
        except StoreError as e:
            logger.error(f"[{source.source_id}] failed to persist bucket {key}: {e}")
    _persist_ledger(store, ledger, job, report)

    logger.info(
        f"[{source.source_id}] {mode}: fetched={report.fetched} new={report.new} "
        f"delivered={report.delivered}/{report.selected} pending={len(bucket.pending())} "
        f"bucket_written={report.bucket_written} ledger_written={report.ledger_written}"
    )
    return report


def run_ranked_cycle(
    job: RelayJob,
    store: KVStore,
    *,
    mode: str = MODE_PRODUCTION,
    recent_cache: Optional[RecentDeliveryCache] = None,
    now: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], None] = time.sleep,
) -> CycleReport:
    """Ledger-only cycle: deliver the highest-scored candidates never sent before.

    With ``min_interval_seconds`` set, production runs are gated by the time
    of the last successful delivery.
    """
    source, policy = job.source, job.policy
    report = CycleReport(source.source_id, mode=mode)
    moment = now()
    gate_key = run_gate_key(source.source_id)
    gated = mode == MODE_PRODUCTION and bool(policy.min_interval_seconds)

    try:
        if gated:
            last_ms = iso_to_ms(store.get(gate_key))
            if last_ms is not None and to_epoch_ms(moment) - last_ms < policy.min_interval_seconds * 1000:
                logger.info(f"[{source.source_id}] last delivery within {policy.min_interval_seconds}s, skipping")
                report.skipped = "gated"
                return report
        ledger = load_ledger(store, ledger_key(source.source_id), policy.ledger_max_entries)
    except StoreError as e:
        logger.error(f"[{source.source_id}] state unavailable, skipping cycle: {e}")
        report.skipped, report.error = "store_unavailable", str(e)
        return report

    try:
        candidates = source.fetch_candidates()
    except FetchError as e:
        logger.warning(f"[{source.source_id}] fetch failed, nothing changed: {e}")
        report.skipped, report.error = "fetch_failed", str(e)
        return report
    report.fetched = len(candidates)

    if recent_cache is not None:
        for cand in candidates:
            sent_at = recent_cache.recent_sent_at(source.source_id, cand.identity)
            if sent_at and ledger.lookup(cand.identity) is None:
                ledger.record(cand.identity, sent_at)

    report.new = sum(1 for c in candidates if ledger.lookup(c.identity) is None)
    limit = 1 if mode == MODE_TEST else policy.send_limit
    selected = [TrackedItem.from_candidate(c) for c in select_top_ranked(candidates, ledger, limit)]
    report.selected = len(selected)
    report.delivered = deliver_all(
        selected,
        job.sink,
        source_id=source.source_id,
        ledger=ledger,
        recent_cache=recent_cache,
        delay_seconds=policy.delay_seconds,
        sleep=sleep,
        now=now,
    )
    report.failed = report.selected - report.delivered

    _persist_ledger(store, ledger, job, report)
    if gated and report.delivered:
        try:
            store.put(gate_key, to_iso(moment), policy.min_interval_seconds * 2)
        except StoreError as e:
            logger.error(f"[{source.source_id}] failed to record run time: {e}")

    logger.info(
        f"[{source.source_id}] {mode}: fetched={report.fetched} unsent={report.new} "
        f"delivered={report.delivered}/{report.selected} ledger_written={report.ledger_written}"
    )
    return report


def run_cycle(job: RelayJob, store: KVStore, *, mode: str = MODE_PRODUCTION, **kwargs) -> CycleReport:
    if job.source.strategy == "ranked":
        return run_ranked_cycle(job, store, mode=mode, **kwargs)
    return run_incremental_cycle(job, store, mode=mode, **kwargs)


def run_replay(
    job: RelayJob,
    *,
    sleep: Callable[[float], None] = time.sleep,
    now: Callable[[], datetime] = utc_now,
) -> CycleReport:
    """Deliver everything the source currently shows, ignoring and writing no state."""
    source = job.source
    report = CycleReport(source.source_id, mode=MODE_REPLAY)
    try:
        candidates = source.fetch_candidates()
    except FetchError as e:
        logger.warning(f"[{source.source_id}] replay fetch failed: {e}")
        report.skipped, report.error = "fetch_failed", str(e)
        return report

    if source.strategy == "ranked":
        items = [TrackedItem.from_candidate(c) for c in sorted(candidates, key=ranked_sort_key)]
    else:
        items, _ = merge_items([], candidates)

    report.fetched = report.new = report.selected = len(items)
    report.delivered = deliver_all(
        items,
        job.sink,
        source_id=source.source_id,
        delay_seconds=job.policy.delay_seconds,
        sleep=sleep,
        now=now,
    )
    report.failed = report.selected - report.delivered
    logger.info(f"[{source.source_id}] replay: delivered={report.delivered}/{report.selected}")
    return report


def run_all(
    jobs: Iterable[RelayJob],
    store: Optional[KVStore],
    *,
    mode: str = MODE_PRODUCTION,
    recent_cache: Optional[RecentDeliveryCache] = None,
    **kwargs,
) -> List[CycleReport]:
    """Run every job in turn; a failure in one source never stops the next."""
    reports = []
    for job in jobs:
        try:
            if mode == MODE_REPLAY:
                report = run_replay(job, **kwargs)
            else:
                report = run_cycle(job, store, mode=mode, recent_cache=recent_cache, **kwargs)
        except Exception as e:
            logger.error(f"[{job.source_id}] cycle aborted: {e}", exc_info=True)
            report = CycleReport(job.source_id, mode=mode, skipped="error", error=str(e))
        reports.append(report)
    return reports


def describe_state(job: RelayJob, store: KVStore, *, now: Callable[[], datetime] = utc_now) -> Dict[str, Any]:
    """Snapshot of what the store currently holds for one source."""
    source = job.source
    lkey = ledger_key(source.source_id)
    ledger = load_ledger(store, lkey, job.policy.ledger_max_entries)
    info: Dict[str, Any] = {
        "sourceId": source.source_id,
        "sourceName": source.name,
        "strategy": source.strategy,
        "ledgerKey": lkey,
        "ledgerEntries": len(ledger),
    }
    if source.strategy == "ranked":
        info["lastRun"] = store.get(run_gate_key(source.source_id))
        return info

    scope = source.scope.scope_for(now())
    key = source.scope.bucket_key(source.source_id, scope)
    bucket, existed = load_bucket(store, key, scope=scope, source_id=source.source_id, source_name=source.name)
    pending = bucket.pending()
    info.update(
        {
            "bucketKey": key,
            "bucketExists": existed,
            "items": len(bucket.items),
            "sent": len(bucket.items) - len(pending),
            "pending": len(pending),
            "updatedAt": bucket.updated_at,
        }
    )
    return info


def status(jobs: Iterable[RelayJob], store: KVStore, **kwargs) -> List[Dict[str, Any]]:
    out = []
    for job in jobs:
        try:
            out.append(describe_state(job, store, **kwargs))
        except StoreError as e:
            logger.error(f"[{job.source_id}] status unavailable: {e}")
            out.append({"sourceId": job.source_id, "error": str(e)})
    return out


def clear_state(job: RelayJob, store: KVStore, *, now: Callable[[], datetime] = utc_now) -> List[str]:
    """Delete the current bucket, the ledger and the run gate of one source."""
    source = job.source
    keys = [ledger_key(source.source_id), run_gate_key(source.source_id)]
    if source.strategy != "ranked":
        scope = source.scope.scope_for(now())
        keys.insert(0, source.scope.bucket_key(source.source_id, scope))
    for key in keys:
        store.delete(key)
    logger.info(f"[{source.source_id}] cleared {', '.join(keys)}")
    return keys
