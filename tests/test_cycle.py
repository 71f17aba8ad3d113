import json
import unittest
from datetime import datetime, timedelta, timezone

from feedrelay.delivery.recent_cache import RecentDeliveryCache
from feedrelay.ingestion.http import FetchError
from feedrelay.ingestion.item_types import CandidateItem
from feedrelay.ingestion.sources import SourceAdapter
from feedrelay.pipeline.cycle import (
    MODE_REPLAY,
    MODE_TEST,
    CyclePolicy,
    RelayJob,
    clear_state,
    describe_state,
    run_all,
    run_cycle,
    run_gate_key,
)
from feedrelay.state.bucket import DailyScope, SnapshotScope, StateBucket, TrackedItem, load_bucket, save_bucket
from feedrelay.state.ledger import ledger_key, load_ledger
from feedrelay.storage.kv_store import MemoryKVStore, StoreError

NOW = datetime(2024, 3, 1, 4, 0, tzinfo=timezone.utc)


def cand(identity, day=None, title=None, score=None):
    published = datetime(2024, 1, day, tzinfo=timezone.utc) if day else None
    return CandidateItem(identity=identity, title=title or identity.upper(), published_at=published, score=score)


class FakeSource(SourceAdapter):
    def __init__(self, candidates=(), *, source_id="fake", strategy="incremental", scope=None, error=None):
        self.source_id = source_id
        self.name = "Fake"
        self.strategy = strategy
        self.scope = scope or SnapshotScope()
        self.candidates = list(candidates)
        self.error = error
        self.fetches = 0

    def fetch_raw(self):
        self.fetches += 1
        if self.error is not None:
            raise self.error
        return list(self.candidates)

    def parse(self, raw, existing):
        return raw


class FakeSink:
    def __init__(self, fail_ids=()):
        self.fail_ids = set(fail_ids)
        self.calls = []

    def deliver(self, item):
        self.calls.append(item.identity)
        return item.identity not in self.fail_ids


class RecordingStore(MemoryKVStore):
    def __init__(self):
        super().__init__()
        self.puts = []

    def put(self, key, value, ttl_seconds=None):
        self.puts.append(key)
        super().put(key, value, ttl_seconds)


class BrokenReadStore(MemoryKVStore):
    def get(self, key):
        raise StoreError("connection refused")


class BrokenWriteStore(MemoryKVStore):
    def put(self, key, value, ttl_seconds=None):
        raise StoreError("disk full")


def make_job(source, sink=None, **policy):
    policy.setdefault("delay_seconds", 0)
    return RelayJob(source=source, sink=sink or FakeSink(), policy=CyclePolicy(**policy))


def run(job, store, **kwargs):
    kwargs.setdefault("now", lambda: NOW)
    kwargs.setdefault("sleep", lambda s: None)
    return run_cycle(job, store, **kwargs)


def stored_bucket(store, key="snapshot:fake"):
    bucket, existed = load_bucket(store, key, scope="snapshot", source_id="fake")
    return bucket, existed


class TestIncrementalCycle(unittest.TestCase):
    def test_empty_state_delivers_in_publish_order(self):
        store = MemoryKVStore()
        job = make_job(FakeSource([cand("b", 2), cand("a", 1)]))

        report = run(job, store)

        self.assertEqual(job.sink.calls, ["a", "b"])
        self.assertEqual(report.delivered, 2)
        bucket, existed = stored_bucket(store)
        self.assertTrue(existed)
        self.assertEqual([i.identity for i in bucket.items], ["a", "b"])
        self.assertTrue(all(i.sent and i.sent_at for i in bucket.items))

    def test_sent_item_reobserved_unchanged_causes_no_delivery_and_no_write(self):
        store = RecordingStore()
        bucket = StateBucket(key="snapshot:fake", scope="snapshot", source_id="fake")
        bucket.items = [TrackedItem(identity="a", title="A", sent=True, sent_at="2024-01-01T00:00:00.000Z")]
        save_bucket(store, bucket, ttl_seconds=60)
        store.puts.clear()
        job = make_job(FakeSource([cand("a", title="A")]))

        report = run(job, store)

        self.assertEqual(job.sink.calls, [])
        self.assertFalse(report.bucket_written)
        self.assertFalse(report.ledger_written)
        self.assertEqual(store.puts, [])

    def test_no_redelivery_on_next_cycle(self):
        store = MemoryKVStore()
        job = make_job(FakeSource([cand("a", 1), cand("b", 2)]))
        run(job, store)
        job.sink.calls.clear()

        report = run(job, store)

        self.assertEqual(job.sink.calls, [])
        self.assertEqual(report.delivered, 0)

    def test_bounded_batch_delivers_backlog_oldest_first(self):
        store = MemoryKVStore()
        job = make_job(FakeSource([cand(f"i{d}", d) for d in range(7, 0, -1)]), send_limit=5)

        first = run(job, store)
        self.assertEqual(job.sink.calls, ["i1", "i2", "i3", "i4", "i5"])
        self.assertEqual(first.delivered, 5)
        bucket, _ = stored_bucket(store)
        self.assertEqual([i.identity for i in bucket.pending()], ["i6", "i7"])

        job.sink.calls.clear()
        run(job, store)
        self.assertEqual(job.sink.calls, ["i6", "i7"])

    def test_limit_one_delivers_only_oldest(self):
        store = MemoryKVStore()
        job = make_job(FakeSource([cand("new", 3), cand("old", 1), cand("mid", 2)]), send_limit=1)

        run(job, store)

        self.assertEqual(job.sink.calls, ["old"])
        bucket, _ = stored_bucket(store)
        self.assertEqual([i.identity for i in bucket.pending()], ["mid", "new"])

    def test_ledger_memory_survives_daily_rotation(self):
        store = MemoryKVStore()
        source = FakeSource([cand("x", 1)], scope=DailyScope("Asia/Taipei"))
        job = make_job(source)
        day1 = datetime(2024, 1, 1, 2, 0, tzinfo=timezone.utc)
        day2 = day1 + timedelta(days=1)

        run(job, store, now=lambda: day1)
        self.assertEqual(job.sink.calls, ["x"])

        report = run(job, store, now=lambda: day2)

        self.assertEqual(job.sink.calls, ["x"])
        self.assertEqual(report.delivered, 0)
        bucket, existed = load_bucket(store, "daily:fake:2024-01-02", scope="2024-01-02", source_id="fake")
        self.assertTrue(existed)
        self.assertTrue(bucket.items[0].sent)
        self.assertEqual(bucket.items[0].sent_at, "2024-01-01T02:00:00.000Z")

    def test_failed_delivery_stays_pending_and_loop_continues(self):
        store = MemoryKVStore()
        job = make_job(FakeSource([cand("a", 1), cand("b", 2), cand("c", 3)]), FakeSink(fail_ids={"b"}))

        report = run(job, store)

        self.assertEqual(job.sink.calls, ["a", "b", "c"])
        self.assertEqual((report.delivered, report.failed), (2, 1))
        bucket, _ = stored_bucket(store)
        self.assertEqual([i.identity for i in bucket.pending()], ["b"])

        job.sink.fail_ids.clear()
        job.sink.calls.clear()
        run(job, store)
        self.assertEqual(job.sink.calls, ["b"])

    def test_fetch_failure_writes_nothing(self):
        store = RecordingStore()
        job = make_job(FakeSource(error=FetchError("HTTP 503")))

        report = run(job, store)

        self.assertEqual(report.skipped, "fetch_failed")
        self.assertEqual(store.puts, [])
        self.assertEqual(job.sink.calls, [])

    def test_store_read_failure_skips_before_fetch(self):
        source = FakeSource([cand("a", 1)])
        job = make_job(source)

        report = run(job, BrokenReadStore())

        self.assertEqual(report.skipped, "store_unavailable")
        self.assertEqual(source.fetches, 0)
        self.assertEqual(job.sink.calls, [])

    def test_write_failure_is_logged_not_raised(self):
        job = make_job(FakeSource([cand("a", 1)]))

        with self.assertLogs("feedrelay.pipeline.cycle", level="ERROR"):
            report = run(job, BrokenWriteStore())

        self.assertEqual(report.delivered, 1)
        self.assertFalse(report.bucket_written)
        self.assertFalse(report.ledger_written)

    def test_first_run_seeding_records_without_delivery(self):
        store = MemoryKVStore()
        source = FakeSource([cand("a", 1), cand("b", 2), cand("c", 3)])
        job = make_job(source, seed_on_first_run=True)

        report = run(job, store)

        self.assertEqual(job.sink.calls, [])
        self.assertEqual(report.seeded, 3)
        self.assertEqual(len(load_ledger(store, ledger_key("fake"))), 3)

        source.candidates.append(cand("d", 4))
        run(job, store)
        self.assertEqual(job.sink.calls, ["d"])

    def test_first_test_run_seeds_everything_but_the_newest(self):
        store = MemoryKVStore()
        source = FakeSource([cand(c, i + 1) for i, c in enumerate("abcdefgh")])
        job = make_job(source, seed_on_first_run=True)

        report = run(job, store, mode=MODE_TEST)

        self.assertEqual(job.sink.calls, ["h"])
        self.assertEqual(report.seeded, 7)
        bucket, _ = stored_bucket(store)
        self.assertEqual(bucket.pending(), [])

        run(job, store, now=lambda: NOW + timedelta(hours=1))
        self.assertEqual(job.sink.calls, ["h"])

    def test_test_mode_never_bulk_marks_an_existing_bucket(self):
        store = MemoryKVStore()
        source = FakeSource([cand("a", 1)])
        job = make_job(source)
        run(job, store)
        source.candidates += [cand("b", 2), cand("c", 3)]

        report = run(job, store, mode=MODE_TEST)

        self.assertEqual(job.sink.calls, ["a", "c"])
        self.assertEqual(report.seeded, 0)
        bucket, _ = stored_bucket(store)
        self.assertEqual([i.identity for i in bucket.pending()], ["b"])

    def test_surrogate_identity_in_stored_bucket(self):
        store = MemoryKVStore()
        odd = json.loads('"\\ud800x"')
        bucket = StateBucket(key="snapshot:fake", scope="snapshot", source_id="fake")
        bucket.items = [TrackedItem(identity=odd, title="odd")]
        save_bucket(store, bucket, ttl_seconds=None, now=NOW)
        job = make_job(FakeSource([cand(odd, 1), cand("b", 2)]))

        reports = run_all([job], store, now=lambda: NOW, sleep=lambda s: None)

        self.assertIsNone(reports[0].error)
        self.assertEqual(job.sink.calls, [odd, "b"])
        self.assertIn(odd, load_ledger(store, ledger_key("fake")))

    def test_recent_cache_prevents_burst_duplicate_after_lost_write(self):
        cache = RecentDeliveryCache()
        job = make_job(FakeSource([cand("a", 1)]))
        run(job, BrokenWriteStore(), recent_cache=cache)

        report = run(job, MemoryKVStore(), recent_cache=cache)

        self.assertEqual(job.sink.calls, ["a"])
        self.assertEqual(report.delivered, 0)

    def test_ledger_is_pruned_to_capacity_on_persist(self):
        store = MemoryKVStore()
        clock = iter(NOW + timedelta(minutes=m) for m in range(100))
        job = make_job(FakeSource([cand(f"i{d}", d) for d in range(1, 6)]), ledger_max_entries=3)

        run(job, store, now=lambda: next(clock))

        ledger = load_ledger(store, ledger_key("fake"))
        self.assertEqual(len(ledger), 3)
        self.assertNotIn("i1", ledger)
        self.assertIn("i5", ledger)


class TestRankedCycle(unittest.TestCase):
    def ranked_source(self):
        return FakeSource(
            [cand("low", score=1), cand("top", score=9), cand("mid", score=5), cand("tie", score=5)],
            source_id="ranked",
            strategy="ranked",
        )

    def test_delivers_highest_scores_not_in_ledger(self):
        store = MemoryKVStore()
        job = make_job(self.ranked_source(), send_limit=2)

        run(job, store)
        self.assertEqual(job.sink.calls, ["top", "mid"])

        run(job, store)
        self.assertEqual(job.sink.calls, ["top", "mid", "tie", "low"])
        self.assertEqual(len(load_ledger(store, ledger_key("ranked"))), 4)

    def test_run_gate_blocks_until_interval_passes(self):
        store = MemoryKVStore()
        source = self.ranked_source()
        job = make_job(source, send_limit=1, min_interval_seconds=24 * 60 * 60)

        run(job, store)
        self.assertEqual(job.sink.calls, ["top"])
        self.assertIsNotNone(store.get(run_gate_key("ranked")))

        gated = run(job, store, now=lambda: NOW + timedelta(hours=1))
        self.assertEqual(gated.skipped, "gated")
        self.assertEqual(source.fetches, 1)

        run(job, store, now=lambda: NOW + timedelta(hours=1), mode=MODE_TEST)
        self.assertEqual(job.sink.calls, ["top", "mid"])

        run(job, store, now=lambda: NOW + timedelta(hours=25))
        self.assertEqual(job.sink.calls, ["top", "mid", "tie"])

    def test_gate_not_written_when_nothing_delivered(self):
        store = MemoryKVStore()
        job = make_job(self.ranked_source(), FakeSink(fail_ids={"top"}), send_limit=1, min_interval_seconds=3600)

        run(job, store)

        self.assertIsNone(store.get(run_gate_key("ranked")))


class TestRunAll(unittest.TestCase):
    def test_failure_in_one_source_does_not_stop_the_next(self):
        store = MemoryKVStore()
        broken = make_job(FakeSource(source_id="broken", error=RuntimeError("parser bug")))
        healthy = make_job(FakeSource([cand("a", 1)], source_id="healthy"))

        with self.assertLogs("feedrelay.pipeline.cycle", level="ERROR"):
            reports = run_all([broken, healthy], store, now=lambda: NOW, sleep=lambda s: None)

        self.assertEqual(reports[0].skipped, "error")
        self.assertEqual(reports[1].delivered, 1)
        self.assertEqual(healthy.sink.calls, ["a"])

    def test_replay_delivers_everything_and_touches_no_state(self):
        store = RecordingStore()
        job = make_job(FakeSource([cand("b", 2), cand("a", 1)]))
        run(job, store)
        store.puts.clear()
        job.sink.calls.clear()

        reports = run_all([job], store, mode=MODE_REPLAY, sleep=lambda s: None)

        self.assertEqual(job.sink.calls, ["a", "b"])
        self.assertEqual(reports[0].delivered, 2)
        self.assertEqual(store.puts, [])


class TestStateInspection(unittest.TestCase):
    def test_describe_and_clear(self):
        store = MemoryKVStore()
        job = make_job(FakeSource([cand("a", 1), cand("b", 2)]), send_limit=1)
        run(job, store)

        info = describe_state(job, store, now=lambda: NOW)
        self.assertEqual((info["items"], info["sent"], info["pending"]), (2, 1, 1))
        self.assertEqual(info["ledgerEntries"], 1)

        keys = clear_state(job, store, now=lambda: NOW)
        self.assertEqual(keys, ["snapshot:fake", "sent:fake", "lastrun:fake"])
        self.assertIsNone(store.get("snapshot:fake"))
        self.assertIsNone(store.get("sent:fake"))

    def test_stored_bucket_shape(self):
        store = MemoryKVStore()
        run(make_job(FakeSource([cand("a", 1)])), store)

        data = json.loads(store.get("snapshot:fake"))
        self.assertEqual(data["scope"], "snapshot")
        self.assertEqual(data["updatedAt"], "2024-03-01T04:00:00.000Z")
        article = data["articles"][0]
        self.assertEqual(article["identity"], "a")
        self.assertEqual(article["publishedAt"], "2024-01-01T00:00:00.000Z")
        self.assertEqual(article["publishedAtMs"], 1704067200000)
        self.assertIs(article["sent"], True)
        self.assertEqual(article["sentAt"], "2024-03-01T04:00:00.000Z")


if __name__ == "__main__":
    unittest.main()
