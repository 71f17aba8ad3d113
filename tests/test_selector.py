import unittest

from feedrelay.ingestion.item_types import CandidateItem
from feedrelay.pipeline.selector import select_for_delivery, select_newest_unsent, select_top_ranked
from feedrelay.state.bucket import TrackedItem
from feedrelay.state.ledger import SentLedger


def item(identity, ms=None, sent=False):
    return TrackedItem(identity=identity, published_at_ms=ms, sent=sent, sent_at="2024-01-01T00:00:00.000Z" if sent else None)


class TestSelectForDelivery(unittest.TestCase):
    def test_oldest_unsent_first_up_to_limit(self):
        items = [item("new", 300), item("old", 100), item("mid", 200)]
        self.assertEqual([i.identity for i in select_for_delivery(items, 1)], ["old"])
        self.assertEqual([i.identity for i in select_for_delivery(items, 5)], ["old", "mid", "new"])

    def test_sent_items_are_skipped(self):
        items = [item("a", 1, sent=True), item("b", 2), item("c")]
        self.assertEqual([i.identity for i in select_for_delivery(items, 5)], ["b", "c"])

    def test_non_positive_limit(self):
        self.assertEqual(select_for_delivery([item("a", 1)], 0), [])


class TestSelectNewestUnsent(unittest.TestCase):
    def test_picks_newest(self):
        items = [item("a", 1), item("c", 3), item("b", 2), item("d", 4, sent=True)]
        self.assertEqual(select_newest_unsent(items).identity, "c")

    def test_undated_only_when_nothing_else(self):
        self.assertEqual(select_newest_unsent([item("x"), item("a", 1)]).identity, "a")
        self.assertEqual(select_newest_unsent([item("x")]).identity, "x")

    def test_none_when_all_sent(self):
        self.assertIsNone(select_newest_unsent([item("a", 1, sent=True)]))


class TestSelectTopRanked(unittest.TestCase):
    def test_highest_score_first_excluding_ledger(self):
        candidates = [
            CandidateItem(identity="c", score=5),
            CandidateItem(identity="b", score=9),
            CandidateItem(identity="a", score=9),
            CandidateItem(identity="d", score=0),
        ]
        ledger = SentLedger("sent:x")
        ledger.record("b", "2024-01-01T00:00:00.000Z")

        picked = select_top_ranked(candidates, ledger, 2)

        self.assertEqual([c.identity for c in picked], ["a", "c"])

    def test_duplicate_identities_counted_once(self):
        candidates = [CandidateItem(identity="a", score=1), CandidateItem(identity="a", score=1)]
        self.assertEqual(len(select_top_ranked(candidates, SentLedger("sent:x"), 5)), 1)


if __name__ == "__main__":
    unittest.main()
