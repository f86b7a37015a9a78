from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from taste_index.aggregates import audit
from taste_index.config_schema import AppConfig, ContentConfig
from taste_index.index import TasteIndex
from taste_index.models import EventId, PostLiked, PostMinted
from taste_index.normalize import MAX_AMOUNT
from taste_index.storage import encode_amount


class TestAudit(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.index = TasteIndex.open(
            AppConfig(content=ContentConfig(scheme="cid")),
            db_path=Path(self._td.name) / "index.sqlite",
        )
        ingest = self.index.ingestor
        ingest.ingest(PostMinted(EventId("m1", 0), "alice", 1, "cid:a", "cook", 10, reward=5))
        ingest.ingest(PostMinted(EventId("m2", 0), "alice", 2, "cid:b", "taste", 11, reward=5))
        ingest.ingest(PostLiked(EventId("l1", 0), 1, "bob", "alice", 12, reward=1))
        ingest.ingest(PostLiked(EventId("l2", 0), 1, "carol", "alice", 13, reward=1))
        ingest.ingest(PostLiked(EventId("l3", 0), 2, "bob", "alice", 14, reward=1))

    def tearDown(self) -> None:
        self.index.close()
        self._td.cleanup()

    def test_clean_after_ingest(self) -> None:
        report = audit(self.index.store)
        self.assertTrue(report.clean)
        self.assertEqual(report.posts_checked, 2)
        self.assertEqual(report.accounts_checked, 3)

        alice = self.index.queries.get_profile("alice")
        assert alice is not None
        self.assertEqual(alice.total_earned, 13)

    def test_detects_and_repairs_drift(self) -> None:
        with self.index.store.transaction() as tx:
            tx.conn.execute("UPDATE posts SET like_count = 7 WHERE creator = 'alice' AND post_id = 1")
            tx.conn.execute("UPDATE user_accounts SET post_count = 0 WHERE address = 'alice'")

        found = audit(self.index.store)
        self.assertFalse(found.clean)
        self.assertEqual(
            sorted((d.table, d.column, d.stored, d.expected) for d in found.drift),
            [("posts", "like_count", 7, 2), ("user_accounts", "post_count", 0, 2)],
        )
        self.assertFalse(found.repaired)

        fixed = audit(self.index.store, repair=True)
        self.assertTrue(fixed.repaired)
        self.assertTrue(audit(self.index.store).clean)

        post = self.index.queries.get_post("alice", 1)
        assert post is not None
        self.assertEqual(post.like_count, 2)

    def test_earned_drift_is_raised_but_never_lowered(self) -> None:
        with self.index.store.transaction() as tx:
            tx.conn.execute(
                "UPDATE user_accounts SET total_earned = ? WHERE address = 'alice'",
                (encode_amount(3),),
            )
            tx.conn.execute(
                "UPDATE user_accounts SET total_earned = ? WHERE address = 'bob'",
                (encode_amount(40),),
            )

        found = audit(self.index.store)
        self.assertEqual(
            sorted((d.key, d.column, d.stored, d.expected) for d in found.drift),
            [("alice", "total_earned", 3, 13), ("bob", "total_earned", 40, 0)],
        )

        audit(self.index.store, repair=True)
        alice = self.index.queries.get_profile("alice")
        bob = self.index.queries.get_profile("bob")
        assert alice is not None and bob is not None
        self.assertEqual(alice.total_earned, 13)
        self.assertEqual(bob.total_earned, 40)


class TestBaseUnitAmounts(unittest.TestCase):
    def test_wei_sized_rewards_sum_exactly(self) -> None:
        reward = 10**18 + 1
        likers = [f"fan{i}" for i in range(12)]

        with TasteIndex.open(AppConfig(content=ContentConfig(scheme="cid")), db_path=":memory:") as index:
            ingest = index.ingestor
            ingest.ingest(PostMinted(EventId("m1", 0), "alice", 1, "cid:a", "cook", 10, reward=reward))
            for i, liker in enumerate(likers):
                ingest.ingest(PostLiked(EventId(f"l{i}", 0), 1, liker, "alice", 20 + i, reward=reward))

            alice = index.queries.get_profile("alice")
            assert alice is not None
            self.assertEqual(alice.total_earned, 13 * reward)
            self.assertEqual(alice.total_earned, 13000000000000000013)

            report = audit(index.store)
            self.assertTrue(report.clean)

    def test_uint256_max_reward_is_stored(self) -> None:
        with TasteIndex.open(AppConfig(content=ContentConfig(scheme="cid")), db_path=":memory:") as index:
            index.ingestor.ingest(PostMinted(EventId("m1", 0), "alice", 1, "cid:a", "cook", 10))
            index.ingestor.ingest(PostLiked(EventId("l1", 0), 1, "bob", "alice", 11, reward=MAX_AMOUNT))
            index.ingestor.ingest(PostLiked(EventId("l2", 0), 1, "carol", "alice", 12, reward=MAX_AMOUNT))

            alice = index.queries.get_profile("alice")
            assert alice is not None
            self.assertEqual(alice.total_earned, 2 * MAX_AMOUNT)


if __name__ == "__main__":
    unittest.main()
