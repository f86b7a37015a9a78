from __future__ import annotations

import tempfile
import threading
import unittest
from pathlib import Path

from taste_index.config_schema import AppConfig, ContentConfig
from taste_index.errors import InvalidArgument, InvalidFact, InvalidLike, InvalidReference
from taste_index.index import TasteIndex
from taste_index.models import ApplyOutcome, EventId, LikeMutation, PostLiked, PostMinted

_X = "0x" + "a" * 40
_Y = "0x" + "b" * 40


def _config() -> AppConfig:
    return AppConfig(content=ContentConfig(scheme="cid"))


def _mint(tx: str, *, creator: str = _X, post_id: int = 1, ts: int = 100, reward: int = 0) -> PostMinted:
    return PostMinted(
        event_id=EventId(tx, 0),
        creator=creator,
        post_id=post_id,
        content_ref="cid:abc",
        category="cook",
        rating=5,
        caption="homemade pho",
        timestamp=ts,
        reward=reward,
    )


def _like(tx: str, *, liker: str = _Y, creator: str = _X, post_id: int = 1, ts: int = 200, reward: int = 1) -> PostLiked:
    return PostLiked(
        event_id=EventId(tx, 0),
        post_id=post_id,
        liker=liker,
        creator=creator,
        timestamp=ts,
        reward=reward,
    )


class _IndexCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.index = TasteIndex.open(_config(), db_path=Path(self._td.name) / "index.sqlite")

    def tearDown(self) -> None:
        self.index.close()
        self._td.cleanup()

    def snapshot_state(self) -> tuple:
        with self.index.store.snapshot() as conn:
            posts = conn.execute("SELECT * FROM posts ORDER BY creator, post_id").fetchall()
            likes = conn.execute("SELECT * FROM likes ORDER BY creator, post_id, liker").fetchall()
            accts = conn.execute(
                "SELECT address, total_earned, post_count, like_count_given, last_active "
                "FROM user_accounts ORDER BY address"
            ).fetchall()
        return (
            [tuple(r) for r in posts],
            [tuple(r) for r in likes],
            [tuple(r) for r in accts],
        )


class TestIdempotentWriter(_IndexCase):
    def test_same_event_twice_is_applied_then_already_applied(self) -> None:
        ingest = self.index.ingestor
        self.assertEqual(ingest.ingest(_mint("m1")), ApplyOutcome.APPLIED)
        once = self.snapshot_state()

        self.assertEqual(ingest.ingest(_mint("m1")), ApplyOutcome.ALREADY_APPLIED)
        self.assertEqual(self.snapshot_state(), once)

    def test_like_replayed_with_same_event_counts_once(self) -> None:
        ingest = self.index.ingestor
        ingest.ingest(_mint("m1"))

        self.assertEqual(ingest.ingest(_like("l1")), ApplyOutcome.APPLIED)
        self.assertEqual(ingest.ingest(_like("l1")), ApplyOutcome.ALREADY_APPLIED)

        post = self.index.queries.get_post(_X, 1)
        assert post is not None
        self.assertEqual(post.like_count, 1)

        creator = self.index.queries.get_profile(_X)
        assert creator is not None
        self.assertEqual(creator.total_earned, 1)

    def test_same_pair_under_new_event_id_is_already_applied(self) -> None:
        ingest = self.index.ingestor
        ingest.ingest(_mint("m1"))
        ingest.ingest(_like("l1"))
        before = self.snapshot_state()

        self.assertEqual(ingest.ingest(_like("l1-retry")), ApplyOutcome.ALREADY_APPLIED)
        self.assertEqual(self.snapshot_state(), before)
        self.assertTrue(self.index.store.is_processed("l1-retry:0"))

        # The duplicate marker short-circuits later replays too.
        self.assertEqual(ingest.ingest(_like("l1-retry")), ApplyOutcome.ALREADY_APPLIED)

    def test_same_post_under_new_event_id_is_already_applied(self) -> None:
        ingest = self.index.ingestor
        ingest.ingest(_mint("m1"))
        self.assertEqual(ingest.ingest(_mint("m1-again")), ApplyOutcome.ALREADY_APPLIED)

        account = self.index.queries.get_profile(_X)
        assert account is not None
        self.assertEqual(account.post_count, 1)

    def test_self_like_is_rejected_and_changes_nothing(self) -> None:
        ingest = self.index.ingestor
        ingest.ingest(_mint("m1"))
        before = self.snapshot_state()

        with self.assertRaises(InvalidLike):
            ingest.ingest(_like("self", liker=_X.upper().replace("0X", "0x")))
        with self.assertRaises(InvalidLike):
            self.index.writer.apply_mutation(
                EventId("self2", 0),
                LikeMutation(creator=_X, post_id=1, liker=_X, reward=1, timestamp=1),
            )

        self.assertEqual(self.snapshot_state(), before)
        self.assertFalse(self.index.store.is_processed("self:0"))

    def test_writer_normalizes_mutations_from_any_caller(self) -> None:
        self.index.ingestor.ingest(_mint("m1"))
        before = self.snapshot_state()
        mixed = _X.upper().replace("0X", "0x")

        with self.assertRaises(InvalidLike):
            self.index.writer.apply_mutation(
                EventId("self-mixed", 0),
                LikeMutation(creator=_X, post_id=1, liker=mixed, reward=1, timestamp=5),
            )
        self.assertEqual(self.snapshot_state(), before)
        self.assertEqual(self.index.store.account_count(), 1)

        outcome = self.index.writer.apply_mutation(
            EventId("direct", 0),
            LikeMutation(creator=mixed, post_id=1, liker=" " + _Y.upper().replace("0X", "0x"), reward=1, timestamp=5),
        )
        self.assertEqual(outcome, ApplyOutcome.APPLIED)
        self.assertTrue(self.index.store.has_like(_X, 1, _Y))
        self.assertEqual(self.index.store.account_count(), 2)

    def test_out_of_range_values_raise_typed_errors(self) -> None:
        ingest = self.index.ingestor
        with self.assertRaises(InvalidFact):
            ingest.ingest(_mint("big-reward", reward=2**256))
        with self.assertRaises(InvalidFact):
            ingest.ingest(_like("big-like", reward=2**256))
        with self.assertRaises(InvalidFact):
            ingest.ingest(_mint("big-post", post_id=2**63))
        with self.assertRaises(InvalidLike):
            self.index.writer.apply_mutation(
                EventId("big-direct", 0),
                LikeMutation(creator=_X, post_id=2**64, liker=_Y, reward=1, timestamp=1),
            )
        with self.assertRaises(InvalidFact):
            self.index.writer.apply_mutation(
                EventId("big-amount", 0),
                LikeMutation(creator=_X, post_id=1, liker=_Y, reward=2**300, timestamp=1),
            )
        self.assertEqual(self.index.store.processed_count(), 0)

    def test_invalid_reference_writes_nothing(self) -> None:
        bad = PostMinted(
            event_id=EventId("bad", 0),
            creator=_X,
            post_id=9,
            content_ref="https://example.com/x.png",
            category="cook",
            timestamp=1,
        )
        with self.assertRaises(InvalidReference):
            self.index.ingestor.ingest(bad)
        self.assertEqual(self.index.store.processed_count(), 0)
        self.assertEqual(self.index.store.post_count(), 0)

    def test_addresses_are_case_normalized(self) -> None:
        ingest = self.index.ingestor
        ingest.ingest(_mint("m1", creator=_X.upper().replace("0X", "0x")))
        ingest.ingest(_mint("m2", creator=_X, post_id=2))

        self.assertEqual(self.index.store.account_count(), 1)
        account = self.index.queries.get_profile(_X.upper().replace("0X", "0x"))
        assert account is not None
        self.assertEqual(account.address, _X)
        self.assertEqual(account.post_count, 2)

    def test_like_before_mint_is_counted_when_post_arrives(self) -> None:
        ingest = self.index.ingestor
        self.assertEqual(ingest.ingest(_like("l1")), ApplyOutcome.APPLIED)
        self.assertIsNone(self.index.queries.get_post(_X, 1))

        ingest.ingest(_mint("m1"))
        post = self.index.queries.get_post(_X, 1)
        assert post is not None
        self.assertEqual(post.like_count, 1)

    def test_aggregates_track_rewards_and_activity(self) -> None:
        ingest = self.index.ingestor
        ingest.ingest(_mint("m1", ts=100, reward=5))
        ingest.ingest(_like("l1", ts=300, reward=1))

        creator = self.index.queries.get_profile(_X)
        liker = self.index.queries.get_profile(_Y)
        assert creator is not None and liker is not None
        self.assertEqual(creator.total_earned, 6)
        self.assertEqual(creator.post_count, 1)
        self.assertEqual(creator.last_active, 300)
        self.assertEqual(liker.total_earned, 0)
        self.assertEqual(liker.like_count_given, 1)
        self.assertEqual(liker.last_active, 300)

    def test_like_count_matches_distinct_likes(self) -> None:
        ingest = self.index.ingestor
        ingest.ingest(_mint("m1"))
        likers = ["0x" + c * 40 for c in "bcdef"]
        for i, liker in enumerate(likers):
            ingest.ingest(_like(f"l{i}", liker=liker))
            ingest.ingest(_like(f"l{i}-dup", liker=liker))

        post = self.index.queries.get_post(_X, 1)
        assert post is not None
        self.assertEqual(post.like_count, len(likers))
        self.assertEqual(self.index.store.like_count(), len(likers))

    def test_has_liked(self) -> None:
        ingest = self.index.ingestor
        ingest.ingest(_mint("m1"))
        self.assertFalse(self.index.writer.has_liked(_X, 1, _Y))
        ingest.ingest(_like("l1"))
        self.assertTrue(self.index.writer.has_liked(_X, 1, _Y.upper().replace("0X", "0x")))

    def test_concurrent_likes_are_all_counted(self) -> None:
        self.index.ingestor.ingest(_mint("m1"))
        likers = [f"0x{i:040x}" for i in range(1, 25)]
        errors: list[BaseException] = []

        def _worker(i: int, liker: str) -> None:
            try:
                self.index.ingestor.ingest(_like(f"c{i}", liker=liker))
                # Duplicate delivery racing with the original.
                self.index.ingestor.ingest(_like(f"c{i}", liker=liker))
            except BaseException as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=_worker, args=(i, l)) for i, l in enumerate(likers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(errors, [])
        post = self.index.queries.get_post(_X, 1)
        creator = self.index.queries.get_profile(_X)
        assert post is not None and creator is not None
        self.assertEqual(post.like_count, len(likers))
        self.assertEqual(creator.total_earned, len(likers))


class TestProfiles(_IndexCase):
    def test_bad_profile_input_raises_invalid_argument(self) -> None:
        writer = self.index.writer
        with self.assertRaises(InvalidArgument):
            writer.update_profile("0xnot-an-address", display_name="x")
        with self.assertRaises(InvalidArgument):
            writer.update_profile(_X, display_name="n" * 500)
        with self.assertRaises(InvalidArgument):
            writer.has_liked("", 1, _Y)
        self.assertIsNone(self.index.queries.get_profile(_X))

    def test_profile_edit_creates_and_updates_account(self) -> None:
        writer = self.index.writer
        writer.update_profile(_X.upper().replace("0X", "0x"), display_name="  Chef   X ", now=50)

        account = self.index.queries.get_profile(_X)
        assert account is not None
        self.assertEqual(account.display_name, "Chef X")
        self.assertEqual(account.last_active, 50)
        self.assertEqual(account.post_count, 0)

        writer.update_profile(_X, avatar_ref="cid:face", now=60)
        account = self.index.queries.get_profile(_X)
        assert account is not None
        self.assertEqual(account.display_name, "Chef X")
        self.assertEqual(account.avatar_ref, "cid://face")

        writer.update_profile(_X, display_name=None, now=70)
        account = self.index.queries.get_profile(_X)
        assert account is not None
        self.assertIsNone(account.display_name)
        self.assertEqual(self.index.store.account_count(), 1)

    def test_profile_rejects_bad_avatar(self) -> None:
        with self.assertRaises(InvalidReference):
            self.index.writer.update_profile(_X, avatar_ref="not-a-ref")
        self.assertIsNone(self.index.queries.get_profile(_X))


if __name__ == "__main__":
    unittest.main()
