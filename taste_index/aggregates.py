from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .models import LikeMutation, PostMutation
from .storage import ZERO_AMOUNT, IndexTransaction, SQLiteIndexStore, decode_amount, encode_amount


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _touch_account(
    conn: sqlite3.Connection,
    address: str,
    *,
    active_at: int,
    earned: int = 0,
    posts: int = 0,
    likes_given: int = 0,
) -> None:
    # Counts are incremented in SQL against the row as it is under the write lock,
    # never against a value read earlier.
    conn.execute(
        """
        INSERT INTO user_accounts(
          address, total_earned, post_count, like_count_given, last_active, created_at
        ) VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(address) DO UPDATE SET
          post_count = post_count + excluded.post_count,
          like_count_given = like_count_given + excluded.like_count_given,
          last_active = MAX(last_active, excluded.last_active)
        """.strip(),
        (address, ZERO_AMOUNT, int(posts), int(likes_given), int(active_at), _utc_now_iso()),
    )
    if earned:
        _add_earned(conn, address, int(earned))


def _add_earned(conn: sqlite3.Connection, address: str, amount: int) -> None:
    # Amounts overflow SQLite integers, so the sum is taken here. The caller holds
    # the write lock (BEGIN IMMEDIATE), so the row cannot change in between.
    row = conn.execute(
        "SELECT total_earned FROM user_accounts WHERE address = ?",
        (address,),
    ).fetchone()
    total = decode_amount(row["total_earned"]) + amount
    conn.execute(
        "UPDATE user_accounts SET total_earned = ? WHERE address = ?",
        (encode_amount(total), address),
    )


def on_post_applied(tx: IndexTransaction, mutation: PostMutation) -> None:
    """Counters for a newly inserted post. Call only after insert_post returned True."""
    conn = tx.conn

    # Likes observed before the mint already exist as rows.
    conn.execute(
        """
        UPDATE posts
        SET like_count = (
          SELECT COUNT(1) FROM likes
          WHERE likes.creator = posts.creator AND likes.post_id = posts.post_id
        )
        WHERE creator = ? AND post_id = ?
        """.strip(),
        (mutation.creator, mutation.post_id),
    )

    _touch_account(
        conn,
        mutation.creator,
        active_at=mutation.timestamp,
        earned=mutation.reward,
        posts=1,
    )


def on_like_applied(tx: IndexTransaction, mutation: LikeMutation) -> None:
    """Counters for a newly inserted like. Call only after insert_like returned True."""
    conn = tx.conn

    conn.execute(
        "UPDATE posts SET like_count = like_count + 1 WHERE creator = ? AND post_id = ?",
        (mutation.creator, mutation.post_id),
    )

    _touch_account(
        conn,
        mutation.creator,
        active_at=mutation.timestamp,
        earned=mutation.reward,
    )
    _touch_account(
        conn,
        mutation.liker,
        active_at=mutation.timestamp,
        likes_given=1,
    )


@dataclass(frozen=True)
class CounterDrift:
    table: str
    key: str
    column: str
    stored: int
    expected: int


@dataclass
class AuditReport:
    posts_checked: int = 0
    accounts_checked: int = 0
    drift: list[CounterDrift] = field(default_factory=list)
    repaired: bool = False

    @property
    def clean(self) -> bool:
        return not self.drift


_POST_DRIFT_SQL = """
SELECT p.creator, p.post_id, p.like_count AS stored,
       (SELECT COUNT(1) FROM likes l
        WHERE l.creator = p.creator AND l.post_id = p.post_id) AS expected
FROM posts p
""".strip()

_ACCOUNT_DRIFT_SQL = """
SELECT a.address,
       a.post_count, a.like_count_given, a.total_earned,
       (SELECT COUNT(1) FROM posts p WHERE p.creator = a.address) AS exp_posts,
       (SELECT COUNT(1) FROM likes l WHERE l.liker = a.address) AS exp_given
FROM user_accounts a
""".strip()

_REWARDS_SQL = "SELECT creator, reward FROM posts UNION ALL SELECT creator, reward FROM likes"


def _earned_by_address(conn: sqlite3.Connection) -> dict[str, int]:
    earned: dict[str, int] = {}
    for r in conn.execute(_REWARDS_SQL):
        address = str(r["creator"])
        earned[address] = earned.get(address, 0) + decode_amount(r["reward"])
    return earned


def collect_drift(conn: sqlite3.Connection) -> AuditReport:
    """Compare every derived counter with the Post and Like rows, on an open connection."""
    report = AuditReport()

    for r in conn.execute(_POST_DRIFT_SQL).fetchall():
        report.posts_checked += 1
        if int(r["stored"]) != int(r["expected"]):
            report.drift.append(
                CounterDrift(
                    table="posts",
                    key=f"{r['creator']}/{r['post_id']}",
                    column="like_count",
                    stored=int(r["stored"]),
                    expected=int(r["expected"]),
                )
            )

    earned = _earned_by_address(conn)
    for r in conn.execute(_ACCOUNT_DRIFT_SQL).fetchall():
        report.accounts_checked += 1
        address = str(r["address"])
        pairs = (
            ("post_count", int(r["post_count"]), int(r["exp_posts"])),
            ("like_count_given", int(r["like_count_given"]), int(r["exp_given"])),
            ("total_earned", decode_amount(r["total_earned"]), earned.get(address, 0)),
        )
        for column, stored, expected in pairs:
            if stored != expected:
                report.drift.append(
                    CounterDrift(
                        table="user_accounts",
                        key=address,
                        column=column,
                        stored=stored,
                        expected=expected,
                    )
                )
    return report


def _repair(conn: sqlite3.Connection, drift: list[CounterDrift]) -> None:
    conn.execute(
        """
        UPDATE posts SET like_count = (
          SELECT COUNT(1) FROM likes
          WHERE likes.creator = posts.creator AND likes.post_id = posts.post_id
        )
        """.strip()
    )
    conn.execute(
        """
        UPDATE user_accounts SET
          post_count = (SELECT COUNT(1) FROM posts p WHERE p.creator = user_accounts.address),
          like_count_given = (SELECT COUNT(1) FROM likes l WHERE l.liker = user_accounts.address)
        """.strip()
    )
    # Totals earned never move down.
    for d in drift:
        if d.column == "total_earned" and d.expected > d.stored:
            conn.execute(
                "UPDATE user_accounts SET total_earned = ? WHERE address = ?",
                (encode_amount(d.expected), d.key),
            )


def audit(store: SQLiteIndexStore, *, repair: bool = False) -> AuditReport:
    """
    Recompute derived counters from the Post and Like rows and report drift.

    With repair=True the counters are rewritten in the same transaction. Totals
    earned only move up on repair, keeping them non-decreasing.
    """
    if not repair:
        with store.snapshot("audit") as conn:
            return collect_drift(conn)

    with store.transaction("audit_repair") as tx:
        report = collect_drift(tx.conn)
        if report.drift:
            _repair(tx.conn, report.drift)
            report.repaired = True
    return report
