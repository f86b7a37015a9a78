from __future__ import annotations

import sqlite3
import threading
import uuid
import weakref
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .errors import StoreUnavailable, WriteConflict
from .models import LikeMutation, Post, PostMutation, UserAccount
from .storage_schema import configure_connection, initialize_sqlite

_CONFLICT_MARKERS = ("locked", "busy")

# Token amounts are stored as fixed-width decimal text. SQLite integers stop at
# 2**63-1, and zero padding keeps text order equal to numeric order.
AMOUNT_DIGITS = 80
ZERO_AMOUNT = "0" * AMOUNT_DIGITS


def encode_amount(value: int) -> str:
    if value < 0:
        raise ValueError(f"amount must be >= 0 (got {value})")
    text = str(int(value))
    if len(text) > AMOUNT_DIGITS:
        raise ValueError(f"amount exceeds {AMOUNT_DIGITS} digits")
    return text.zfill(AMOUNT_DIGITS)


def decode_amount(text: str | int | None) -> int:
    return int(text) if text is not None else 0


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def map_db_error(exc: sqlite3.Error, action: str) -> Exception:
    """Translate a sqlite3 error into WriteConflict (retryable) or StoreUnavailable."""
    msg = (str(exc) or "").strip()
    if isinstance(exc, sqlite3.OperationalError) and any(m in msg.casefold() for m in _CONFLICT_MARKERS):
        return WriteConflict(f"{action}: {msg}")
    return StoreUnavailable(f"{action}: {msg}")


POST_COLUMNS = (
    "creator, post_id, content_ref, caption, category, rating, metadata_ref, "
    "created_at, like_count, event_key"
)

ACCOUNT_COLUMNS = (
    "address, total_earned, post_count, like_count_given, last_active, display_name, avatar_ref"
)


def post_from_row(row: sqlite3.Row) -> Post:
    return Post(
        creator=str(row["creator"]),
        post_id=int(row["post_id"]),
        content_ref=str(row["content_ref"]),
        caption=str(row["caption"]),
        category=str(row["category"]),
        rating=int(row["rating"]) if row["rating"] is not None else None,
        metadata_ref=str(row["metadata_ref"]) if row["metadata_ref"] is not None else None,
        created_at=int(row["created_at"]),
        like_count=int(row["like_count"]),
        event_key=str(row["event_key"]),
    )


def account_from_row(row: sqlite3.Row) -> UserAccount:
    return UserAccount(
        address=str(row["address"]),
        total_earned=decode_amount(row["total_earned"]),
        post_count=int(row["post_count"]),
        like_count_given=int(row["like_count_given"]),
        last_active=int(row["last_active"]),
        display_name=str(row["display_name"]) if row["display_name"] is not None else None,
        avatar_ref=str(row["avatar_ref"]) if row["avatar_ref"] is not None else None,
    )


def read_checkpoint(conn: sqlite3.Connection, name: str) -> str | None:
    row = conn.execute("SELECT event_key FROM reconcile_checkpoints WHERE name = ?", (name,)).fetchone()
    return str(row["event_key"]) if row is not None else None


class IndexTransaction:
    """
    Record-level writes inside one open write transaction.

    Every method runs on the transaction's connection, so the processed-event marker,
    the Post/Like rows, and the counters commit or roll back together.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def claim_event(self, event_key: str, kind: str) -> bool:
        """Mark event_key as processed. Returns False if it already was."""
        cur = self._conn.execute(
            """
            INSERT OR IGNORE INTO processed_events(event_key, kind, outcome, processed_at)
            VALUES (?, ?, 'applied', ?)
            """.strip(),
            (event_key, kind, _utc_now_iso()),
        )
        return cur.rowcount == 1

    def mark_duplicate(self, event_key: str) -> None:
        self._conn.execute(
            "UPDATE processed_events SET outcome = 'duplicate' WHERE event_key = ?",
            (event_key,),
        )

    def insert_post(self, mutation: PostMutation, *, event_key: str) -> bool:
        """Insert a post row. Returns False if (creator, post_id) already exists."""
        cur = self._conn.execute(
            """
            INSERT OR IGNORE INTO posts(
              creator, post_id, content_ref, caption, category, rating,
              metadata_ref, reward, created_at, like_count, event_key
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            """.strip(),
            (
                mutation.creator,
                mutation.post_id,
                mutation.content_ref,
                mutation.caption,
                mutation.category,
                mutation.rating,
                mutation.metadata_ref,
                encode_amount(mutation.reward),
                mutation.timestamp,
                event_key,
            ),
        )
        return cur.rowcount == 1

    def insert_like(self, mutation: LikeMutation, *, event_key: str) -> bool:
        """Insert a like row. Returns False if (post, liker) already has one."""
        cur = self._conn.execute(
            """
            INSERT OR IGNORE INTO likes(creator, post_id, liker, reward, created_at, event_key)
            VALUES (?, ?, ?, ?, ?, ?)
            """.strip(),
            (
                mutation.creator,
                mutation.post_id,
                mutation.liker,
                encode_amount(mutation.reward),
                mutation.timestamp,
                event_key,
            ),
        )
        return cur.rowcount == 1

    def upsert_profile(
        self,
        address: str,
        *,
        display_name: str | None,
        avatar_ref: str | None,
        set_display_name: bool,
        set_avatar_ref: bool,
        active_at: int,
    ) -> None:
        self._conn.execute(
            """
            INSERT INTO user_accounts(
              address, total_earned, last_active, display_name, avatar_ref, created_at
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(address) DO UPDATE SET
              display_name = CASE WHEN ? THEN excluded.display_name ELSE display_name END,
              avatar_ref = CASE WHEN ? THEN excluded.avatar_ref ELSE avatar_ref END,
              last_active = MAX(last_active, excluded.last_active)
            """.strip(),
            (
                address,
                ZERO_AMOUNT,
                int(active_at),
                display_name,
                avatar_ref,
                _utc_now_iso(),
                1 if set_display_name else 0,
                1 if set_avatar_ref else 0,
            ),
        )

    def set_checkpoint(self, name: str, event_key: str) -> None:
        self._conn.execute(
            """
            INSERT INTO reconcile_checkpoints(name, event_key, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              event_key = excluded.event_key,
              updated_at = excluded.updated_at
            """.strip(),
            (name, event_key, _utc_now_iso()),
        )


class _ThreadConnection:
    """Per-thread holder; its finalizer closes the connection when the thread exits."""

    __slots__ = ("conn", "__weakref__")

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn


def _release(conn: sqlite3.Connection, open_conns: set[sqlite3.Connection], lock: threading.Lock) -> None:
    with lock:
        open_conns.discard(conn)
    conn.close()


class SQLiteIndexStore:
    """
    SQLite-backed read index of ledger-confirmed posts, likes, and accounts.

    Each thread gets its own connection, closed again when that thread exits.
    Writes go through transaction(), which takes the database write lock up front
    (BEGIN IMMEDIATE); reads go through snapshot(), which sees only committed state.
    """

    def __init__(self, target: str, *, uri: bool = False, busy_timeout_ms: int = 5000) -> None:
        self._target = target
        self._uri = bool(uri)
        self._busy_timeout_ms = int(busy_timeout_ms)
        self._local = threading.local()
        self._open: set[sqlite3.Connection] = set()
        self._open_lock = threading.Lock()
        self._closed = False

    @classmethod
    def open(cls, path: str | Path, *, busy_timeout_ms: int = 5000) -> "SQLiteIndexStore":
        db_path = str(path)
        if db_path == ":memory:":
            # A named shared-cache database lets every thread's connection see the same data.
            store = cls(
                f"file:taste_index_{uuid.uuid4().hex}?mode=memory&cache=shared",
                uri=True,
                busy_timeout_ms=busy_timeout_ms,
            )
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            store = cls(db_path, busy_timeout_ms=busy_timeout_ms)

        try:
            conn = store._connect()
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn, busy_timeout_ms=busy_timeout_ms)
        except Exception as e:
            store.close()
            raise StoreUnavailable(f"Failed to initialize sqlite schema: {e}") from e

        # The opening connection lives until close(); an in-memory database
        # disappears once its last connection is gone.
        store._local.holder = _ThreadConnection(conn)
        return store

    def _connect(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreUnavailable("Index store is closed")
        conn = sqlite3.connect(
            self._target,
            uri=self._uri,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        with self._open_lock:
            self._open.add(conn)
        return conn

    def _connection(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreUnavailable("Index store is closed")
        holder = getattr(self._local, "holder", None)
        if holder is not None:
            return holder.conn
        try:
            conn = self._connect()
            configure_connection(conn, busy_timeout_ms=self._busy_timeout_ms)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Failed to open sqlite connection: {e}") from e

        holder = _ThreadConnection(conn)
        weakref.finalize(holder, _release, conn, self._open, self._open_lock)
        self._local.holder = holder
        return conn

    def open_connections(self) -> int:
        with self._open_lock:
            return len(self._open)

    def close(self) -> None:
        self._closed = True
        with self._open_lock:
            conns = list(self._open)
            self._open.clear()
        for conn in conns:
            conn.close()

    def __enter__(self) -> "SQLiteIndexStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @contextmanager
    def transaction(self, action: str = "write") -> Iterator[IndexTransaction]:
        """
        Run a block as one atomic write.

        Any exception rolls the whole block back; sqlite3 errors are re-raised as
        WriteConflict or StoreUnavailable.
        """
        conn = self._connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise map_db_error(e, action) from e

        try:
            yield IndexTransaction(conn)
        except sqlite3.Error as e:
            self._rollback(conn)
            raise map_db_error(e, action) from e
        except BaseException:
            self._rollback(conn)
            raise

        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback(conn)
            raise map_db_error(e, action) from e

    @contextmanager
    def snapshot(self, action: str = "read") -> Iterator[sqlite3.Connection]:
        """Run several reads against one consistent, committed view."""
        conn = self._connection()
        try:
            conn.execute("BEGIN")
        except sqlite3.Error as e:
            raise map_db_error(e, action) from e

        try:
            yield conn
        except sqlite3.Error as e:
            self._rollback(conn)
            raise map_db_error(e, action) from e
        except BaseException:
            self._rollback(conn)
            raise

        try:
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback(conn)
            raise map_db_error(e, action) from e

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def _fetch_one(self, sql: str, params: tuple[Any, ...], *, action: str) -> sqlite3.Row | None:
        with self.snapshot(action) as conn:
            return conn.execute(sql, params).fetchone()

    def _count(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        row = self._fetch_one(sql, params, action="count")
        return int(row[0]) if row is not None else 0

    def get_post(self, creator: str, post_id: int) -> Post | None:
        row = self._fetch_one(
            f"SELECT {POST_COLUMNS} FROM posts WHERE creator = ? AND post_id = ?",
            (creator, int(post_id)),
            action="get_post",
        )
        return post_from_row(row) if row is not None else None

    def get_account(self, address: str) -> UserAccount | None:
        row = self._fetch_one(
            f"SELECT {ACCOUNT_COLUMNS} FROM user_accounts WHERE address = ?",
            (address,),
            action="get_account",
        )
        return account_from_row(row) if row is not None else None

    def has_like(self, creator: str, post_id: int, liker: str) -> bool:
        row = self._fetch_one(
            "SELECT 1 FROM likes WHERE creator = ? AND post_id = ? AND liker = ?",
            (creator, int(post_id), liker),
            action="has_like",
        )
        return row is not None

    def is_processed(self, event_key: str) -> bool:
        row = self._fetch_one(
            "SELECT 1 FROM processed_events WHERE event_key = ?",
            (event_key,),
            action="is_processed",
        )
        return row is not None

    def get_checkpoint(self, name: str) -> str | None:
        with self.snapshot("get_checkpoint") as conn:
            return read_checkpoint(conn, name)

    def post_count(self) -> int:
        return self._count("SELECT COUNT(1) FROM posts")

    def like_count(self) -> int:
        return self._count("SELECT COUNT(1) FROM likes")

    def account_count(self) -> int:
        return self._count("SELECT COUNT(1) FROM user_accounts")

    def processed_count(self) -> int:
        return self._count("SELECT COUNT(1) FROM processed_events")
