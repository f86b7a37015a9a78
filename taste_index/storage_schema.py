from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

SCHEMA_VERSION = 1


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def initialize_sqlite(conn: sqlite3.Connection, *, busy_timeout_ms: int = 5000) -> None:
    """
    Configure a connection and bring the schema up to date.

    This function is idempotent: it can be called on every startup.
    """
    configure_connection(conn, busy_timeout_ms=busy_timeout_ms)
    _apply_migrations(conn)


def configure_connection(conn: sqlite3.Connection, *, busy_timeout_ms: int = 5000) -> None:
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")

    # WAL gives readers a stable snapshot while a writer holds the lock.
    # In-memory databases keep their own journal mode.
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
    except sqlite3.DatabaseError:
        pass


_MIGRATIONS: dict[int, str] = {
    1: """
CREATE TABLE IF NOT EXISTS schema_migrations (
  version INTEGER PRIMARY KEY,
  applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS processed_events (
  event_key TEXT PRIMARY KEY,
  kind TEXT NOT NULL,
  outcome TEXT NOT NULL CHECK (outcome IN ('applied', 'duplicate')),
  processed_at TEXT NOT NULL
);

-- reward and total_earned hold zero-padded decimal text; see storage.encode_amount.
CREATE TABLE IF NOT EXISTS posts (
  creator TEXT NOT NULL,
  post_id INTEGER NOT NULL,
  content_ref TEXT NOT NULL,
  caption TEXT NOT NULL,
  category TEXT NOT NULL,
  rating INTEGER,
  metadata_ref TEXT,
  reward TEXT NOT NULL,
  created_at INTEGER NOT NULL,
  like_count INTEGER NOT NULL DEFAULT 0 CHECK (like_count >= 0),
  event_key TEXT NOT NULL UNIQUE,
  PRIMARY KEY (creator, post_id)
);

CREATE INDEX IF NOT EXISTS idx_posts_category_created
  ON posts(category, created_at DESC, event_key DESC);

CREATE INDEX IF NOT EXISTS idx_posts_creator_created
  ON posts(creator, created_at DESC, event_key DESC);

CREATE INDEX IF NOT EXISTS idx_posts_created
  ON posts(created_at DESC, event_key DESC);

CREATE TABLE IF NOT EXISTS likes (
  creator TEXT NOT NULL,
  post_id INTEGER NOT NULL,
  liker TEXT NOT NULL,
  reward TEXT NOT NULL,
  created_at INTEGER NOT NULL,
  event_key TEXT NOT NULL UNIQUE,
  PRIMARY KEY (creator, post_id, liker),
  CHECK (liker <> creator)
);

CREATE INDEX IF NOT EXISTS idx_likes_liker
  ON likes(liker);

CREATE TABLE IF NOT EXISTS user_accounts (
  address TEXT PRIMARY KEY,
  total_earned TEXT NOT NULL,
  post_count INTEGER NOT NULL DEFAULT 0 CHECK (post_count >= 0),
  like_count_given INTEGER NOT NULL DEFAULT 0 CHECK (like_count_given >= 0),
  last_active INTEGER NOT NULL DEFAULT 0,
  display_name TEXT,
  avatar_ref TEXT,
  created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_user_accounts_earned
  ON user_accounts(total_earned DESC, address ASC);

CREATE INDEX IF NOT EXISTS idx_user_accounts_last_active
  ON user_accounts(last_active);

CREATE TABLE IF NOT EXISTS reconcile_checkpoints (
  name TEXT PRIMARY KEY,
  event_key TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
""".strip()
}


def schema_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
    return int(row[0]) if row is not None and row[0] is not None else 0


def _apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
    )

    current = schema_version(conn)
    if current > SCHEMA_VERSION:
        raise RuntimeError(
            f"Index schema version {current} is newer than this build supports ({SCHEMA_VERSION})"
        )

    for version in range(current + 1, SCHEMA_VERSION + 1):
        script = _MIGRATIONS.get(version)
        if not script:
            raise RuntimeError(f"Missing migration script for version={version}")

        # executescript commits any open transaction first, so the migration carries
        # its own BEGIN/COMMIT. Two processes opening a fresh file serialize on it.
        try:
            conn.executescript(
                "BEGIN IMMEDIATE;\n"
                f"{script}\n"
                "INSERT OR IGNORE INTO schema_migrations(version, applied_at) "
                f"VALUES ({int(version)}, '{_utc_now_iso()}');\n"
                "COMMIT;"
            )
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
