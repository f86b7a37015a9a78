from __future__ import annotations

import time
from typing import Any, Literal

from .config_schema import AppConfig
from .errors import InvalidArgument
from .models import PageCursor, Post, UserAccount
from .normalize import normalize_address, normalize_category
from .storage import ACCOUNT_COLUMNS, POST_COLUMNS, SQLiteIndexStore, account_from_row, post_from_row

Window = Literal["all", "recent"]

# Feed order: newest first, event key breaks timestamp ties.
_FEED_ORDER = "ORDER BY created_at DESC, event_key DESC"
_BEFORE = "(created_at < ? OR (created_at = ? AND event_key < ?))"


def _check_limit(limit: int) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise InvalidArgument(f"limit must be a positive integer (got {limit!r})")
    return limit


def _address(value: str) -> str:
    try:
        return normalize_address(value)
    except ValueError as e:
        raise InvalidArgument(str(e)) from e


class QueryEngine:
    """Read-only feed, profile, and leaderboard queries over the index."""

    def __init__(self, store: SQLiteIndexStore, config: AppConfig | None = None) -> None:
        self._store = store
        self._config = config or AppConfig()

    def _posts(self, where: list[str], params: list[Any], limit: int | None) -> list[Post]:
        sql = f"SELECT {POST_COLUMNS} FROM posts"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " " + _FEED_ORDER
        if limit is not None:
            sql += " LIMIT ?"
            params = params + [int(limit)]

        with self._store.snapshot("list_posts") as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [post_from_row(r) for r in rows]

    @staticmethod
    def _page(where: list[str], params: list[Any], before: PageCursor | None) -> None:
        if before is None:
            return
        where.append(_BEFORE)
        params.extend([int(before.created_at), int(before.created_at), before.event_key])

    def list_by_category(
        self,
        category: str,
        limit: int,
        *,
        before: PageCursor | None = None,
    ) -> list[Post]:
        try:
            cat = normalize_category(category, allowed=self._config.posts.categories)
        except ValueError as e:
            raise InvalidArgument(str(e)) from e
        where = ["category = ?"]
        params: list[Any] = [cat]
        self._page(where, params, before)
        return self._posts(where, params, _check_limit(limit))

    def list_recent(self, limit: int, *, before: PageCursor | None = None) -> list[Post]:
        where: list[str] = []
        params: list[Any] = []
        self._page(where, params, before)
        return self._posts(where, params, _check_limit(limit))

    def list_by_creator(self, address: str) -> list[Post]:
        return self._posts(["creator = ?"], [_address(address)], None)

    def get_post(self, creator: str, post_id: int) -> Post | None:
        return self._store.get_post(_address(creator), int(post_id))

    def get_profile(self, address: str) -> UserAccount | None:
        return self._store.get_account(_address(address))

    def leaderboard(
        self,
        limit: int | None = None,
        window: Window = "all",
        *,
        now: int | None = None,
    ) -> list[UserAccount]:
        """
        Accounts by total earned, highest first; ties go to the lower address.

        window="recent" keeps only accounts active within leaderboard.recent_window_seconds
        of now.
        """
        n = _check_limit(limit if limit is not None else self._config.leaderboard.default_limit)

        sql = f"SELECT {ACCOUNT_COLUMNS} FROM user_accounts"
        params: list[Any] = []
        if window == "recent":
            current = int(now) if now is not None else int(time.time())
            sql += " WHERE last_active >= ?"
            params.append(current - int(self._config.leaderboard.recent_window_seconds))
        elif window != "all":
            raise InvalidArgument(f"window must be 'all' or 'recent' (got {window!r})")

        sql += " ORDER BY total_earned DESC, address ASC LIMIT ?"
        params.append(n)

        with self._store.snapshot("leaderboard") as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [account_from_row(r) for r in rows]
