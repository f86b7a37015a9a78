from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from .aggregates import collect_drift
from .config import config_sha256
from .config_schema import AppConfig
from .content_ref import gateway_url
from .errors import ExportError
from .models import Post, UserAccount
from .reconcile import DEFAULT_CHECKPOINT
from .storage import (
    ACCOUNT_COLUMNS,
    POST_COLUMNS,
    SQLiteIndexStore,
    account_from_row,
    post_from_row,
    read_checkpoint,
)
from .storage_schema import schema_version

_EXCEL_FORMULA_PREFIXES = ("=", "+", "-", "@")

SHEETS = ("posts", "leaderboard", "index_metadata")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _safe_excel_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return str(value)
    s = value
    if s.startswith(_EXCEL_FORMULA_PREFIXES):
        return "'" + s
    return s


def _epoch_iso(ts: int) -> str:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat()


def _post_row(post: Post, *, config: AppConfig) -> dict[str, Any]:
    url: str | None = None
    if config.content.scheme == "ipfs":
        url = gateway_url(post.content_ref, gateway=config.content.gateway)

    return {
        "creator": post.creator,
        "post_id": post.post_id,
        "category": post.category,
        "rating": post.rating,
        "like_count": post.like_count,
        "created_at": post.created_at,
        "created_at_utc": _epoch_iso(post.created_at),
        "caption": _safe_excel_text(post.caption),
        "content_ref": _safe_excel_text(post.content_ref),
        "gateway_url": _safe_excel_text(url),
        "metadata_ref": _safe_excel_text(post.metadata_ref),
        "event_key": post.event_key,
    }


def _account_row(rank: int, account: UserAccount) -> dict[str, Any]:
    return {
        "rank": rank,
        "address": account.address,
        "display_name": _safe_excel_text(account.display_name),
        # Token amounts can exceed Excel's numeric precision.
        "total_earned": str(account.total_earned),
        "post_count": account.post_count,
        "like_count_given": account.like_count_given,
        "last_active": account.last_active,
        "last_active_utc": _epoch_iso(account.last_active) if account.last_active else None,
        "avatar_ref": _safe_excel_text(account.avatar_ref),
    }


def export_index_workbook(
    config: AppConfig,
    store: SQLiteIndexStore,
    out_path: str | Path,
    *,
    checkpoint: str = DEFAULT_CHECKPOINT,
) -> Path:
    """
    Write a point-in-time snapshot of the index to an .xlsx workbook.

    Sheets: posts (newest first), leaderboard (all accounts, ranked), and
    index_metadata (counts, checkpoint, audit result, and the config used).
    """
    try:
        import pandas as pd  # type: ignore[import-not-found]
    except Exception as e:
        raise ExportError("pandas is required for Excel export") from e

    out = Path(out_path)
    out.parent.mkdir(parents=True, exist_ok=True)

    with store.snapshot("export") as conn:
        post_rows = conn.execute(
            f"SELECT {POST_COLUMNS} FROM posts ORDER BY created_at DESC, event_key DESC"
        ).fetchall()
        account_rows = conn.execute(
            f"SELECT {ACCOUNT_COLUMNS} FROM user_accounts ORDER BY total_earned DESC, address ASC"
        ).fetchall()
        like_total = int(conn.execute("SELECT COUNT(1) FROM likes").fetchone()[0])
        processed_total = int(conn.execute("SELECT COUNT(1) FROM processed_events").fetchone()[0])
        duplicate_total = int(
            conn.execute(
                "SELECT COUNT(1) FROM processed_events WHERE outcome = 'duplicate'"
            ).fetchone()[0]
        )
        version = schema_version(conn)
        checkpoint_event = read_checkpoint(conn, checkpoint)
        report = collect_drift(conn)

    posts = [_post_row(post_from_row(r), config=config) for r in post_rows]
    accounts = [_account_row(i, account_from_row(r)) for i, r in enumerate(account_rows, start=1)]

    config_yaml = yaml.safe_dump(
        config.model_dump(mode="json"),
        sort_keys=True,
        allow_unicode=True,
    )

    meta_rows: list[dict[str, Any]] = [
        {"key": "exported_at_utc", "value": _utc_now_iso()},
        {"key": "sqlite_schema_version", "value": version},
        {"key": "counts.posts", "value": len(posts)},
        {"key": "counts.likes", "value": like_total},
        {"key": "counts.accounts", "value": len(accounts)},
        {"key": "counts.processed_events", "value": processed_total},
        {"key": "counts.duplicate_events", "value": duplicate_total},
        {"key": "reconcile.checkpoint_name", "value": checkpoint},
        {"key": "reconcile.checkpoint_event", "value": checkpoint_event},
        {"key": "audit.drift", "value": len(report.drift)},
        {"key": "config_hash", "value": config_sha256(config)},
        {"key": "config_yaml", "value": _safe_excel_text(config_yaml)},
        {"key": "output_path", "value": _safe_excel_text(str(out))},
    ]

    df_posts = pd.DataFrame(posts, columns=list(_post_columns()))
    df_board = pd.DataFrame(accounts, columns=list(_account_columns()))
    df_meta = pd.DataFrame(meta_rows)

    try:
        with pd.ExcelWriter(out, engine="openpyxl") as writer:
            df_posts.to_excel(writer, sheet_name="posts", index=False)
            df_board.to_excel(writer, sheet_name="leaderboard", index=False)
            df_meta.to_excel(writer, sheet_name="index_metadata", index=False)

            wb = writer.book
            for name in SHEETS:
                if name in wb.sheetnames:
                    wb[name].freeze_panes = "A2"
    except Exception as e:
        raise ExportError(f"Failed to write workbook: {out}: {e}") from e

    return out


def _post_columns() -> tuple[str, ...]:
    return (
        "creator",
        "post_id",
        "category",
        "rating",
        "like_count",
        "created_at",
        "created_at_utc",
        "caption",
        "content_ref",
        "gateway_url",
        "metadata_ref",
        "event_key",
    )


def _account_columns() -> tuple[str, ...]:
    return (
        "rank",
        "address",
        "display_name",
        "total_earned",
        "post_count",
        "like_count_given",
        "last_active",
        "last_active_utc",
        "avatar_ref",
    )
