from __future__ import annotations

import argparse
import json
import platform
import sys
from dataclasses import asdict
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Sequence

from .aggregates import audit
from .config import config_sha256, load_config
from .errors import ConfigError, TasteIndexError, user_facing_status
from .export_excel import export_index_workbook
from .index import TasteIndex
from .ledger import JsonlLedgerFeed
from .models import EventId
from .run_log import RunLogger


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--config",
        required=True,
        help="Path to YAML config file.",
    )
    p.add_argument(
        "--db",
        default=None,
        help="SQLite index path (overrides store.path).",
    )
    p.add_argument(
        "--log",
        default=None,
        help="Append JSONL run log records to this file.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="taste_index")

    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Apply ledger facts from a JSONL export.")
    _add_common(ingest)
    ingest.add_argument("--facts", required=True, help="JSONL file of ledger facts.")
    ingest.set_defaults(_handler=_cmd_ingest)

    rec = subparsers.add_parser(
        "reconcile",
        help="Replay ledger facts after a checkpoint and report what was repaired.",
    )
    _add_common(rec)
    rec.add_argument("--facts", required=True, help="JSONL file of ledger facts.")
    rec.add_argument(
        "--since",
        default=None,
        help="Event id '<transaction_id>:<log_index>' to start after (default: stored checkpoint).",
    )
    rec.set_defaults(_handler=_cmd_reconcile)

    feed = subparsers.add_parser("feed", help="List posts newest first.")
    _add_common(feed)
    feed.add_argument("--category", default=None, help="Only this category (default: all).")
    feed.add_argument("--limit", type=int, default=20)
    feed.set_defaults(_handler=_cmd_feed)

    creator = subparsers.add_parser("creator", help="List all posts by one address.")
    _add_common(creator)
    creator.add_argument("--address", required=True)
    creator.set_defaults(_handler=_cmd_creator)

    board = subparsers.add_parser("leaderboard", help="Top earners.")
    _add_common(board)
    board.add_argument("--limit", type=int, default=None)
    board.add_argument("--window", choices=("all", "recent"), default="all")
    board.set_defaults(_handler=_cmd_leaderboard)

    profile = subparsers.add_parser("profile", help="Show or edit a profile.")
    _add_common(profile)
    profile.add_argument("--address", required=True)
    profile.add_argument("--display-name", default=None, help="Set the display name.")
    profile.add_argument("--avatar", default=None, help="Set the avatar content reference.")
    profile.set_defaults(_handler=_cmd_profile)

    aud = subparsers.add_parser("audit", help="Check derived counters against records.")
    _add_common(aud)
    aud.add_argument("--repair", action="store_true", help="Rewrite drifted counters.")
    aud.set_defaults(_handler=_cmd_audit)

    exp = subparsers.add_parser("export", help="Write an .xlsx snapshot of the index.")
    _add_common(exp)
    exp.add_argument("--out", required=True, help="Output workbook path.")
    exp.set_defaults(_handler=_cmd_export)

    return parser


def _pkg_version(name: str) -> str:
    try:
        return version(name)
    except PackageNotFoundError:
        return "unknown"


def _versions() -> dict[str, str]:
    return {
        "python": platform.python_version(),
        "taste-index": _pkg_version("taste-index"),
        "pydantic": _pkg_version("pydantic"),
        "PyYAML": _pkg_version("PyYAML"),
        "pandas": _pkg_version("pandas"),
        "openpyxl": _pkg_version("openpyxl"),
    }


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _print_records(records: Sequence[Any]) -> None:
    for rec in records:
        print(json.dumps(asdict(rec), ensure_ascii=False, sort_keys=True))


def _run(args: argparse.Namespace, fn: Any) -> int:
    root = RunLogger.open(args.log) if args.log else None
    log = root.bind(command=args.command) if root is not None else None
    try:
        if log is not None:
            log.info("command_started", config_path=str(args.config))
        try:
            cfg = load_config(args.config)
        except ConfigError as e:
            if log is not None:
                log.error("config_error", error=str(e))
            raise

        if log is not None:
            log.info("config_loaded", config_hash=config_sha256(cfg), versions=_versions())

        with TasteIndex.open(cfg, db_path=args.db, logger=log) as index:
            try:
                return int(fn(index, args))
            except Exception as e:
                if log is not None:
                    log.exception("command_failed", exc=e)
                raise
    finally:
        if root is not None:
            root.close()


def _cmd_ingest(args: argparse.Namespace) -> int:
    def _go(index: TasteIndex, a: argparse.Namespace) -> int:
        report = index.ingestor.ingest_many(JsonlLedgerFeed(a.facts))
        print(f"applied={report.applied}")
        print(f"already_applied={report.already_applied}")
        print(f"rejected={report.rejected}")
        print(f"last_event_id={report.last_event_id or ''}")
        return 0

    return _run(args, _go)


def _cmd_reconcile(args: argparse.Namespace) -> int:
    def _go(index: TasteIndex, a: argparse.Namespace) -> int:
        since = EventId.parse(a.since) if a.since else None
        report = index.reconciler(JsonlLedgerFeed(a.facts)).reconcile(since)
        print(f"applied={report.applied}")
        print(f"already_applied={report.already_applied}")
        print(f"rejected={report.rejected}")
        print(f"started_after={report.started_after or ''}")
        print(f"last_event_id={report.last_event_id or ''}")
        return 0

    return _run(args, _go)


def _cmd_feed(args: argparse.Namespace) -> int:
    def _go(index: TasteIndex, a: argparse.Namespace) -> int:
        if a.category:
            posts = index.queries.list_by_category(a.category, a.limit)
        else:
            posts = index.queries.list_recent(a.limit)
        _print_records(posts)
        return 0

    return _run(args, _go)


def _cmd_creator(args: argparse.Namespace) -> int:
    def _go(index: TasteIndex, a: argparse.Namespace) -> int:
        _print_records(index.queries.list_by_creator(a.address))
        return 0

    return _run(args, _go)


def _cmd_leaderboard(args: argparse.Namespace) -> int:
    def _go(index: TasteIndex, a: argparse.Namespace) -> int:
        _print_records(index.queries.leaderboard(a.limit, a.window))
        return 0

    return _run(args, _go)


def _cmd_profile(args: argparse.Namespace) -> int:
    def _go(index: TasteIndex, a: argparse.Namespace) -> int:
        edits: dict[str, Any] = {}
        if a.display_name is not None:
            edits["display_name"] = a.display_name
        if a.avatar is not None:
            edits["avatar_ref"] = a.avatar
        if edits:
            index.writer.update_profile(a.address, **edits)

        account = index.queries.get_profile(a.address)
        if account is None:
            print("profile=")
            return 0
        _print_records([account])
        return 0

    return _run(args, _go)


def _cmd_audit(args: argparse.Namespace) -> int:
    def _go(index: TasteIndex, a: argparse.Namespace) -> int:
        report = audit(index.store, repair=bool(a.repair))
        print(f"posts_checked={report.posts_checked}")
        print(f"accounts_checked={report.accounts_checked}")
        print(f"drift={len(report.drift)}")
        print(f"repaired={str(report.repaired).lower()}")
        for d in report.drift:
            print(json.dumps(asdict(d), ensure_ascii=False, sort_keys=True))
        return 0 if report.clean or report.repaired else 5

    return _run(args, _go)


def _cmd_export(args: argparse.Namespace) -> int:
    def _go(index: TasteIndex, a: argparse.Namespace) -> int:
        out = export_index_workbook(index.config, index.store, a.out)
        if index.logger is not None:
            index.logger.info("export_completed", path=str(out))
        print(f"workbook={out}")
        return 0

    return _run(args, _go)


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except TasteIndexError as e:
        _eprint(f"{e} (status={user_facing_status(e)})")
        return 3
    except (ValueError, FileNotFoundError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
