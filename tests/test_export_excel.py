from __future__ import annotations

import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from taste_index.aggregates import AuditReport, collect_drift
from taste_index.config_schema import AppConfig
from taste_index.export_excel import export_index_workbook
from taste_index.index import TasteIndex
from taste_index.models import EventId, PostLiked, PostMinted

_CID = "QmYwAPJzv5CZsnA625s3Xf2nemtYgPpHdWEz79ojWnPbdG"


class TestExportExcel(unittest.TestCase):
    def test_exports_required_sheets(self) -> None:
        try:
            from openpyxl import load_workbook  # type: ignore[import-not-found]
        except Exception as e:  # pragma: no cover
            raise AssertionError("openpyxl is required for this test") from e

        cfg = AppConfig()

        with tempfile.TemporaryDirectory() as td:
            out_path = Path(td) / "index.xlsx"

            with TasteIndex.open(cfg, db_path=":memory:") as index:
                index.ingestor.ingest(
                    PostMinted(
                        EventId("tx1", 0),
                        "alice",
                        1,
                        f"ipfs://{_CID}",
                        "cook",
                        1700000000,
                        caption="=SUM(A1:A2)",
                        reward=5,
                    )
                )
                index.ingestor.ingest(PostLiked(EventId("tx2", 0), 1, "bob", "alice", 1700000100, reward=1))

                with index.store.transaction() as tx:
                    tx.set_checkpoint("ledger", "tx2:0")

                export_index_workbook(cfg, index.store, out_path)

            self.assertTrue(out_path.exists())

            wb = load_workbook(out_path)
            for name in ("posts", "leaderboard", "index_metadata"):
                self.assertIn(name, wb.sheetnames)

            rows = list(wb["posts"].iter_rows(values_only=True))
            header = [str(v) for v in rows[0]]
            self.assertEqual(len(rows), 2)
            post = dict(zip(header, rows[1]))
            self.assertEqual(post["creator"], "alice")
            self.assertEqual(post["like_count"], 1)
            self.assertEqual(post["gateway_url"], f"https://gateway.pinata.cloud/ipfs/{_CID}")
            # Captions are never written as live formulas.
            self.assertEqual(post["caption"], "'=SUM(A1:A2)")

            board = list(wb["leaderboard"].iter_rows(values_only=True))
            board_header = [str(v) for v in board[0]]
            first = dict(zip(board_header, board[1]))
            self.assertEqual(first["address"], "alice")
            self.assertEqual(str(first["total_earned"]), "6")

            meta = {
                str(k): v
                for k, v in list(wb["index_metadata"].iter_rows(values_only=True))[1:]
            }
            self.assertEqual(meta["counts.posts"], 1)
            self.assertEqual(meta["counts.likes"], 1)
            self.assertEqual(meta["reconcile.checkpoint_event"], "tx2:0")
            self.assertEqual(meta["audit.drift"], 0)

    def test_metadata_is_read_inside_the_export_snapshot(self) -> None:
        cfg = AppConfig()
        seen: list[bool] = []

        def _collect(conn: sqlite3.Connection) -> AuditReport:
            seen.append(conn.in_transaction)
            return collect_drift(conn)

        with tempfile.TemporaryDirectory() as td:
            with TasteIndex.open(cfg, db_path=":memory:") as index:
                with index.store.transaction() as tx:
                    tx.set_checkpoint("ledger", "tx9:0")

                with patch("taste_index.export_excel.collect_drift", side_effect=_collect), patch.object(
                    index.store, "get_checkpoint", side_effect=AssertionError("read outside snapshot")
                ):
                    export_index_workbook(cfg, index.store, Path(td) / "index.xlsx")

        self.assertEqual(seen, [True])


if __name__ == "__main__":
    unittest.main()
