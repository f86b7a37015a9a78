from __future__ import annotations

from pathlib import Path

from .config import retry_config
from .config_schema import AppConfig
from .ingest import EventIngestor
from .ledger import LedgerClient
from .query import QueryEngine
from .reconcile import DEFAULT_CHECKPOINT, Reconciler
from .run_log import RunLogger
from .storage import SQLiteIndexStore
from .writer import IndexWriter


class TasteIndex:
    """Store, writer, ingestor, and query engine wired from one AppConfig."""

    def __init__(
        self,
        store: SQLiteIndexStore,
        config: AppConfig | None = None,
        *,
        logger: RunLogger | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.store = store
        self.logger = logger
        self.retry = retry_config(self.config)
        self.writer = IndexWriter(
            store,
            retry=self.retry,
            logger=logger,
            content_scheme=self.config.content.scheme,
            max_display_name_chars=self.config.profiles.max_display_name_chars,
        )
        self.ingestor = EventIngestor(self.writer, self.config, logger=logger)
        self.queries = QueryEngine(store, self.config)

    @classmethod
    def open(
        cls,
        config: AppConfig | None = None,
        *,
        db_path: str | Path | None = None,
        logger: RunLogger | None = None,
    ) -> "TasteIndex":
        cfg = config or AppConfig()
        path = db_path if db_path is not None else cfg.store.path
        store = SQLiteIndexStore.open(path, busy_timeout_ms=cfg.store.busy_timeout_ms)
        return cls(store, cfg, logger=logger)

    def reconciler(self, ledger: LedgerClient, *, checkpoint: str = DEFAULT_CHECKPOINT) -> Reconciler:
        return Reconciler(
            ledger,
            self.ingestor,
            self.store,
            checkpoint=checkpoint,
            retry=self.retry,
            logger=self.logger,
        )

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "TasteIndex":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()
