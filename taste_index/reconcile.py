from __future__ import annotations

from dataclasses import dataclass

from .errors import VALIDATION_ERRORS
from .ingest import EventIngestor
from .ledger import LedgerClient, RejectedRecord
from .models import ApplyOutcome, EventId
from .retry import RetryConfig, call_with_retries
from .run_log import RunLogger
from .storage import SQLiteIndexStore

DEFAULT_CHECKPOINT = "ledger"


@dataclass(frozen=True)
class RepairReport:
    applied: int
    already_applied: int
    rejected: int
    started_after: str | None
    last_event_id: str | None

    @property
    def total(self) -> int:
        return self.applied + self.already_applied + self.rejected


class Reconciler:
    """
    Replays ledger facts through the ingest path to heal index drift.

    Progress is checkpointed after every fact, so an interrupted run can be resumed
    with reconcile() and continues where the last one stopped. Replaying a fact that
    is already in the index is a no-op.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        ingestor: EventIngestor,
        store: SQLiteIndexStore,
        *,
        checkpoint: str = DEFAULT_CHECKPOINT,
        retry: RetryConfig | None = None,
        logger: RunLogger | None = None,
    ) -> None:
        self._ledger = ledger
        self._ingestor = ingestor
        self._store = store
        self._checkpoint = (checkpoint or "").strip() or DEFAULT_CHECKPOINT
        self._retry = retry or RetryConfig()
        self._logger = logger.bind(checkpoint=self._checkpoint) if logger is not None else None

    def checkpoint(self) -> EventId | None:
        key = self._store.get_checkpoint(self._checkpoint)
        return EventId.parse(key) if key else None

    def reconcile(self, since_event_id: EventId | None = None) -> RepairReport:
        """
        Re-feed facts after since_event_id (or after the stored checkpoint when None).

        StoreUnavailable and exhausted WriteConflict errors abort the run; the
        checkpoint then still points at the last fully handled fact.
        """
        start = since_event_id if since_event_id is not None else self.checkpoint()
        started_after = start.key if start is not None else None

        applied = 0
        already = 0
        rejected = 0
        last: str | None = None

        if self._logger is not None:
            self._logger.info("reconcile_started", since=started_after)

        try:
            for item in self._ledger.facts_since(start):
                if isinstance(item, RejectedRecord):
                    rejected += 1
                    if self._logger is not None:
                        self._logger.warning(
                            "reconcile_record_rejected",
                            event_id=item.event_id.key if item.event_id is not None else None,
                            source=item.source,
                            error=item.error,
                        )
                    # Without an event id there is no position to record.
                    if item.event_id is not None:
                        self._save_checkpoint(item.event_id.key)
                        last = item.event_id.key
                    continue

                key = item.event_id.key
                try:
                    outcome = self._ingestor.ingest(item)
                except VALIDATION_ERRORS as e:
                    rejected += 1
                    if self._logger is not None:
                        self._logger.warning(
                            "reconcile_fact_rejected",
                            event_id=key,
                            error_type=type(e).__name__,
                            error=str(e),
                        )
                else:
                    if outcome is ApplyOutcome.APPLIED:
                        applied += 1
                    else:
                        already += 1

                self._save_checkpoint(key)
                last = key
        except BaseException as e:
            if self._logger is not None:
                self._logger.exception(
                    "reconcile_aborted",
                    exc=e,
                    event_id=last,
                    applied=applied,
                    already_applied=already,
                    rejected=rejected,
                )
            raise

        report = RepairReport(
            applied=applied,
            already_applied=already,
            rejected=rejected,
            started_after=started_after,
            last_event_id=last,
        )

        if self._logger is not None:
            self._logger.info(
                "reconcile_finished",
                since=started_after,
                last_event_id=last,
                applied=applied,
                already_applied=already,
                rejected=rejected,
            )
        return report

    def _save_checkpoint(self, event_key: str) -> None:
        def _write() -> None:
            with self._store.transaction("save_checkpoint") as tx:
                tx.set_checkpoint(self._checkpoint, event_key)

        call_with_retries(_write, cfg=self._retry, operation="save_checkpoint", event_id=event_key)
