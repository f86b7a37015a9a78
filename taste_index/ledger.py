from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, Protocol, Union

from .errors import InvalidFact
from .fact_schema import event_id_from_record, fact_from_record
from .models import EventId, LedgerFact


@dataclass(frozen=True)
class RejectedRecord:
    """
    A feed entry that could not be parsed into a fact.

    Consumers count it as rejected and move past it. event_id is set when the
    record carried a readable one, so a checkpoint can advance past the record.
    """

    error: str
    event_id: EventId | None = None
    source: str | None = None


FeedItem = Union[LedgerFact, RejectedRecord]


class LedgerClient(Protocol):
    """Source of ledger-confirmed facts, in ledger order."""

    def facts_since(self, event_id: EventId | None) -> Iterable[FeedItem]:
        """Yield facts strictly after event_id, or all facts when event_id is None."""
        ...


def facts_after(facts: Iterable[FeedItem], event_id: EventId | None) -> Iterator[FeedItem]:
    """
    Skip facts up to and including event_id.

    If event_id never appears, nothing is yielded: resuming from an unknown position
    would silently skip or double-read history.
    """
    if event_id is None:
        yield from facts
        return

    found = False
    for item in facts:
        if found:
            yield item
        elif item.event_id == event_id:
            found = True


class JsonlLedgerFeed:
    """
    Ledger facts exported as JSON lines ({event_id, kind, payload, timestamp}).

    Used for offline replay and for rebuilding an index from an export. A line
    that is not a valid fact is yielded as a RejectedRecord tagged with its
    line number; it never stops the feed.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def __iter__(self) -> Iterator[FeedItem]:
        return self.read()

    def read(self) -> Iterator[FeedItem]:
        if not self._path.exists():
            raise FileNotFoundError(f"Ledger export not found: {self._path}")

        with self._path.open("r", encoding="utf-8") as fp:
            for line_no, line in enumerate(fp, start=1):
                text = line.strip()
                if not text:
                    continue
                yield self._parse_line(text, source=f"{self._path}:{line_no}")

    @staticmethod
    def _parse_line(text: str, *, source: str) -> FeedItem:
        try:
            record = json.loads(text)
        except json.JSONDecodeError as e:
            return RejectedRecord(error=f"{source}: invalid JSON: {e}", source=source)
        if not isinstance(record, dict):
            return RejectedRecord(error=f"{source}: record must be a JSON object", source=source)

        try:
            return fact_from_record(record)
        except InvalidFact as e:
            return RejectedRecord(
                error=f"{source}: {e}",
                event_id=event_id_from_record(record),
                source=source,
            )

    def facts_since(self, event_id: EventId | None) -> Iterable[FeedItem]:
        return facts_after(self.read(), event_id)
