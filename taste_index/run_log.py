from __future__ import annotations

import json
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, TextIO

_MAX_MESSAGE_CHARS = 2000
_MAX_TRACEBACK_CHARS = 12000


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clip(text: str, limit: int) -> str:
    s = str(text or "")
    if len(s) <= limit:
        return s
    return s[: max(0, limit - 1)] + "…"


class _JsonlSink:
    """One append-only JSONL file shared by a logger and everything bound from it."""

    def __init__(self, path: Path, *, overwrite: bool) -> None:
        self.path = path
        self._mode = "w" if overwrite else "a"
        self._fp: TextIO | None = None
        self._lock = Lock()

    def open(self) -> None:
        with self._lock:
            if self._fp is not None:
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fp = self.path.open(self._mode, encoding="utf-8", newline="\n")
            # A reopened sink must never truncate what it already wrote.
            self._mode = "a"

    def write(self, record: dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)
        self.open()
        with self._lock:
            if self._fp is None:
                return
            self._fp.write(line + "\n")
            self._fp.flush()

    def close(self) -> None:
        with self._lock:
            fp, self._fp = self._fp, None
        if fp is not None:
            try:
                fp.flush()
            finally:
                fp.close()


class RunLogger:
    """
    Structured JSONL log for ingest, write, reconcile, and CLI sessions.

    Every line is one JSON object: ts, level, event, session_id, an optional
    event_id (the ledger event being handled), and data. bind() returns a logger
    that writes to the same file with extra context merged into every record's
    data, e.g. the CLI command or the reconcile checkpoint name. Writes are
    serialized, so one logger can be shared across writer threads.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        overwrite: bool = False,
        session_id: str | None = None,
    ) -> None:
        self._sink = _JsonlSink(Path(path), overwrite=bool(overwrite))
        self._session_id = (session_id or "").strip() or uuid.uuid4().hex
        self._context: dict[str, Any] = {}
        self._owns_sink = True

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        overwrite: bool = False,
        session_id: str | None = None,
    ) -> "RunLogger":
        logger = cls(path, overwrite=overwrite, session_id=session_id)
        logger._sink.open()
        return logger

    @property
    def path(self) -> Path:
        return self._sink.path

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def context(self) -> dict[str, Any]:
        return dict(self._context)

    def bind(self, **context: Any) -> "RunLogger":
        child = object.__new__(RunLogger)
        child._sink = self._sink
        child._session_id = self._session_id
        child._context = {**self._context, **context}
        child._owns_sink = False
        return child

    def close(self) -> None:
        # Bound loggers share the parent's file; only the parent closes it.
        if self._owns_sink:
            self._sink.close()

    def __enter__(self) -> "RunLogger":
        self._sink.open()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    def info(self, event: str, *, event_id: str | None = None, **data: Any) -> None:
        self.log("INFO", event, event_id=event_id, **data)

    def warning(self, event: str, *, event_id: str | None = None, **data: Any) -> None:
        self.log("WARN", event, event_id=event_id, **data)

    def error(self, event: str, *, event_id: str | None = None, **data: Any) -> None:
        self.log("ERROR", event, event_id=event_id, **data)

    def exception(
        self,
        event: str,
        *,
        exc: BaseException,
        event_id: str | None = None,
        **data: Any,
    ) -> None:
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        data["error"] = {
            "type": type(exc).__name__,
            "message": _clip(str(exc), _MAX_MESSAGE_CHARS),
            "traceback": _clip(tb, _MAX_TRACEBACK_CHARS),
        }
        self.log("ERROR", event, event_id=event_id, **data)

    def log(self, level: str, event: str, *, event_id: str | None = None, **data: Any) -> None:
        record: dict[str, Any] = {
            "ts": _utc_now_iso(),
            "level": (level or "").strip().upper() or "INFO",
            "event": (event or "").strip() or "event",
            "session_id": self._session_id,
        }

        key = (event_id or "").strip()
        if key:
            record["event_id"] = key

        merged = {**self._context, **data}
        if merged:
            record["data"] = merged

        self._sink.write(record)
