from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidFact
from .models import EventId, LedgerFact, PostLiked, PostMinted
from .normalize import MAX_AMOUNT, MAX_POST_ID, MAX_TIMESTAMP

# Millisecond epoch values are above this; second epoch values stay below it until 2286.
_MILLIS_THRESHOLD = 10_000_000_000

_KIND_ALIASES: dict[str, str] = {
    "postminted": "post_minted",
    "post_minted": "post_minted",
    "postcreated": "post_minted",
    "post_created": "post_minted",
    "postliked": "post_liked",
    "post_liked": "post_liked",
}


def _coerce_timestamp(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("timestamp must be a number or ISO-8601 string")
    if isinstance(value, (int, float)):
        ts = int(value)
    elif isinstance(value, str):
        s = value.strip()
        if not s:
            raise ValueError("timestamp must be non-empty")
        if s.lstrip("-").isdigit():
            ts = int(s)
        else:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            ts = int(dt.timestamp())
    else:
        raise ValueError("timestamp must be a number or ISO-8601 string")

    if ts > _MILLIS_THRESHOLD:
        ts //= 1000
    if ts < 0:
        raise ValueError("timestamp must be >= 0")
    if ts > MAX_TIMESTAMP:
        raise ValueError("timestamp out of range")
    return ts


class EventIdModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    transaction_id: str = Field(alias="transactionId", min_length=1)
    log_index: int = Field(alias="logIndex", ge=0)


class PostMintedPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    creator: str = Field(min_length=1)
    post_id: int = Field(alias="postId", ge=0, le=MAX_POST_ID)
    content_ref: str = Field(alias="contentRef", min_length=1)
    category: str = Field(min_length=1, validation_alias=AliasChoices("category", "mode"))
    caption: str = ""
    rating: int | None = None
    metadata_ref: str | None = Field(None, alias="metadataRef")
    reward: int = Field(0, ge=0, le=MAX_AMOUNT)
    timestamp: int | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp(cls, v: Any) -> int | None:
        return None if v is None else _coerce_timestamp(v)


class PostLikedPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    post_id: int = Field(alias="postId", ge=0, le=MAX_POST_ID)
    liker: str = Field(min_length=1)
    creator: str = Field(min_length=1)
    reward: int = Field(0, ge=0, le=MAX_AMOUNT)
    timestamp: int | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp(cls, v: Any) -> int | None:
        return None if v is None else _coerce_timestamp(v)


class LedgerRecord(BaseModel):
    """Wire shape of one confirmed fact as delivered by the ledger client."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    event_id: Union[str, EventIdModel] = Field(alias="eventId")
    kind: Literal["post_minted", "post_liked"]
    payload: dict[str, Any]
    timestamp: int | None = None

    @field_validator("kind", mode="before")
    @classmethod
    def _kind(cls, v: Any) -> Any:
        if isinstance(v, str):
            key = v.strip().replace("-", "_").casefold()
            return _KIND_ALIASES.get(key, key)
        return v

    @field_validator("timestamp", mode="before")
    @classmethod
    def _timestamp(cls, v: Any) -> int | None:
        return None if v is None else _coerce_timestamp(v)

    def parsed_event_id(self) -> EventId:
        return _to_event_id(self.event_id)


class _RecordEventId(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    event_id: Union[str, EventIdModel] = Field(alias="eventId")


def _to_event_id(value: Union[str, EventIdModel]) -> EventId:
    if isinstance(value, EventIdModel):
        return EventId(transaction_id=value.transaction_id, log_index=value.log_index)
    return EventId.parse(value)


def event_id_from_record(record: Mapping[str, Any]) -> EventId | None:
    """Event id of a record that may not parse as a fact, or None when it has no usable one."""
    try:
        return _to_event_id(_RecordEventId.model_validate(dict(record)).event_id)
    except (ValidationError, ValueError):
        return None


def _resolve_timestamp(record: LedgerRecord, payload_ts: int | None) -> int:
    ts = record.timestamp if record.timestamp is not None else payload_ts
    if ts is None:
        raise InvalidFact(f"Fact {record.event_id} has no timestamp")
    return ts


def fact_from_record(record: Mapping[str, Any]) -> LedgerFact:
    """
    Parse a ledger client record ({event_id, kind, payload, timestamp}) into a fact.

    Field names are accepted in snake_case or camelCase. Raises InvalidFact when the
    record does not describe a known fact kind with the required fields.
    """
    try:
        rec = LedgerRecord.model_validate(dict(record))
        event_id = rec.parsed_event_id()
    except (ValidationError, ValueError) as e:
        raise InvalidFact(f"Malformed ledger record: {e}") from e

    try:
        if rec.kind == "post_minted":
            minted = PostMintedPayload.model_validate(rec.payload)
            return PostMinted(
                event_id=event_id,
                creator=minted.creator,
                post_id=minted.post_id,
                content_ref=minted.content_ref,
                category=minted.category,
                timestamp=_resolve_timestamp(rec, minted.timestamp),
                caption=minted.caption,
                rating=minted.rating,
                metadata_ref=minted.metadata_ref,
                reward=minted.reward,
            )

        liked = PostLikedPayload.model_validate(rec.payload)
        return PostLiked(
            event_id=event_id,
            post_id=liked.post_id,
            liker=liked.liker,
            creator=liked.creator,
            timestamp=_resolve_timestamp(rec, liked.timestamp),
            reward=liked.reward,
        )
    except ValidationError as e:
        raise InvalidFact(f"Malformed {rec.kind} payload for {event_id}: {e}") from e
