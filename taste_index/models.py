from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


@dataclass(frozen=True, order=True)
class EventId:
    """Globally unique identifier of a ledger-confirmed fact."""

    transaction_id: str
    log_index: int

    def __post_init__(self) -> None:
        # Transaction hashes are hex; one case keeps keys comparable.
        object.__setattr__(self, "transaction_id", str(self.transaction_id).strip().lower())

    @property
    def key(self) -> str:
        return f"{self.transaction_id}:{self.log_index}"

    @classmethod
    def parse(cls, value: str) -> "EventId":
        raw = (value or "").strip()
        tx, sep, idx = raw.rpartition(":")
        tx = tx.strip().lower()
        if not sep or not tx:
            raise ValueError(f"event id must look like '<transaction_id>:<log_index>': {value!r}")
        try:
            log_index = int(idx)
        except ValueError as e:
            raise ValueError(f"event id log index must be an integer: {value!r}") from e
        if log_index < 0:
            raise ValueError(f"event id log index must be >= 0: {value!r}")
        return cls(transaction_id=tx, log_index=log_index)

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class PostMinted:
    event_id: EventId
    creator: str
    post_id: int
    content_ref: str
    category: str
    timestamp: int
    caption: str = ""
    rating: int | None = None
    metadata_ref: str | None = None
    reward: int = 0


@dataclass(frozen=True)
class PostLiked:
    event_id: EventId
    post_id: int
    liker: str
    creator: str
    timestamp: int
    reward: int = 0


LedgerFact = Union[PostMinted, PostLiked]


@dataclass(frozen=True)
class PostMutation:
    """A validated, normalized post insert produced from a PostMinted fact."""

    creator: str
    post_id: int
    content_ref: str
    caption: str
    category: str
    rating: int | None
    metadata_ref: str | None
    reward: int
    timestamp: int


@dataclass(frozen=True)
class LikeMutation:
    """A validated, normalized like insert produced from a PostLiked fact."""

    creator: str
    post_id: int
    liker: str
    reward: int
    timestamp: int


Mutation = Union[PostMutation, LikeMutation]


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


@dataclass(frozen=True)
class Post:
    creator: str
    post_id: int
    content_ref: str
    caption: str
    category: str
    rating: int | None
    metadata_ref: str | None
    created_at: int
    like_count: int
    event_key: str


@dataclass(frozen=True)
class Like:
    creator: str
    post_id: int
    liker: str
    reward: int
    created_at: int
    event_key: str


@dataclass(frozen=True)
class UserAccount:
    address: str
    total_earned: int
    post_count: int
    like_count_given: int
    last_active: int
    display_name: str | None = None
    avatar_ref: str | None = None


@dataclass(frozen=True)
class PageCursor:
    """Keyset position of the last post on a feed page."""

    created_at: int
    event_key: str

    @classmethod
    def after(cls, post: Post) -> "PageCursor":
        return cls(created_at=post.created_at, event_key=post.event_key)
