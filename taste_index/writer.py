from __future__ import annotations

import time
from dataclasses import replace

from .aggregates import on_like_applied, on_post_applied
from .content_ref import resolve_content_ref
from .errors import InvalidArgument, InvalidFact, InvalidLike
from .models import ApplyOutcome, EventId, LikeMutation, Mutation, PostMutation
from .normalize import (
    normalize_address,
    normalize_amount,
    normalize_display_name,
    normalize_post_id,
    normalize_timestamp,
)
from .retry import RetryConfig, RetryEvent, call_with_retries
from .run_log import RunLogger
from .storage import IndexTransaction, SQLiteIndexStore

_UNSET = object()


def _kind_of(mutation: Mutation) -> str:
    if isinstance(mutation, PostMutation):
        return "post_minted"
    if isinstance(mutation, LikeMutation):
        return "post_liked"
    raise TypeError(f"Unsupported mutation type: {type(mutation).__name__}")


def _normalized(mutation: Mutation) -> Mutation:
    """Canonical addresses and in-range ids and amounts, whoever built the mutation."""
    kind = _kind_of(mutation)
    is_like = isinstance(mutation, LikeMutation)
    try:
        creator = normalize_address(mutation.creator)
        post_id = normalize_post_id(mutation.post_id)
        liker = normalize_address(mutation.liker) if isinstance(mutation, LikeMutation) else None
    except ValueError as e:
        error = InvalidLike if is_like else InvalidFact
        raise error(f"Invalid {kind} mutation: {e}") from e

    try:
        reward = normalize_amount(mutation.reward)
        timestamp = normalize_timestamp(mutation.timestamp)
    except ValueError as e:
        raise InvalidFact(f"Invalid {kind} mutation: {e}") from e

    if liker is not None:
        return replace(mutation, creator=creator, post_id=post_id, liker=liker, reward=reward, timestamp=timestamp)
    return replace(mutation, creator=creator, post_id=post_id, reward=reward, timestamp=timestamp)


class IndexWriter:
    """
    Applies mutations to the index with at most one observable effect per event id.

    Deduplication has two layers, both checked in the write transaction: the
    processed_events set keyed by event id, and the natural keys of the Post
    (creator, post_id) and Like (creator, post_id, liker) rows.
    """

    def __init__(
        self,
        store: SQLiteIndexStore,
        *,
        retry: RetryConfig | None = None,
        logger: RunLogger | None = None,
        content_scheme: str = "ipfs",
        max_display_name_chars: int = 50,
    ) -> None:
        self._store = store
        self._retry = retry or RetryConfig()
        self._logger = logger
        self._content_scheme = content_scheme
        self._max_display_name_chars = int(max_display_name_chars)

    @property
    def store(self) -> SQLiteIndexStore:
        return self._store

    def apply_mutation(self, event_id: EventId, mutation: Mutation) -> ApplyOutcome:
        kind = _kind_of(mutation)
        mutation = _normalized(mutation)
        if isinstance(mutation, LikeMutation) and mutation.liker == mutation.creator:
            raise InvalidLike(f"Self-like rejected for post {mutation.creator}/{mutation.post_id}")

        key = event_id.key

        outcome = call_with_retries(
            lambda: self._apply_once(key, kind, mutation),
            cfg=self._retry,
            operation=f"apply_{kind}",
            on_retry=self._log_retry,
            event_id=key,
        )

        if self._logger is not None:
            self._logger.info("mutation_applied", event_id=key, kind=kind, outcome=outcome.value)
        return outcome

    def _apply_once(self, key: str, kind: str, mutation: Mutation) -> ApplyOutcome:
        with self._store.transaction(f"apply_{kind}") as tx:
            if not tx.claim_event(key, kind):
                return ApplyOutcome.ALREADY_APPLIED

            if isinstance(mutation, PostMutation):
                return self._apply_post(tx, key, mutation)
            return self._apply_like(tx, key, mutation)

    @staticmethod
    def _apply_post(tx: IndexTransaction, key: str, mutation: PostMutation) -> ApplyOutcome:
        if not tx.insert_post(mutation, event_key=key):
            tx.mark_duplicate(key)
            return ApplyOutcome.ALREADY_APPLIED
        on_post_applied(tx, mutation)
        return ApplyOutcome.APPLIED

    @staticmethod
    def _apply_like(tx: IndexTransaction, key: str, mutation: LikeMutation) -> ApplyOutcome:
        # Same logical like reported again under a new transaction.
        if not tx.insert_like(mutation, event_key=key):
            tx.mark_duplicate(key)
            return ApplyOutcome.ALREADY_APPLIED
        on_like_applied(tx, mutation)
        return ApplyOutcome.APPLIED

    def _log_retry(self, event: RetryEvent) -> None:
        if self._logger is None:
            return
        self._logger.warning(
            "write_conflict_retry",
            event_id=event.event_id,
            operation=event.operation,
            failure_attempt=event.failure_attempt,
            max_attempts=event.max_attempts,
            delay_seconds=round(event.delay_seconds, 4),
            error=event.error_message,
        )

    def has_liked(self, creator: str, post_id: int, liker: str) -> bool:
        try:
            pair = (normalize_address(creator), normalize_address(liker))
        except ValueError as e:
            raise InvalidArgument(str(e)) from e
        return self._store.has_like(pair[0], int(post_id), pair[1])

    def update_profile(
        self,
        address: str,
        *,
        display_name: str | None | object = _UNSET,
        avatar_ref: str | None | object = _UNSET,
        now: int | None = None,
    ) -> None:
        """
        Create or edit a profile. Omitted fields are left as they are; None clears one.

        The avatar reference goes through the same content locator validation as posts.
        """
        name: str | None = None
        try:
            addr = normalize_address(address)
            if display_name is not _UNSET:
                name = normalize_display_name(
                    display_name,  # type: ignore[arg-type]
                    max_chars=self._max_display_name_chars,
                )
        except ValueError as e:
            raise InvalidArgument(f"Invalid profile edit: {e}") from e

        avatar: str | None = None
        if avatar_ref is not _UNSET and avatar_ref is not None:
            avatar = resolve_content_ref(str(avatar_ref), scheme=self._content_scheme)

        active_at = int(now) if now is not None else int(time.time())

        def _write() -> None:
            with self._store.transaction("update_profile") as tx:
                tx.upsert_profile(
                    addr,
                    display_name=name,
                    avatar_ref=avatar,
                    set_display_name=display_name is not _UNSET,
                    set_avatar_ref=avatar_ref is not _UNSET,
                    active_at=active_at,
                )

        call_with_retries(
            _write,
            cfg=self._retry,
            operation="update_profile",
            on_retry=self._log_retry,
        )

        if self._logger is not None:
            self._logger.info("profile_updated", address=addr)
