from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from .config_schema import AppConfig
from .content_ref import resolve_content_ref
from .errors import VALIDATION_ERRORS, InvalidFact, InvalidLike
from .ledger import FeedItem, RejectedRecord
from .models import (
    ApplyOutcome,
    LedgerFact,
    LikeMutation,
    Mutation,
    PostLiked,
    PostMinted,
    PostMutation,
)
from .normalize import (
    normalize_address,
    normalize_amount,
    normalize_caption,
    normalize_category,
    normalize_post_id,
    normalize_rating,
    normalize_timestamp,
)
from .run_log import RunLogger
from .writer import IndexWriter


@dataclass
class IngestReport:
    applied: int = 0
    already_applied: int = 0
    rejected: int = 0
    last_event_id: str | None = None
    rejected_event_ids: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.applied + self.already_applied + self.rejected


class EventIngestor:
    """
    Turns ledger-confirmed facts into index mutations and forwards them to the writer.

    The ingestor does not deduplicate: replays and re-deliveries are passed through
    unchanged and the writer decides whether they have any effect.
    """

    def __init__(
        self,
        writer: IndexWriter,
        config: AppConfig | None = None,
        *,
        logger: RunLogger | None = None,
    ) -> None:
        self._writer = writer
        self._config = config or AppConfig()
        self._logger = logger

    def to_mutation(self, fact: LedgerFact) -> Mutation:
        """Validate and normalize one fact. Raises InvalidReference, InvalidLike, or InvalidFact."""
        if isinstance(fact, PostMinted):
            return self._post_mutation(fact)
        if isinstance(fact, PostLiked):
            return self._like_mutation(fact)
        raise InvalidFact(f"Unsupported fact type: {type(fact).__name__}")

    def _post_mutation(self, fact: PostMinted) -> PostMutation:
        posts = self._config.posts
        scheme = self._config.content.scheme

        content_ref = resolve_content_ref(fact.content_ref, scheme=scheme)
        metadata_ref = (
            resolve_content_ref(fact.metadata_ref, scheme=scheme)
            if (fact.metadata_ref or "").strip()
            else None
        )

        try:
            creator = normalize_address(fact.creator)
            category = normalize_category(fact.category, allowed=posts.categories)
            caption = normalize_caption(fact.caption, max_chars=posts.max_caption_chars)
            rating = normalize_rating(fact.rating, low=posts.rating_min, high=posts.rating_max)
            post_id = normalize_post_id(fact.post_id)
            reward = normalize_amount(fact.reward)
            timestamp = normalize_timestamp(fact.timestamp)
        except ValueError as e:
            raise InvalidFact(f"Invalid post_minted fact {fact.event_id}: {e}") from e

        return PostMutation(
            creator=creator,
            post_id=post_id,
            content_ref=content_ref,
            caption=caption,
            category=category,
            rating=rating,
            metadata_ref=metadata_ref,
            reward=reward,
            timestamp=timestamp,
        )

    @staticmethod
    def _like_mutation(fact: PostLiked) -> LikeMutation:
        try:
            creator = normalize_address(fact.creator)
            liker = normalize_address(fact.liker)
            post_id = normalize_post_id(fact.post_id)
        except ValueError as e:
            raise InvalidLike(f"Invalid post_liked fact {fact.event_id}: {e}") from e

        try:
            reward = normalize_amount(fact.reward)
            timestamp = normalize_timestamp(fact.timestamp)
        except ValueError as e:
            raise InvalidFact(f"Invalid post_liked fact {fact.event_id}: {e}") from e

        if liker == creator:
            raise InvalidLike(f"Self-like rejected in fact {fact.event_id}")

        return LikeMutation(
            creator=creator,
            post_id=post_id,
            liker=liker,
            reward=reward,
            timestamp=timestamp,
        )

    def ingest(self, fact: LedgerFact) -> ApplyOutcome:
        """Apply one fact. Validation and store errors propagate to the caller."""
        mutation = self.to_mutation(fact)
        return self._writer.apply_mutation(fact.event_id, mutation)

    def ingest_many(self, facts: Iterable[FeedItem]) -> IngestReport:
        """
        Apply a stream of facts in order.

        A fact that fails validation, or a feed record that never parsed, is logged,
        counted as rejected, and skipped. WriteConflict (after retries) and
        StoreUnavailable stop the stream.
        """
        report = IngestReport()

        for item in facts:
            if isinstance(item, RejectedRecord):
                key = item.event_id.key if item.event_id is not None else None
                self._reject(report, key, error_type="RejectedRecord", error=item.error)
                continue

            key = item.event_id.key
            try:
                outcome = self.ingest(item)
            except VALIDATION_ERRORS as e:
                self._reject(report, key, error_type=type(e).__name__, error=str(e))
                continue

            if outcome is ApplyOutcome.APPLIED:
                report.applied += 1
            else:
                report.already_applied += 1
            report.last_event_id = key

        return report

    def _reject(self, report: IngestReport, key: str | None, *, error_type: str, error: str) -> None:
        report.rejected += 1
        if key is not None:
            report.rejected_event_ids.append(key)
            report.last_event_id = key
        if self._logger is not None:
            self._logger.warning("fact_rejected", event_id=key, error_type=error_type, error=error)
