"""
Deduplicator - decide whether a candidate is new, a continuation of an
existing card, or already on the feed.

Stage 1 compares the candidate's message fingerprint against stored cards.
Stage 2 asks the completion service to classify the candidate against the
most recently updated cards. A card id from the model is only accepted if it
is one of the cards offered and still exists; anything else, and any service
or parse failure, falls back to new_topic.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from autofeed.config import FeedConfig
from autofeed.feed.fingerprint import message_fingerprint
from autofeed.feed.types import Conversation, DedupAction, DedupResult
from autofeed.llm.gateway import CompleteFn, CompletionError, complete, parse_structured
from autofeed.llm.prompts import render_prompt
from autofeed.observability.logging import get_logger
from autofeed.observability.telemetry import counter
from autofeed.storage.models import FeedCard, utc_now
from autofeed.storage.repository import FeedCardRepository

logger = get_logger(__name__)


class DedupDecision(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: Literal["new_topic", "continuation", "duplicate"]
    related_card_id: int | None = None
    similarity_score: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""


DEDUP_SCHEMA = DedupDecision.model_json_schema()


class Deduplicator:
    def __init__(self, config: FeedConfig, complete_fn: CompleteFn = complete):
        self.config = config
        self.complete_fn = complete_fn

    def check(self, conversation: Conversation, source_room_id: int | None = None) -> DedupResult:
        fingerprint = message_fingerprint(conversation.message_ids)

        existing = FeedCardRepository.get_by_fingerprint(fingerprint)
        if existing is not None:
            logger.info("Exact fingerprint match with feed card %s", existing.id)
            counter("dedup.exact_match")
            return DedupResult(
                DedupAction.SKIP, "exact_fingerprint_match", fingerprint, card=existing
            )

        scope = source_room_id if self.config.dedup_scope_to_source_room else None
        cards = FeedCardRepository.recent(
            since=utc_now() - timedelta(days=self.config.dedup_lookback_days),
            limit=self.config.dedup_candidate_limit,
            source_room_id=scope,
        )
        if not cards:
            return DedupResult.new_topic(fingerprint, "no_recent_cards")

        try:
            text = self.complete_fn(
                self.build_prompt(conversation, cards),
                model=self.config.scan_model or None,
                response_format=DEDUP_SCHEMA,
            )
            decision = parse_structured(text, DedupDecision)
        except CompletionError as e:
            counter("dedup.completion_error")
            logger.error(
                "Deduplication failed for %s, treating as new topic: %s - %s",
                conversation.message_ids,
                type(e).__name__,
                e,
            )
            return DedupResult.new_topic(fingerprint, "completion_error", reasoning=str(e))

        return self._resolve(decision, cards, fingerprint)

    def _resolve(
        self, decision: DedupDecision, offered: list[FeedCard], fingerprint: str
    ) -> DedupResult:
        if decision.action == "new_topic":
            logger.info("New topic: %s", decision.reasoning)
            return DedupResult.new_topic(fingerprint, "new_topic", reasoning=decision.reasoning)

        card_id = decision.related_card_id
        if card_id is None:
            logger.warning("%s without a card id, treating as new topic", decision.action)
            counter("dedup.missing_card_id")
            return DedupResult.new_topic(fingerprint, "missing_card_id", decision.reasoning)

        card = None
        if card_id in {c.id for c in offered}:
            card = FeedCardRepository.get(card_id)
        if card is None:
            logger.warning("Card %s is not a known contender, treating as new topic", card_id)
            counter("dedup.unknown_card_id")
            return DedupResult.new_topic(fingerprint, "unknown_card", decision.reasoning)

        if decision.action == "duplicate":
            logger.info("Duplicate of card %s: %s", card.id, decision.reasoning)
            counter("dedup.duplicate")
            return DedupResult(
                DedupAction.SKIP,
                "duplicate",
                fingerprint,
                card=card,
                similarity_score=decision.similarity_score,
                reasoning=decision.reasoning,
            )

        logger.info("Continuation of card %s: %s", card.id, decision.reasoning)
        counter("dedup.continuation")
        return DedupResult(
            DedupAction.CONTINUATION,
            "continuation",
            fingerprint,
            card=card,
            similarity_score=decision.similarity_score,
            reasoning=decision.reasoning,
        )

    def build_prompt(self, conversation: Conversation, cards: list[FeedCard]) -> str:
        counts = FeedCardRepository.message_counts(c.id for c in cards)
        now = utc_now()
        lines = []
        for card in cards:
            hours = (now - card.updated_at).total_seconds() / 3600
            lines.append(
                f'[ID: {card.id}] Title: "{card.title}" | Summary: "{card.summary}" | '
                f"{counts.get(card.id, 0)} messages | Last updated: {hours:.1f}h ago"
            )

        return render_prompt(
            "dedup_classification",
            title=conversation.title,
            summary=conversation.summary,
            message_ids=conversation.message_ids,
            participants=conversation.participants,
            topic_tags=conversation.topic_tags,
            lookback_days=self.config.dedup_lookback_days,
            cards="\n".join(lines),
        )
