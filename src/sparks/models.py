"""Spark domain models as pure Pydantic v2 data types.

A Spark is one unit of generated content owned by one user and one local
calendar day.  Candidates come back from the generator, become Sparks once
the store commits them, and collect Interactions as the user reacts.
"""

from __future__ import annotations

from datetime import date, datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class Reaction(StrEnum):
    """A user's reaction to a spark."""

    DISLIKE = "dislike"
    LIKE = "like"
    LOVE = "love"


class BatchState(StrEnum):
    """Orchestrator states for one (user, local day)."""

    GENERATING = "generating"
    COMPLETE = "complete"
    FAILED = "failed"


class DeliveryStatus(StrEnum):
    """Outcome of asking for today's spark."""

    READY = "ready"
    ALL_CONSUMED = "all_consumed"
    NOT_AVAILABLE = "not_available"


class RecommendationKind(StrEnum):
    BOOK = "book"
    MOVIE = "movie"
    DOCUMENTARY = "documentary"


class CandidateSpark(BaseModel):
    """Structured provider output for one spark, before it is committed."""

    content: str
    details: str
    topic: str


class Spark(BaseModel):
    """A committed spark.

    ``content`` and ``details`` never change after commit.  Recommendation
    sparks are derived from milestones and are not part of any daily batch.
    """

    id: str
    user_id: str
    content: str
    details: str
    topic: str
    created_at: datetime
    batch_index: int = 0
    is_recommendation: bool = False
    recommendation_kind: RecommendationKind | None = None


class StoredSpark(BaseModel):
    """Result of a successful similarity-gated commit."""

    spark: Spark
    similarity_scores: list[float] = Field(default_factory=list)

    @property
    def max_similarity(self) -> float:
        return max(self.similarity_scores, default=0.0)


class Interaction(BaseModel):
    """A recorded reaction; at most one per (user, spark)."""

    user_id: str
    spark_id: str
    reaction: Reaction
    created_at: datetime


class RecordedInteraction(BaseModel):
    """What the store wrote for one reaction.

    ``love_count`` is the topic's new love total when this write counted a
    love, and None otherwise.
    """

    interaction: Interaction
    previous: Reaction | None = None
    topic: str
    love_count: int | None = None


class UserProfile(BaseModel):
    """A user's topic preferences and free-text preference hint."""

    id: str
    topics: list[str] = Field(default_factory=list)
    preference_text: str = ""
    created_at: datetime | None = None


class SlotResult(BaseModel):
    """Outcome of filling one batch slot.

    ``attempts`` counts every attempt charged against the slot's budget,
    including the ones rejected as too similar.
    """

    slot_index: int
    attempts: int
    spark_id: str | None = None
    similarity_scores: list[float] = Field(default_factory=list)
    rejected_scores: list[float] = Field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.spark_id is not None


class BatchResult(BaseModel):
    """Outcome of one orchestrator run for a (user, local day)."""

    user_id: str
    day: date
    state: BatchState
    existing_count: int = 0
    slots: list[SlotResult] = Field(default_factory=list)

    @property
    def generated_count(self) -> int:
        return sum(1 for s in self.slots if s.committed)

    @property
    def total_attempts(self) -> int:
        return sum(s.attempts for s in self.slots)


class Delivery(BaseModel):
    """What the caller gets back from the delivery selector."""

    status: DeliveryStatus
    spark: Spark | None = None
    reason: str = ""

    @property
    def ready(self) -> bool:
        return self.status == DeliveryStatus.READY


class GeneratedRecommendation(BaseModel):
    """Structured provider output for a milestone recommendation."""

    kind: RecommendationKind
    title: str
    why_recommended: str
    details: str


class LoveCount(BaseModel):
    """Per-topic love counter after an increment."""

    topic: str
    count: int
    milestone: int | None = None

    @property
    def hit_milestone(self) -> bool:
        return self.milestone is not None


class InteractionOutcome(BaseModel):
    """Result of recording a reaction through the service facade."""

    interaction: Interaction
    love_count: LoveCount | None = None
    recommendation: Spark | None = None
