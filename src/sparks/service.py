"""Caller-facing spark service: delivery, interactions and milestones.

The UI layer talks to :class:`SparkService` only.  Delivery never lets an
exception through; every failure is reported as a ``not_available``
:class:`~incurio.sparks.models.Delivery` so the caller can show a generic
"try again later" state and simply call again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime

from incurio.errors import (
    BatchGenerationFailed,
    GenerationError,
    LockUnavailable,
    StoreError,
)
from incurio.sparks.cache import DeliveryCache
from incurio.sparks.days import utcnow
from incurio.sparks.models import (
    Delivery,
    DeliveryStatus,
    InteractionOutcome,
    LoveCount,
    Reaction,
    Spark,
)
from incurio.sparks.orchestrator import DailyBatchOrchestrator
from incurio.sparks.recommendations import MILESTONE_STEP, RecommendationClient, milestone_for
from incurio.sparks.store import SparkStore

logger = logging.getLogger(__name__)


class SparkService:
    """Entry point for getting today's spark and recording reactions."""

    def __init__(
        self,
        store: SparkStore,
        orchestrator: DailyBatchOrchestrator,
        *,
        cache: DeliveryCache | None = None,
        recommender: RecommendationClient | None = None,
        milestone_step: int = MILESTONE_STEP,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._cache = cache
        self._recommender = recommender
        self._milestone_step = milestone_step
        self._clock = clock

    # ── Delivery ─────────────────────────────────────────────────

    def deliver(
        self,
        user_id: str,
        preferred_topics: list[str],
        preference_text: str = "",
    ) -> Delivery:
        """Return the first spark of today's batch the user has not reacted to.

        Generates the batch first when it is missing or incomplete.
        """
        day = self._orchestrator.today()

        cached = self._cached_spark(user_id, day)
        if cached is not None:
            logger.debug("Serving cached spark %s to %s", cached.id, user_id)
            return Delivery(status=DeliveryStatus.READY, spark=cached)

        try:
            self._orchestrator.ensure_batch(user_id, preferred_topics, preference_text)
        except LockUnavailable:
            logger.info("Generation already in progress for %s", user_id)
            return Delivery(
                status=DeliveryStatus.NOT_AVAILABLE,
                reason="Today's sparks are being generated",
            )
        except BatchGenerationFailed as exc:
            logger.warning("No spark available for %s: %s", user_id, exc.cause)
            return Delivery(
                status=DeliveryStatus.NOT_AVAILABLE,
                reason="Spark generation failed",
            )

        try:
            batch = self._store.sparks_in_range(user_id, *self._orchestrator.day_range(day))
            if len(batch) < self._orchestrator.batch_size:
                return Delivery(
                    status=DeliveryStatus.NOT_AVAILABLE,
                    reason="Today's batch is not complete yet",
                )
            reacted = self._store.interacted_spark_ids(user_id, [s.id for s in batch])
        except StoreError as exc:
            logger.warning("Could not read today's batch for %s: %s", user_id, exc)
            return Delivery(status=DeliveryStatus.NOT_AVAILABLE, reason="Store unavailable")

        for spark in batch:
            if spark.id not in reacted:
                if self._cache is not None:
                    self._cache.put(user_id, day, spark.id, spark.batch_index)
                return Delivery(status=DeliveryStatus.READY, spark=spark)

        logger.info("All %d sparks consumed for %s on %s", len(batch), user_id, day)
        return Delivery(status=DeliveryStatus.ALL_CONSUMED, reason="All sparks consumed")

    def get_todays_spark(
        self,
        user_id: str,
        preferred_topics: list[str],
        preference_text: str = "",
    ) -> Spark | None:
        """Today's next spark, or None when consumed or not available."""
        return self.deliver(user_id, preferred_topics, preference_text).spark

    def _cached_spark(self, user_id: str, day: date) -> Spark | None:
        if self._cache is None:
            return None
        entry = self._cache.get(user_id, day)
        if entry is None:
            return None
        # The cache is advisory; the store decides whether the spark is still next
        try:
            spark = self._store.get_spark(entry.spark_id)
            if spark is None or spark.user_id != user_id:
                self._cache.invalidate(user_id)
                return None
            if self._store.get_interaction(user_id, spark.id) is not None:
                self._cache.invalidate(user_id)
                return None
        except StoreError:
            logger.warning("Could not confirm cached spark for %s", user_id, exc_info=True)
            return None
        return spark

    def has_batch_for_today(self, user_id: str) -> bool:
        """Whether today's full batch exists in the durable store."""
        try:
            return self._orchestrator.batch_exists(user_id)
        except StoreError:
            logger.warning("Batch check failed for %s", user_id, exc_info=True)
            return False

    def remaining_today(self, user_id: str) -> int:
        """Number of today's sparks the user has not reacted to yet."""
        batch = self._store.sparks_in_range(user_id, *self._orchestrator.day_range())
        reacted = self._store.interacted_spark_ids(user_id, [s.id for s in batch])
        return sum(1 for s in batch if s.id not in reacted)

    # ── Interactions ─────────────────────────────────────────────

    def mark_interacted(
        self,
        user_id: str,
        spark_id: str,
        spark_index: int,
        reaction: Reaction | str,
    ) -> InteractionOutcome:
        """Record the user's reaction to a spark.

        A love that reaches a milestone for the spark's topic also stores a
        recommendation spark; a failed recommendation is logged only.

        Raises:
            KeyError: The spark does not exist or belongs to another user.
            StoreError: The interaction could not be written.
        """
        reaction = Reaction(reaction)
        recorded = self._store.record_interaction(
            user_id, spark_id, reaction, created_at=self._clock()
        )
        if self._cache is not None:
            self._cache.invalidate(user_id)
        logger.info(
            "Recorded %s on spark %s (index %d) for %s", reaction, spark_id, spark_index, user_id
        )

        outcome = InteractionOutcome(interaction=recorded.interaction)
        if recorded.love_count is None:
            return outcome

        count = recorded.love_count
        love = LoveCount(
            topic=recorded.topic,
            count=count,
            milestone=milestone_for(count, self._milestone_step),
        )
        outcome.love_count = love
        if love.hit_milestone:
            logger.info("Milestone %d reached for %s in %s", count, user_id, recorded.topic)
            outcome.recommendation = self._recommend(user_id, recorded.topic)
        return outcome

    def _recommend(self, user_id: str, topic: str) -> Spark | None:
        if self._recommender is None:
            return None
        try:
            loved = self._store.loved_sparks(user_id, topic)
            recommendation = self._recommender.recommend(topic, loved)
            return self._store.add_recommendation_spark(
                user_id, topic, recommendation, created_at=self._clock()
            )
        except (GenerationError, StoreError) as exc:
            logger.warning("Recommendation for %s in %s failed: %s", user_id, topic, exc)
            return None
