"""Daily batch orchestrator: makes sure a user has N sparks for the local day.

A run for one (user, local day) either finds the batch ``complete`` or
holds the generation lock while ``generating`` the missing slots, ending
``complete``.  A failed run raises
:class:`~incurio.errors.BatchGenerationFailed` carrying a ``failed``
:class:`~incurio.sparks.models.BatchResult`.

Slots are filled one at a time so each similarity check sees every spark
committed earlier in the same run.  Every slot is saved into the day the run
started on, even when the run crosses local midnight.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import UTC, date, datetime, tzinfo

from incurio.errors import (
    BatchFullError,
    BatchGenerationFailed,
    StoreError,
    TooSimilarError,
)
from incurio.sparks.days import local_date, local_day_bounds, utcnow
from incurio.sparks.embeddings import EmbeddingClient
from incurio.sparks.generator import ContentGenerator
from incurio.sparks.lock import GenerationLock
from incurio.sparks.models import BatchResult, BatchState, SlotResult
from incurio.sparks.store import DEFAULT_SIMILARITY_THRESHOLD, SparkStore
from incurio.sparks.topics import VARIETY_PROBABILITY, sample_topics

logger = logging.getLogger(__name__)

TOTAL_DAILY_SPARKS = 7
MAX_SLOT_ATTEMPTS = 3


def _failed(user_id: str, day: date, existing: int = 0) -> BatchResult:
    return BatchResult(
        user_id=user_id, day=day, state=BatchState.FAILED, existing_count=existing
    )


class DailyBatchOrchestrator:
    """Checks for and, when needed, generates a user's daily batch."""

    def __init__(
        self,
        store: SparkStore,
        generator: ContentGenerator,
        embedder: EmbeddingClient,
        lock: GenerationLock,
        *,
        tz: tzinfo = UTC,
        batch_size: int = TOTAL_DAILY_SPARKS,
        max_slot_attempts: int = MAX_SLOT_ATTEMPTS,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        variety_probability: float = VARIETY_PROBABILITY,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._generator = generator
        self._embedder = embedder
        self._lock = lock
        self._tz = tz
        self._batch_size = batch_size
        self._max_slot_attempts = max_slot_attempts
        self._threshold = similarity_threshold
        self._variety = variety_probability
        self._rng = rng or random.Random()
        self._clock = clock

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def today(self) -> date:
        """The local calendar day right now."""
        return local_date(self._clock(), self._tz)

    def day_range(self, day: date | None = None) -> tuple[datetime, datetime]:
        """UTC ``[start, end)`` of ``day`` (default: today) in local time."""
        return local_day_bounds(day or self.today(), self._tz)

    def existing_count(self, user_id: str, day: date | None = None) -> int:
        start, end = self.day_range(day)
        return self._store.count_in_range(user_id, start, end)

    def batch_exists(self, user_id: str) -> bool:
        """Whether today's batch is complete in the durable store."""
        return self.existing_count(user_id) >= self._batch_size

    def ensure_batch(
        self,
        user_id: str,
        preferred_topics: list[str],
        preference_text: str = "",
    ) -> BatchResult:
        """Make sure today's batch for ``user_id`` is complete.

        Safe to call repeatedly; every call re-enters at the check.

        Raises:
            LockUnavailable: Another context holds the generation lock.
            BatchGenerationFailed: Checking or generating failed; ``cause``
                holds the original error.
        """
        day = self.today()
        day_range = local_day_bounds(day, self._tz)

        logger.info("Checking batch for %s on %s", user_id, day)
        existing = self._checked_count(user_id, day, day_range)
        if existing >= self._batch_size:
            logger.info("Batch complete for %s (%d sparks)", user_id, existing)
            return BatchResult(
                user_id=user_id, day=day, state=BatchState.COMPLETE, existing_count=existing
            )

        if not preferred_topics:
            raise BatchGenerationFailed(
                ValueError("No topic preferences for user"),
                result=_failed(user_id, day, existing),
            )

        with self._lock.hold(user_id):
            # Another context may have finished the batch before we got the lock
            existing = self._checked_count(user_id, day, day_range)
            result = BatchResult(
                user_id=user_id,
                day=day,
                state=BatchState.GENERATING,
                existing_count=existing,
            )
            remaining = self._batch_size - existing
            logger.info("Generating %d sparks for %s on %s", max(remaining, 0), user_id, day)

            for slot_index in range(existing + 1, self._batch_size + 1):
                try:
                    slot = self._fill_slot(
                        user_id, slot_index, preferred_topics, preference_text, day_range
                    )
                except BatchFullError:
                    logger.info("Batch for %s was filled by another run", user_id)
                    break
                except BatchGenerationFailed as exc:
                    logger.warning(
                        "Batch generation failed for %s on %s: %s", user_id, day, exc.cause
                    )
                    result.state = BatchState.FAILED
                    exc.result = result
                    raise
                result.slots.append(slot)

            result.state = BatchState.COMPLETE
            logger.info(
                "Batch complete for %s: %d generated in %d attempts",
                user_id,
                result.generated_count,
                result.total_attempts,
            )
            return result

    def _checked_count(
        self, user_id: str, day: date, day_range: tuple[datetime, datetime]
    ) -> int:
        try:
            return self._store.count_in_range(user_id, *day_range)
        except StoreError as exc:
            raise BatchGenerationFailed(exc, result=_failed(user_id, day)) from exc

    def _fill_slot(
        self,
        user_id: str,
        slot_index: int,
        preferred_topics: list[str],
        preference_text: str,
        day_range: tuple[datetime, datetime],
    ) -> SlotResult:
        """Run up to ``max_slot_attempts`` generate → embed → store attempts.

        Only a similarity rejection consumes an attempt and retries; any
        other error aborts the slot at once.
        """
        slot = SlotResult(slot_index=slot_index, attempts=0)

        while slot.attempts < self._max_slot_attempts:
            slot.attempts += 1
            topics = sample_topics(
                preferred_topics, variety_probability=self._variety, rng=self._rng
            )
            logger.info(
                "Generating spark %d of %d (attempt %d/%d), topics=%s",
                slot_index,
                self._batch_size,
                slot.attempts,
                self._max_slot_attempts,
                topics,
            )
            try:
                candidate = self._generator.generate(topics, preference_text)
                embedding = self._embedder.embed(candidate.content, candidate.details)
                stored = self._store.save_spark_checked(
                    candidate,
                    embedding,
                    user_id,
                    threshold=self._threshold,
                    created_at=self._clock(),
                    day_range=day_range,
                    batch_size=self._batch_size,
                )
            except TooSimilarError as exc:
                slot.rejected_scores.append(exc.score)
                logger.warning(
                    "Attempt %d for spark %d was too similar (%.3f), retrying",
                    slot.attempts,
                    slot_index,
                    exc.score,
                )
                continue
            except BatchFullError:
                raise
            except Exception as exc:
                raise BatchGenerationFailed(
                    exc, slot_index=slot_index, attempts=slot.attempts
                ) from exc

            slot.spark_id = stored.spark.id
            slot.similarity_scores = stored.similarity_scores
            logger.info("Saved spark %d with topic %s", slot_index, stored.spark.topic)
            return slot

        worst = max(slot.rejected_scores, default=0.0)
        raise BatchGenerationFailed(
            TooSimilarError(worst, self._threshold),
            slot_index=slot_index,
            attempts=slot.attempts,
        )
