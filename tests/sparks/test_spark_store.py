"""Tests for SparkStore: similarity-gated commits, ranges, interactions and locks."""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest
from incurio.errors import BatchFullError, StoreError, TooSimilarError
from incurio.sparks.models import (
    CandidateSpark,
    GeneratedRecommendation,
    Reaction,
    RecommendationKind,
    UserProfile,
)
from incurio.sparks.store import SparkStore
from sqlalchemy.exc import OperationalError

NOW = datetime(2026, 3, 14, 9, 30, tzinfo=UTC)
DAY = (datetime(2026, 3, 14, tzinfo=UTC), datetime(2026, 3, 15, tzinfo=UTC))


def _make_store(tmp_path: Path) -> SparkStore:
    return SparkStore.from_url(f"sqlite:///{tmp_path / 'sparks.db'}")


def _make_candidate(n: int = 1, topic: str = "Science") -> CandidateSpark:
    return CandidateSpark(content=f"Spark {n}", details=f"Details for spark {n}", topic=topic)


def _unit(index: int, dim: int = 8) -> list[float]:
    vector = [0.0] * dim
    vector[index] = 1.0
    return vector


def _near(index: int, score: float, dim: int = 8) -> list[float]:
    """A unit vector whose cosine similarity with ``_unit(index)`` is ``score``."""
    vector = [0.0] * dim
    vector[index] = score
    vector[dim - 1] = math.sqrt(1 - score**2)
    return vector


class TestSaveSparkChecked:
    def test_first_spark_has_no_scores(self, tmp_path: Path):
        store = _make_store(tmp_path)

        stored = store.save_spark_checked(_make_candidate(), _unit(0), "u1", created_at=NOW)

        assert stored.similarity_scores == []
        assert stored.spark.user_id == "u1"
        assert stored.spark.created_at == NOW
        assert store.get_spark(stored.spark.id) == stored.spark

    def test_embedding_is_stored(self, tmp_path: Path):
        store = _make_store(tmp_path)
        stored = store.save_spark_checked(_make_candidate(), _unit(2), "u1", created_at=NOW)
        assert store.get_embedding(stored.spark.id) == _unit(2)

    def test_scores_against_every_prior(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save_spark_checked(_make_candidate(1), _unit(0), "u1", created_at=NOW)
        store.save_spark_checked(_make_candidate(2), _unit(1), "u1", created_at=NOW)

        stored = store.save_spark_checked(
            _make_candidate(3), _near(0, 0.5), "u1", created_at=NOW
        )

        assert sorted(stored.similarity_scores) == pytest.approx([0.0, 0.5])
        assert stored.max_similarity == pytest.approx(0.5)

    def test_rejects_too_similar(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save_spark_checked(_make_candidate(1), _unit(0), "u1", created_at=NOW)

        with pytest.raises(TooSimilarError) as exc_info:
            store.save_spark_checked(_make_candidate(2), _near(0, 0.91), "u1", created_at=NOW)

        assert exc_info.value.score == pytest.approx(0.91)
        assert store.count_in_range("u1", *DAY) == 1

    def test_threshold_is_inclusive(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save_spark_checked(_make_candidate(1), _unit(0), "u1", created_at=NOW)

        with pytest.raises(TooSimilarError):
            store.save_spark_checked(
                _make_candidate(2), _unit(0), "u1", threshold=1.0, created_at=NOW
            )

    def test_just_below_threshold_commits(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save_spark_checked(_make_candidate(1), _unit(0), "u1", created_at=NOW)

        stored = store.save_spark_checked(
            _make_candidate(2), _near(0, 0.84), "u1", created_at=NOW
        )
        assert stored.max_similarity < 0.85

    def test_other_users_do_not_count(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save_spark_checked(_make_candidate(1), _unit(0), "u1", created_at=NOW)

        stored = store.save_spark_checked(_make_candidate(1), _unit(0), "u2", created_at=NOW)
        assert stored.similarity_scores == []

    def test_compares_across_days(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save_spark_checked(
            _make_candidate(1), _unit(0), "u1", created_at=NOW - timedelta(days=30)
        )

        with pytest.raises(TooSimilarError):
            store.save_spark_checked(_make_candidate(2), _unit(0), "u1", created_at=NOW)

    def test_assigns_batch_index_from_day_count(self, tmp_path: Path):
        store = _make_store(tmp_path)
        indexes = [
            store.save_spark_checked(
                _make_candidate(i), _unit(i), "u1", created_at=NOW, day_range=DAY, batch_size=3
            ).spark.batch_index
            for i in range(3)
        ]
        assert indexes == [1, 2, 3]

    def test_refuses_over_full_batch(self, tmp_path: Path):
        store = _make_store(tmp_path)
        for i in range(2):
            store.save_spark_checked(
                _make_candidate(i), _unit(i), "u1", created_at=NOW, day_range=DAY, batch_size=2
            )

        with pytest.raises(BatchFullError):
            store.save_spark_checked(
                _make_candidate(5), _unit(5), "u1", created_at=NOW, day_range=DAY, batch_size=2
            )
        assert store.count_in_range("u1", *DAY) == 2

    def test_insert_after_day_end_stays_in_day(self, tmp_path: Path):
        store = _make_store(tmp_path)
        start, end = DAY
        late = end + timedelta(seconds=5)

        stored = store.save_spark_checked(
            _make_candidate(), _unit(0), "u1", created_at=late, day_range=DAY, batch_size=7
        )

        assert stored.spark.created_at == end - timedelta(microseconds=1)
        assert stored.spark.batch_index == 1
        assert store.count_in_range("u1", start, end) == 1
        assert store.count_in_range("u1", end, end + timedelta(days=1)) == 0


class TestRangeQueries:
    def test_half_open_range(self, tmp_path: Path):
        store = _make_store(tmp_path)
        start, end = DAY
        store.save_spark_checked(_make_candidate(1), _unit(0), "u1", created_at=start)
        store.save_spark_checked(
            _make_candidate(2), _unit(1), "u1", created_at=end - timedelta(microseconds=1)
        )
        store.save_spark_checked(_make_candidate(3), _unit(2), "u1", created_at=end)
        store.save_spark_checked(
            _make_candidate(4), _unit(3), "u1", created_at=start - timedelta(seconds=1)
        )

        sparks = store.sparks_in_range("u1", start, end)

        assert [s.content for s in sparks] == ["Spark 1", "Spark 2"]
        assert store.count_in_range("u1", start, end) == 2

    def test_ordered_by_creation(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save_spark_checked(
            _make_candidate(2), _unit(1), "u1", created_at=NOW + timedelta(minutes=1)
        )
        store.save_spark_checked(_make_candidate(1), _unit(0), "u1", created_at=NOW)

        assert [s.content for s in store.sparks_in_range("u1", *DAY)] == ["Spark 1", "Spark 2"]

    def test_slot_order_wins_over_creation_time(self, tmp_path: Path):
        store = _make_store(tmp_path)
        later = NOW + timedelta(minutes=1)
        store.save_spark_checked(_make_candidate(2), _unit(1), "u1", created_at=NOW, batch_index=2)
        store.save_spark_checked(_make_candidate(1), _unit(0), "u1", created_at=later, batch_index=1)

        sparks = store.sparks_in_range("u1", *DAY)

        assert [s.batch_index for s in sparks] == [1, 2]
        assert [s.content for s in sparks] == ["Spark 1", "Spark 2"]

    def test_recommendations_excluded(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.save_spark_checked(_make_candidate(1), _unit(0), "u1", created_at=NOW)
        store.add_recommendation_spark(
            "u1",
            "Science",
            GeneratedRecommendation(
                kind=RecommendationKind.BOOK,
                title="Cosmos",
                why_recommended="You love space facts.",
                details="A classic tour of the universe.",
            ),
            created_at=NOW,
        )

        assert store.count_in_range("u1", *DAY) == 1
        recommendations = store.recommendations_for_user("u1")
        assert len(recommendations) == 1
        assert recommendations[0].is_recommendation is True
        assert recommendations[0].recommendation_kind == RecommendationKind.BOOK
        assert recommendations[0].content.startswith("Cosmos")

    def test_get_missing_spark(self, tmp_path: Path):
        assert _make_store(tmp_path).get_spark("nope") is None


class TestInteractions:
    def test_record_and_read(self, tmp_path: Path):
        store = _make_store(tmp_path)
        spark = store.save_spark_checked(_make_candidate(), _unit(0), "u1", created_at=NOW).spark

        recorded = store.record_interaction("u1", spark.id, Reaction.LIKE, created_at=NOW)

        assert recorded.previous is None
        assert recorded.topic == "Science"
        assert recorded.love_count is None
        assert recorded.interaction.reaction == Reaction.LIKE
        assert store.get_interaction("u1", spark.id) == recorded.interaction
        assert store.interacted_spark_ids("u1") == {spark.id}

    def test_latest_reaction_wins(self, tmp_path: Path):
        store = _make_store(tmp_path)
        spark = store.save_spark_checked(_make_candidate(), _unit(0), "u1", created_at=NOW).spark

        store.record_interaction("u1", spark.id, Reaction.LIKE, created_at=NOW)
        recorded = store.record_interaction(
            "u1", spark.id, "love", created_at=NOW + timedelta(minutes=1)
        )

        assert recorded.previous == Reaction.LIKE
        stored = store.get_interaction("u1", spark.id)
        assert stored is not None
        assert stored.reaction == Reaction.LOVE

    def test_unknown_spark(self, tmp_path: Path):
        with pytest.raises(KeyError):
            _make_store(tmp_path).record_interaction("u1", "missing", Reaction.LIKE)

    def test_other_users_spark(self, tmp_path: Path):
        store = _make_store(tmp_path)
        spark = store.save_spark_checked(_make_candidate(), _unit(0), "u1", created_at=NOW).spark

        with pytest.raises(KeyError):
            store.record_interaction("u2", spark.id, Reaction.LIKE)

    def test_interacted_ids_filtered(self, tmp_path: Path):
        store = _make_store(tmp_path)
        a = store.save_spark_checked(_make_candidate(1), _unit(0), "u1", created_at=NOW).spark
        b = store.save_spark_checked(_make_candidate(2), _unit(1), "u1", created_at=NOW).spark
        store.record_interaction("u1", a.id, Reaction.DISLIKE)

        assert store.interacted_spark_ids("u1", [b.id]) == set()
        assert store.interacted_spark_ids("u1", [a.id, b.id]) == {a.id}
        assert store.interacted_spark_ids("u1", []) == set()

    def test_loved_sparks_by_topic(self, tmp_path: Path):
        store = _make_store(tmp_path)
        a = store.save_spark_checked(_make_candidate(1), _unit(0), "u1", created_at=NOW).spark
        b = store.save_spark_checked(
            _make_candidate(2, topic="History"), _unit(1), "u1", created_at=NOW
        ).spark
        c = store.save_spark_checked(_make_candidate(3), _unit(2), "u1", created_at=NOW).spark
        store.record_interaction("u1", a.id, Reaction.LOVE)
        store.record_interaction("u1", b.id, Reaction.LOVE)
        store.record_interaction("u1", c.id, Reaction.LIKE)

        assert [s.id for s in store.loved_sparks("u1", "Science")] == [a.id]

    def test_love_is_counted_with_the_reaction(self, tmp_path: Path):
        store = _make_store(tmp_path)
        a = store.save_spark_checked(_make_candidate(1), _unit(0), "u1", created_at=NOW).spark
        b = store.save_spark_checked(_make_candidate(2), _unit(1), "u1", created_at=NOW).spark
        c = store.save_spark_checked(
            _make_candidate(3, topic="History"), _unit(2), "u1", created_at=NOW
        ).spark

        assert store.record_interaction("u1", a.id, Reaction.LOVE).love_count == 1
        assert store.record_interaction("u1", b.id, Reaction.LOVE).love_count == 2
        assert store.record_interaction("u1", c.id, Reaction.LOVE).love_count == 1
        # Loving the same spark again is not a new love
        assert store.record_interaction("u1", a.id, Reaction.LOVE).love_count is None
        assert store.love_count("u1", "Science") == 2
        assert store.love_count("u1", "History") == 1
        assert store.love_count("u1", "Art") == 0

    def test_love_after_other_reaction_counts(self, tmp_path: Path):
        store = _make_store(tmp_path)
        spark = store.save_spark_checked(_make_candidate(), _unit(0), "u1", created_at=NOW).spark

        store.record_interaction("u1", spark.id, Reaction.LIKE)
        recorded = store.record_interaction("u1", spark.id, Reaction.LOVE)

        assert recorded.love_count == 1

    def test_failed_love_count_rolls_back_reaction(self, tmp_path: Path):
        store = _make_store(tmp_path)
        spark = store.save_spark_checked(_make_candidate(), _unit(0), "u1", created_at=NOW).spark
        failure = OperationalError("UPDATE topic_love_counts", {}, Exception("disk I/O error"))

        with (
            patch.object(SparkStore, "_add_love", side_effect=failure),
            pytest.raises(StoreError),
        ):
            store.record_interaction("u1", spark.id, Reaction.LOVE)

        assert store.get_interaction("u1", spark.id) is None
        assert store.love_count("u1", "Science") == 0

        # A retry after the failure still counts the love
        recorded = store.record_interaction("u1", spark.id, Reaction.LOVE)
        assert recorded.love_count == 1


class TestLockRecords:
    def test_insert_read_delete(self, tmp_path: Path):
        store = _make_store(tmp_path)
        assert store.read_lock("u1") is None

        assert store.insert_lock("u1", NOW) is True
        assert store.read_lock("u1") == NOW

        store.delete_lock("u1")
        assert store.read_lock("u1") is None

    def test_insert_conflict(self, tmp_path: Path):
        store = _make_store(tmp_path)
        assert store.insert_lock("u1", NOW) is True
        assert store.insert_lock("u1", NOW + timedelta(seconds=1)) is False

    def test_replace_is_compare_and_swap(self, tmp_path: Path):
        store = _make_store(tmp_path)
        old = NOW - timedelta(minutes=10)
        store.insert_lock("u1", old)

        assert store.replace_lock("u1", old, NOW) is True
        # A second reclaimer still expecting the old value loses
        assert store.replace_lock("u1", old, NOW + timedelta(seconds=1)) is False
        assert store.read_lock("u1") == NOW

    def test_delete_missing_is_noop(self, tmp_path: Path):
        _make_store(tmp_path).delete_lock("nobody")


class TestUsers:
    def test_upsert_and_get(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.upsert_user(UserProfile(id="u1", topics=["Science"], created_at=NOW))

        user = store.get_user("u1")
        assert user is not None
        assert user.topics == ["Science"]
        assert user.created_at == NOW

    def test_upsert_replaces_preferences(self, tmp_path: Path):
        store = _make_store(tmp_path)
        store.upsert_user(UserProfile(id="u1", topics=["Science"]))
        store.upsert_user(UserProfile(id="u1", topics=["Art"], preference_text="short"))

        user = store.get_user("u1")
        assert user is not None
        assert user.topics == ["Art"]
        assert user.preference_text == "short"

    def test_list_users_sorted(self, tmp_path: Path):
        store = _make_store(tmp_path)
        for user_id in ("b", "a", "c"):
            store.upsert_user(UserProfile(id=user_id, topics=["Science"]))

        assert [u.id for u in store.list_users()] == ["a", "b", "c"]

    def test_missing_user(self, tmp_path: Path):
        assert _make_store(tmp_path).get_user("ghost") is None
