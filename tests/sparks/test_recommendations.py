"""Tests for love milestones and RecommendationClient."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from incurio.errors import GenerationError
from incurio.sparks.models import GeneratedRecommendation, RecommendationKind, Spark
from incurio.sparks.recommendations import RecommendationClient, milestone_for


def _make_spark(n: int, topic: str = "Space") -> Spark:
    return Spark(
        id=f"s{n}",
        user_id="u1",
        content=f"Loved spark {n}",
        details="...",
        topic=topic,
        created_at=datetime(2026, 3, 14, tzinfo=UTC),
    )


def _make_client(parsed: object) -> MagicMock:
    message = MagicMock()
    message.parsed = parsed
    choice = MagicMock()
    choice.message = message
    completion = MagicMock()
    completion.choices = [choice]
    client = MagicMock()
    client.chat.completions.parse.return_value = completion
    return client


class TestMilestoneFor:
    @pytest.mark.parametrize("count", [5, 10, 15, 50])
    def test_multiples_of_five(self, count: int):
        assert milestone_for(count) == count

    @pytest.mark.parametrize("count", [0, 1, 4, 6, 9, 11])
    def test_other_counts(self, count: int):
        assert milestone_for(count) is None

    def test_custom_step(self):
        assert milestone_for(3, step=3) == 3
        assert milestone_for(5, step=3) is None


class TestRecommend:
    def test_returns_recommendation(self):
        rec = GeneratedRecommendation(
            kind=RecommendationKind.DOCUMENTARY,
            title="Cosmos",
            why_recommended="You keep loving sparks about the universe.",
            details="A thirteen-part journey through space and time.",
        )
        client = _make_client(rec)
        recommender = RecommendationClient(client, sleep=MagicMock())

        result = recommender.recommend("Space", [_make_spark(1), _make_spark(2)])

        assert result == rec
        kwargs = client.chat.completions.parse.call_args.kwargs
        assert kwargs["response_format"] is GeneratedRecommendation
        prompt = kwargs["messages"][1]["content"]
        assert "Topic: Space" in prompt
        assert "- Loved spark 1" in prompt

    def test_missing_result(self):
        recommender = RecommendationClient(_make_client(None), sleep=MagicMock())
        with pytest.raises(GenerationError):
            recommender.recommend("Space", [])

    def test_provider_error_wrapped(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        client = MagicMock()
        client.chat.completions.parse.side_effect = openai.APIConnectionError(request=request)
        recommender = RecommendationClient(client, sleep=MagicMock())

        with pytest.raises(GenerationError):
            recommender.recommend("Space", [])
