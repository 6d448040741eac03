"""Love milestones and the recommendation call they trigger."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from incurio.errors import GenerationError
from incurio.shared.llm import (
    PROVIDER_ERRORS,
    TIMEOUT_ERRORS,
    call_with_backoff,
    structured_completion,
)
from incurio.sparks.models import GeneratedRecommendation, Spark
from incurio.sparks.prompts import RECOMMENDATION_SYSTEM_PROMPT, get_recommendation_prompt

logger = logging.getLogger(__name__)

MILESTONE_STEP = 5


def milestone_for(count: int, step: int = MILESTONE_STEP) -> int | None:
    """Return ``count`` if it is a milestone (a positive multiple of ``step``)."""
    if count > 0 and count % step == 0:
        return count
    return None


class RecommendationClient:
    """Asks the provider for one book, movie or documentary for a topic."""

    def __init__(
        self,
        client: object,
        *,
        provider: str = "openai",
        model: str = "gpt-4o",
        max_retries: int = 3,
        base_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._provider = provider
        self._model = model
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._sleep = sleep

    def recommend(self, topic: str, loved: list[Spark]) -> GeneratedRecommendation:
        """Recommend something for ``topic`` based on the sparks the user loved.

        Raises:
            GenerationError: No usable recommendation came back.
        """
        prompt = get_recommendation_prompt(topic, [s.content for s in loved])
        try:
            return call_with_backoff(
                lambda: structured_completion(
                    self._client,
                    GeneratedRecommendation,
                    provider=self._provider,
                    model=self._model,
                    system_prompt=RECOMMENDATION_SYSTEM_PROMPT,
                    user_prompt=prompt,
                    temperature=0.7,
                    label="recommendation",
                ),
                retries=self._max_retries,
                base_delay=self._base_delay,
                label="recommendation",
                sleep=self._sleep,
            )
        except GenerationError:
            raise
        except TIMEOUT_ERRORS as exc:
            raise GenerationError("Recommendation request timed out") from exc
        except PROVIDER_ERRORS as exc:
            raise GenerationError(f"Recommendation request failed: {exc}") from exc
