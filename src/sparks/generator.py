"""Content generator client: one candidate spark per call."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable

from incurio.errors import GenerationError
from incurio.shared.llm import (
    PROVIDER_ERRORS,
    TIMEOUT_ERRORS,
    call_with_backoff,
    structured_completion,
)
from incurio.sparks.models import CandidateSpark
from incurio.sparks.prompts import (
    SPARK_SYSTEM_PROMPT,
    get_spark_json_system_prompt,
    get_spark_user_prompt,
)

logger = logging.getLogger(__name__)

_SEED_RANGE = 2**31


class ContentGenerator:
    """Generates candidate sparks through a generative-text provider.

    Every attempt (including rate-limit retries) draws a fresh seed so that
    retries are not deterministic replays of the previous request.
    """

    def __init__(
        self,
        client: object,
        *,
        provider: str = "openai",
        model: str = "gpt-4o",
        max_retries: int = 3,
        base_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._client = client
        self._provider = provider
        self._model = model
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._sleep = sleep
        self._rng = rng or random.Random()

    def generate(
        self,
        topics: list[str],
        preference_text: str = "",
        *,
        max_retries: int | None = None,
    ) -> CandidateSpark:
        """Generate one candidate spark whose topic is one of ``topics``.

        Raises:
            ValueError: ``topics`` is empty.
            GenerationExhausted: Every attempt was rate-limited.
            GenerationError: No parseable result, a timeout, any other
                provider error, or a topic outside ``topics``.
        """
        if not topics:
            raise ValueError("At least one topic is required")

        retries = max_retries if max_retries is not None else self._max_retries

        try:
            candidate = call_with_backoff(
                lambda: self._request(topics, preference_text),
                retries=retries,
                base_delay=self._base_delay,
                label="spark",
                sleep=self._sleep,
            )
        except GenerationError:
            raise
        except TIMEOUT_ERRORS as exc:
            raise GenerationError("Spark generation timed out") from exc
        except PROVIDER_ERRORS as exc:
            raise GenerationError(f"Spark generation failed: {exc}") from exc

        if candidate.topic not in topics:
            logger.error("Invalid topic received: %s (allowed: %s)", candidate.topic, topics)
            raise GenerationError(
                f"Invalid topic in structured response: {candidate.topic!r}"
            )

        logger.debug(
            "Generated spark: content=%d chars, details=%d chars, topic=%s",
            len(candidate.content),
            len(candidate.details),
            candidate.topic,
        )
        return candidate

    def _request(self, topics: list[str], preference_text: str) -> CandidateSpark:
        seed = self._rng.randrange(_SEED_RANGE)
        if self._provider == "anthropic":
            system_prompt = get_spark_json_system_prompt()
            user_prompt = get_spark_user_prompt(topics, preference_text, variation_key=seed)
        else:
            system_prompt = SPARK_SYSTEM_PROMPT
            user_prompt = get_spark_user_prompt(topics, preference_text)

        return structured_completion(
            self._client,
            CandidateSpark,
            provider=self._provider,
            model=self._model,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            seed=seed,
            temperature=1.0,
            label="spark",
        )
