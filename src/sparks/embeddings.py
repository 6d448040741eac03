"""Embedding client for spark similarity checks."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from incurio.errors import EmbeddingError, GenerationExhausted
from incurio.shared.llm import PROVIDER_ERRORS, call_with_backoff

logger = logging.getLogger(__name__)

EMBEDDING_DIM = 1536
EMBEDDING_MODEL = "text-embedding-3-small"


def embedding_text(content: str, details: str) -> str:
    """The text that represents a spark's full semantic payload."""
    return f"{content}\n\n{details}"


class EmbeddingClient:
    """Produces fixed-length vectors for candidate sparks (OpenAI embeddings API)."""

    def __init__(
        self,
        client: object,
        *,
        model: str = EMBEDDING_MODEL,
        dimensions: int = EMBEDDING_DIM,
        max_retries: int = 3,
        base_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._model = model
        self._dimensions = dimensions
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._sleep = sleep

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def embed(self, content: str, details: str) -> list[float]:
        """Embed a spark's content and details as one vector.

        Raises:
            EmbeddingError: Missing, empty or wrong-length vector, rate-limit
                retries exhausted, timeout, or any other provider error.
        """
        text = embedding_text(content, details)
        try:
            response = call_with_backoff(
                lambda: self._client.embeddings.create(model=self._model, input=text),  # type: ignore[attr-defined]
                retries=self._max_retries,
                base_delay=self._base_delay,
                label="embedding",
                sleep=self._sleep,
            )
        except GenerationExhausted as exc:
            raise EmbeddingError(str(exc)) from exc
        except PROVIDER_ERRORS as exc:
            raise EmbeddingError(f"Embedding request failed: {exc}") from exc

        data = getattr(response, "data", None) or []
        vector = data[0].embedding if data else None
        if not vector:
            raise EmbeddingError("No embedding received from provider")
        if len(vector) != self._dimensions:
            raise EmbeddingError(
                f"Embedding has {len(vector)} dimensions, expected {self._dimensions}"
            )
        return [float(x) for x in vector]
