"""Error taxonomy for the spark pipeline.

Clients and the store wrap third-party exceptions into these types so that
callers only ever handle ``IncurioError`` subclasses.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from incurio.sparks.models import BatchResult


class IncurioError(Exception):
    """Base error for the spark pipeline."""


class GenerationError(IncurioError):
    """The provider returned no usable spark (bad output, timeout, API error)."""


class GenerationExhausted(GenerationError):
    """Rate-limit retries were used up without a response."""


class EmbeddingError(IncurioError):
    """The provider returned no usable embedding vector."""


class TooSimilarError(IncurioError):
    """A candidate spark is too close to one the user already has."""

    def __init__(self, score: float, threshold: float | None = None) -> None:
        self.score = score
        self.threshold = threshold
        msg = f"Similar spark found (similarity {score:.3f}"
        if threshold is not None:
            msg += f" >= {threshold:.2f}"
        super().__init__(msg + ")")


class StoreError(IncurioError):
    """Persistence failure in the durable store."""


class BatchFullError(StoreError):
    """The store refused an insert because the day's batch is already full."""


class LockUnavailable(IncurioError):
    """Another context is generating this user's batch right now."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Generation already in progress for user {user_id}")


class BatchGenerationFailed(IncurioError):
    """Daily batch generation aborted; ``cause`` holds the triggering error.

    ``result`` is the run's ``BatchResult`` in the ``failed`` state, with the
    slots committed before the failure.
    """

    def __init__(
        self,
        cause: BaseException,
        *,
        slot_index: int | None = None,
        attempts: int = 0,
        result: BatchResult | None = None,
    ) -> None:
        self.cause = cause
        self.slot_index = slot_index
        self.attempts = attempts
        self.result = result
        where = f" at slot {slot_index}" if slot_index is not None else ""
        super().__init__(f"Batch generation failed{where}: {cause}")


class PipelineError(BaseModel):
    """A single recorded failure from a pipeline run."""

    stage: str
    message: str
    source: str = ""
    error_type: str = ""


class PipelineReport(BaseModel):
    """Per-run outcome summary for the background generation pipeline."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[PipelineError] = Field(default_factory=list)

    def add_error(
        self,
        stage: str,
        message: str,
        *,
        source: str = "",
        error_type: str = "",
    ) -> None:
        self.errors.append(
            PipelineError(stage=stage, message=message, source=source, error_type=error_type)
        )

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)
