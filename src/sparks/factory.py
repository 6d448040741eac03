"""Builds the spark pipeline from an :class:`~incurio.config.IncurioConfig`."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from incurio.config import IncurioConfig
from incurio.shared.llm import make_client, make_openai_client, resolve_anthropic_model
from incurio.sparks.cache import DeliveryCache
from incurio.sparks.days import utcnow
from incurio.sparks.embeddings import EmbeddingClient
from incurio.sparks.generator import ContentGenerator
from incurio.sparks.lock import GenerationLock
from incurio.sparks.orchestrator import DailyBatchOrchestrator
from incurio.sparks.recommendations import RecommendationClient
from incurio.sparks.service import SparkService
from incurio.sparks.store import SparkStore

logger = logging.getLogger(__name__)


@dataclass
class SparkComponents:
    """Everything a caller needs to serve and generate sparks."""

    config: IncurioConfig
    store: SparkStore
    orchestrator: DailyBatchOrchestrator
    service: SparkService


def build_components(
    config: IncurioConfig,
    *,
    store: SparkStore | None = None,
    generation_client: object | None = None,
    embedding_client: object | None = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> SparkComponents:
    """Wire store, provider clients, lock, orchestrator and service.

    Provider clients are created from the environment unless given.
    Embeddings always go through the OpenAI embeddings API, whichever
    provider writes the sparks.
    """
    gen = config.generation
    tz = config.delivery.zone
    rng = rng or random.Random()

    if store is None:
        store = SparkStore.from_url(config.store.url, echo=config.store.echo)
    if generation_client is None:
        generation_client = make_client(gen.provider, timeout=gen.request_timeout)
    if embedding_client is None:
        if gen.provider == "openai":
            embedding_client = generation_client
        else:
            embedding_client = make_openai_client(timeout=gen.request_timeout)

    model = gen.model
    if gen.provider == "anthropic":
        model = resolve_anthropic_model(model)

    generator = ContentGenerator(
        generation_client,
        provider=gen.provider,
        model=model,
        max_retries=gen.rate_limit_retries,
        base_delay=gen.rate_limit_base_delay,
        sleep=sleep,
        rng=rng,
    )
    embedder = EmbeddingClient(
        embedding_client,
        model=gen.embedding_model,
        dimensions=gen.embedding_dimensions,
        max_retries=gen.rate_limit_retries,
        base_delay=gen.rate_limit_base_delay,
        sleep=sleep,
    )
    lock = GenerationLock(
        store,
        tz=tz,
        stale_after=timedelta(minutes=config.lock.stale_after_minutes),
        clock=clock,
    )
    orchestrator = DailyBatchOrchestrator(
        store,
        generator,
        embedder,
        lock,
        tz=tz,
        batch_size=gen.batch_size,
        max_slot_attempts=gen.max_slot_attempts,
        similarity_threshold=gen.similarity_threshold,
        variety_probability=gen.variety_probability,
        rng=rng,
        clock=clock,
    )

    recommender = None
    if config.recommendations.enabled:
        rec_model = config.recommendations.model
        if gen.provider == "anthropic":
            rec_model = resolve_anthropic_model(rec_model)
        recommender = RecommendationClient(
            generation_client,
            provider=gen.provider,
            model=rec_model,
            max_retries=gen.rate_limit_retries,
            base_delay=gen.rate_limit_base_delay,
            sleep=sleep,
        )

    service = SparkService(
        store,
        orchestrator,
        cache=DeliveryCache(Path(config.delivery.cache_dir)),
        recommender=recommender,
        milestone_step=config.recommendations.milestone_step,
        clock=clock,
    )
    logger.debug(
        "Built spark pipeline (provider=%s, model=%s, store=%s)",
        gen.provider,
        model,
        config.store.url,
    )
    return SparkComponents(
        config=config, store=store, orchestrator=orchestrator, service=service
    )
