"""Sparks domain: daily batch generation, deduplication and delivery.

A user gets a batch of N short generated sparks per local calendar day.
The orchestrator fills the batch under a durable generation lock, the
store rejects near-duplicates by embedding similarity, and the service
serves the first spark the user has not reacted to yet.
"""

from incurio.sparks.cache import DeliveryCache
from incurio.sparks.embeddings import EmbeddingClient
from incurio.sparks.factory import SparkComponents, build_components
from incurio.sparks.generator import ContentGenerator
from incurio.sparks.lock import GenerationLock
from incurio.sparks.models import (
    BatchResult,
    BatchState,
    CandidateSpark,
    Delivery,
    DeliveryStatus,
    Interaction,
    InteractionOutcome,
    Reaction,
    RecordedInteraction,
    SlotResult,
    Spark,
    StoredSpark,
    UserProfile,
)
from incurio.sparks.orchestrator import DailyBatchOrchestrator
from incurio.sparks.recommendations import RecommendationClient
from incurio.sparks.service import SparkService
from incurio.sparks.store import SparkStore
from incurio.sparks.topics import AVAILABLE_TOPICS, sample_topics

__all__ = [
    "AVAILABLE_TOPICS",
    "BatchResult",
    "BatchState",
    "CandidateSpark",
    "ContentGenerator",
    "DailyBatchOrchestrator",
    "Delivery",
    "DeliveryCache",
    "DeliveryStatus",
    "EmbeddingClient",
    "GenerationLock",
    "Interaction",
    "InteractionOutcome",
    "Reaction",
    "RecordedInteraction",
    "RecommendationClient",
    "SlotResult",
    "Spark",
    "SparkComponents",
    "SparkService",
    "SparkStore",
    "StoredSpark",
    "UserProfile",
    "build_components",
    "sample_topics",
]
