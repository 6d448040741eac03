"""Topic vocabulary and the per-call topic sampler."""

from __future__ import annotations

import logging
import random

logger = logging.getLogger(__name__)

AVAILABLE_TOPICS: tuple[str, ...] = (
    "Science",
    "Technology",
    "History",
    "Nature",
    "Space",
    "Psychology",
    "Philosophy",
    "Art",
    "Music",
    "Literature",
    "Mathematics",
    "Medicine",
    "Biology",
    "Chemistry",
    "Physics",
    "Astronomy",
    "Geography",
    "Economics",
    "Politics",
    "Society",
    "Sports",
)

VARIETY_PROBABILITY = 0.2


def unknown_topics(topics: list[str]) -> list[str]:
    """Return the entries of ``topics`` that are not in the vocabulary."""
    return [t for t in topics if t not in AVAILABLE_TOPICS]


def sample_topics(
    preferred: list[str],
    *,
    variety_probability: float = VARIETY_PROBABILITY,
    vocabulary: tuple[str, ...] = AVAILABLE_TOPICS,
    rng: random.Random | None = None,
) -> list[str]:
    """Pick the topic list for one generation call.

    With probability ``variety_probability`` the user's preferences are
    replaced by 1-2 topics drawn from the rest of the vocabulary.  Otherwise,
    or when every topic is already preferred, the preferences come back
    unchanged.

    Raises:
        ValueError: ``preferred`` is empty.
    """
    if not preferred:
        raise ValueError("At least one preferred topic is required")

    rng = rng or random.Random()
    if rng.random() >= variety_probability:
        return list(preferred)

    unselected = [t for t in vocabulary if t not in preferred]
    if not unselected:
        return list(preferred)

    count = min(rng.randint(1, 2), len(unselected))
    picked = rng.sample(unselected, count)
    logger.debug("Variety pick: %s instead of %s", picked, preferred)
    return picked
