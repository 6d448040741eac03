"""Daily pipeline: background batch generation for every user."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from datetime import datetime, tzinfo

from incurio.errors import (
    BatchGenerationFailed,
    LockUnavailable,
    PipelineReport,
    StoreError,
)
from incurio.sparks import DailyBatchOrchestrator, SparkStore
from incurio.sparks.days import as_utc

logger = logging.getLogger(__name__)

GENERATION_HOURS = (4, 5, 6)


def in_generation_window(
    now: datetime,
    tz: tzinfo,
    hours: Iterable[int] = GENERATION_HOURS,
) -> bool:
    """Whether the local hour of ``now`` is one of the background ``hours``.

    The first hour is the regular run; later hours are retry windows for
    users whose batch failed or was locked earlier.
    """
    return as_utc(now).astimezone(tz).hour in set(hours)


def run_daily_generation(
    store: SparkStore,
    orchestrator: DailyBatchOrchestrator,
    *,
    default_preference_text: str = "",
    pause_seconds: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
    user_ids: list[str] | None = None,
) -> PipelineReport:
    """Make sure every user's batch for today exists.

    One user's failure never stops the run; it is recorded in the report.

    Args:
        store: Durable store to read users from.
        orchestrator: Orchestrator that checks and fills batches.
        default_preference_text: Hint used for users without their own.
        pause_seconds: Pause between users to space out provider traffic.
        sleep: Sleep function (injectable for tests).
        user_ids: Limit the run to these users.

    Returns:
        Per-user outcome counts and recorded errors.
    """
    report = PipelineReport()

    try:
        users = store.list_users()
    except StoreError as exc:
        logger.error("Cannot list users: %s", exc)
        report.add_error("users", str(exc), error_type=type(exc).__name__)
        return report

    if user_ids is not None:
        wanted = set(user_ids)
        users = [u for u in users if u.id in wanted]

    for position, user in enumerate(users):
        report.total += 1
        if not user.topics:
            logger.info("Skipping %s: no topic preferences", user.id)
            report.skipped += 1
            continue

        if position and pause_seconds > 0:
            sleep(pause_seconds)

        preference_text = user.preference_text or default_preference_text
        try:
            result = orchestrator.ensure_batch(user.id, user.topics, preference_text)
        except LockUnavailable as exc:
            report.failed += 1
            report.add_error(
                "generate", str(exc), source=user.id, error_type=type(exc).__name__
            )
            continue
        except BatchGenerationFailed as exc:
            report.failed += 1
            report.add_error(
                "generate",
                str(exc),
                source=user.id,
                error_type=type(exc.cause).__name__,
            )
            continue

        report.succeeded += 1
        logger.info(
            "Batch ready for %s (%d existing, %d generated)",
            user.id,
            result.existing_count,
            result.generated_count,
        )

    logger.info(
        "Daily generation: %d users, %d succeeded, %d failed, %d skipped",
        report.total,
        report.succeeded,
        report.failed,
        report.skipped,
    )
    return report
