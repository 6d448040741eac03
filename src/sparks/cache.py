"""JSON-backed device-local cache of each user's next spark.

This is an optimization only: entries are confirmed against the durable
store before use and cleared whenever the user records an interaction.
"""

from __future__ import annotations

import json
import logging
from datetime import date
from pathlib import Path

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CACHE_FILENAME = ".incurio-delivery-cache.json"


class CachedDelivery(BaseModel):
    """The next spark for one user on one local day."""

    day: date
    spark_id: str
    batch_index: int = 0


class _CacheData(BaseModel):
    """Internal wrapper for JSON serialization."""

    entries: dict[str, CachedDelivery] = Field(default_factory=dict)


class DeliveryCache:
    """Per-user next-spark cache persisted to a single JSON file.

    Loads the file on init and saves after every mutation.
    """

    def __init__(self, cache_dir: Path) -> None:
        self._path = cache_dir / CACHE_FILENAME
        self._data = self._load()

    def _load(self) -> _CacheData:
        try:
            if not self._path.exists():
                return _CacheData()
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            return _CacheData.model_validate(raw)
        except OSError as exc:
            logger.warning("Cannot read delivery cache at %s: %s", self._path, exc)
            return _CacheData()
        except (json.JSONDecodeError, ValueError, KeyError):
            logger.warning("Corrupt delivery cache at %s, starting fresh", self._path)
            return _CacheData()

    def _save(self) -> None:
        # In-memory entries stay valid when the file cannot be written
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(self._data.model_dump_json(indent=2), encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot write delivery cache at %s: %s", self._path, exc)

    def get(self, user_id: str, day: date) -> CachedDelivery | None:
        """Return the cached next spark for ``user_id`` on ``day``, if any."""
        entry = self._data.entries.get(user_id)
        if entry is None or entry.day != day:
            return None
        return entry

    def put(self, user_id: str, day: date, spark_id: str, batch_index: int = 0) -> None:
        self._data.entries[user_id] = CachedDelivery(
            day=day, spark_id=spark_id, batch_index=batch_index
        )
        self._save()

    def invalidate(self, user_id: str) -> None:
        """Drop the user's entry; a no-op when there is none."""
        if self._data.entries.pop(user_id, None) is not None:
            self._save()
