"""Unified configuration loaded from .incurio.toml, env vars, and CLI flags.

Loading order: defaults → TOML file → env vars → CLI flags.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".incurio.toml"
CONFIG_SEARCH_PATHS = [
    Path("."),
]
GLOBAL_CONFIG_PATH = Path.home() / ".config" / "incurio" / "config.toml"

DEFAULT_PREFERENCE_TEXT = (
    "Prefer concise, interesting sparks that are easy to understand and ignite curiosity."
)


class StoreConfig(BaseModel):
    """[store] section."""

    url: str = "sqlite:///incurio.db"
    echo: bool = False


class GenerationConfig(BaseModel):
    """[generation] section."""

    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4o"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    batch_size: int = Field(default=7, ge=1)
    max_slot_attempts: int = Field(default=3, ge=1)
    similarity_threshold: float = Field(default=0.85, gt=0.0, le=1.0)
    rate_limit_retries: int = Field(default=3, ge=1)
    rate_limit_base_delay: float = Field(default=0.5, ge=0.0)
    request_timeout: float = Field(default=60.0, gt=0.0)
    variety_probability: float = Field(default=0.2, ge=0.0, le=1.0)


class LockConfig(BaseModel):
    """[lock] section."""

    stale_after_minutes: float = Field(default=5.0, gt=0.0)


class DeliveryConfig(BaseModel):
    """[delivery] section."""

    timezone: str = "UTC"
    cache_dir: str = "."

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value!r}") from exc
        return value

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class BackgroundConfig(BaseModel):
    """[background] section."""

    generation_hours: list[int] = Field(default_factory=lambda: [4, 5, 6])
    default_preference_text: str = DEFAULT_PREFERENCE_TEXT
    user_pause_seconds: float = Field(default=1.0, ge=0.0)

    @field_validator("generation_hours")
    @classmethod
    def _check_hours(cls, value: list[int]) -> list[int]:
        bad = [h for h in value if not 0 <= h <= 23]
        if bad:
            raise ValueError(f"generation_hours out of range: {bad}")
        return value


class RecommendationsConfig(BaseModel):
    """[recommendations] section."""

    enabled: bool = True
    milestone_step: int = Field(default=5, ge=1)
    model: str = "gpt-4o"


class IncurioConfig(BaseModel):
    """Top-level configuration model for the spark pipeline."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    background: BackgroundConfig = Field(default_factory=BackgroundConfig)
    recommendations: RecommendationsConfig = Field(default_factory=RecommendationsConfig)


def load_config(path: str | Path | None = None) -> IncurioConfig:
    """Load configuration from a TOML file.

    Search order:
    1. Explicit path (if provided)
    2. .incurio.toml in CWD
    3. ~/.config/incurio/config.toml

    Then overlay environment variables.

    Args:
        path: Explicit path to a TOML file.

    Returns:
        Merged IncurioConfig.
    """
    data: dict[str, object] = {}

    if path is not None:
        toml_path = Path(path)
        if toml_path.exists():
            data = _load_toml(toml_path)
        else:
            logger.warning("Config file not found: %s", toml_path)
    else:
        for search_dir in CONFIG_SEARCH_PATHS:
            candidate = search_dir / CONFIG_FILENAME
            if candidate.exists():
                data = _load_toml(candidate)
                logger.info("Loaded config from %s", candidate)
                break
        if not data and GLOBAL_CONFIG_PATH.exists():
            data = _load_toml(GLOBAL_CONFIG_PATH)
            logger.info("Loaded config from %s", GLOBAL_CONFIG_PATH)

    config = IncurioConfig.model_validate(data) if data else IncurioConfig()

    return _apply_env_vars(config)


def merge_cli_overrides(config: IncurioConfig, **cli_kwargs: object) -> IncurioConfig:
    """Overlay explicitly-set CLI flags onto the config.

    Only overrides values where the CLI flag was explicitly provided
    (i.e., not None).
    """
    data = config.model_dump()

    mapping: dict[str, tuple[str, str]] = {
        "store_url": ("store", "url"),
        "provider": ("generation", "provider"),
        "model": ("generation", "model"),
        "timezone": ("delivery", "timezone"),
        "cache_dir": ("delivery", "cache_dir"),
    }

    for key, value in cli_kwargs.items():
        if value is None or key not in mapping:
            continue
        section, field = mapping[key]
        data[section][field] = value

    return IncurioConfig.model_validate(data)


def _load_toml(path: Path) -> dict[str, object]:
    """Load a TOML file and return the data dict."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (tomllib.TOMLDecodeError, OSError) as exc:
        logger.warning("Failed to parse %s: %s", path, exc)
        return {}


def _apply_env_vars(config: IncurioConfig) -> IncurioConfig:
    """Apply environment variable overrides to config."""
    data = config.model_dump()

    env_mapping: dict[str, tuple[str, str]] = {
        "INCURIO_STORE_URL": ("store", "url"),
        "INCURIO_PROVIDER": ("generation", "provider"),
        "INCURIO_MODEL": ("generation", "model"),
        "INCURIO_EMBEDDING_MODEL": ("generation", "embedding_model"),
        "INCURIO_TIMEZONE": ("delivery", "timezone"),
        "INCURIO_CACHE_DIR": ("delivery", "cache_dir"),
    }

    for env_var, (section, field) in env_mapping.items():
        value = os.environ.get(env_var)
        if value is not None:
            data[section][field] = value

    # Numeric overrides; pydantic coerces the strings
    batch_raw = os.environ.get("INCURIO_BATCH_SIZE")
    if batch_raw is not None:
        data["generation"]["batch_size"] = batch_raw
    threshold_raw = os.environ.get("INCURIO_SIMILARITY_THRESHOLD")
    if threshold_raw is not None:
        data["generation"]["similarity_threshold"] = threshold_raw

    return IncurioConfig.model_validate(data)
