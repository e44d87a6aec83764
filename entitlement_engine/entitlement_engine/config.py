"""Engine configuration loaded from environment variables."""

from __future__ import annotations

import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class EngineSettings(BaseSettings):
    """Lifecycle and retention settings loaded with the ``ENGINE_`` prefix.

    Trial length and grace period live here so that every consumer of the
    lifecycle clock (feature gate, retention scheduler, poll responses)
    reads the same values instead of duplicating constants.
    """

    model_config = SettingsConfigDict(
        env_prefix="ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Length of the free trial granted at checkout.
    trial_length_days: int = Field(default=14, ge=1)

    # Days a past-due tenant keeps access after the paid-through date.
    grace_days: int = Field(default=3, ge=0)

    # Elapsed trial days at which retention steps 1, 2 and 3 fire.
    retention_day_offsets: list[int] = Field(default_factory=lambda: [9, 11, 13])

    # Raise on unknown billing event types instead of ignoring them.  Unset
    # means strict in the dev platform environment and lenient elsewhere.
    strict_event_types: bool | None = None

    @field_validator("retention_day_offsets")
    @classmethod
    def _offsets_ascending(cls, v: list[int]) -> list[int]:
        if not v:
            raise ValueError("retention_day_offsets must not be empty")
        if any(b <= a for a, b in zip(v, v[1:])):
            raise ValueError(f"retention_day_offsets must be strictly ascending, got {v}")
        if v[0] < 0:
            raise ValueError("retention_day_offsets must be non-negative")
        if len(v) > 3:
            raise ValueError(f"at most 3 retention steps are supported, got {len(v)}")
        return v


def load_engine_settings(**overrides: object) -> EngineSettings:
    """Load settings from environment, with optional overrides for testing."""
    settings = EngineSettings(**overrides)  # type: ignore[arg-type]
    logger.debug(
        "Engine settings: trial_length_days=%d grace_days=%d offsets=%s",
        settings.trial_length_days,
        settings.grace_days,
        settings.retention_day_offsets,
    )
    return settings
