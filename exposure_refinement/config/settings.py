"""Application settings using Pydantic BaseSettings for environment variable management."""

from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


# 44, 47, 50, 53, 56, 59, 62, 65 regrouped into one (low, high) pair per pass
DEFAULT_MULTIPASS_THRESHOLDS = [50, 56, 44, 53, 59, 65, 47, 62]


class Settings(BaseSettings):
    """
    Global application settings loaded from environment variables.

    Every variable is prefixed with ``EXPOSURE_`` (e.g. ``EXPOSURE_LOG_LEVEL``).

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log output format (json for production, console for dev)
        store_path: JSON file backing the batch store (None keeps it in memory)
        pass_timeout_seconds: Per-pass collaborator timeout (None waits forever)
        multipass_thresholds: Raw attenuation thresholds, grouped in pairs
        weight_low: Weight of the low attenuation bucket
        weight_medium: Weight of the medium attenuation bucket
        weight_high: Weight of the high attenuation bucket
        duration_cap_minutes: Collaborator reporting cap for a single duration
        strict_bound_parsing: Reject malformed bound text instead of defaulting to 0
    """

    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: json or console"
    )
    store_path: Optional[str] = Field(
        default=None,
        description="Path of the persisted batch JSON file"
    )
    pass_timeout_seconds: Optional[float] = Field(
        default=None,
        description="Seconds to wait for the scanning collaborator per pass"
    )
    multipass_thresholds: list[int] = Field(
        default_factory=lambda: list(DEFAULT_MULTIPASS_THRESHOLDS),
        description="Attenuation duration thresholds, two per pass"
    )
    weight_low: int = Field(default=0, description="Low attenuation bucket weight")
    weight_medium: int = Field(default=6, description="Medium attenuation bucket weight")
    weight_high: int = Field(default=0, description="High attenuation bucket weight")
    duration_cap_minutes: int = Field(
        default=30,
        description="Durations at or above this are reported as lower bounds"
    )
    strict_bound_parsing: bool = Field(
        default=True,
        description="Raise ParseError on malformed bound text"
    )

    model_config = {
        "env_prefix": "EXPOSURE_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }

    @field_validator("multipass_thresholds")
    @classmethod
    def _thresholds_come_in_pairs(cls, value: list[int]) -> list[int]:
        if not value or len(value) % 2:
            raise ValueError("multipass_thresholds must hold a non-empty, even number of values")
        return value

    @field_validator("pass_timeout_seconds")
    @classmethod
    def _timeout_positive(cls, value: Optional[float]) -> Optional[float]:
        if value is not None and value <= 0:
            raise ValueError("pass_timeout_seconds must be positive")
        return value

    def build_ladder(self) -> "PassLadder":  # noqa: F821
        """Build the refinement ladder described by these settings."""
        from exposure_refinement.data_management.schemas.pass_config import (
            AttenuationWeights,
            PassLadder,
        )

        weights = AttenuationWeights(
            low=self.weight_low,
            medium=self.weight_medium,
            high=self.weight_high,
        )
        return PassLadder.from_thresholds(self.multipass_thresholds, weights)


# Singleton instance - import this throughout the application
settings = Settings()
