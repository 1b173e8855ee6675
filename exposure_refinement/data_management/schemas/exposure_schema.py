"""Exposure measurement and refined exposure record schemas.

RawMeasurement is what the scanning collaborator returns for one pass: plain
integers, no notion of precision. ExposureRecord is the refined, bounded view
of one logical exposure, identified by its Fingerprint and updated in place
by the MergeEngine as finer passes arrive.

JSON uses camelCase field names (``transmissionRiskLevel``); Python code uses
snake_case. Both are accepted on input.
"""

import uuid
from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

from exposure_refinement.data_management.schemas.bounded_value import BoundedValue
from exposure_refinement.data_management.schemas.duration_profile import DurationProfile

CAMEL_CONFIG = {
    "alias_generator": to_camel,
    "populate_by_name": True,
}


class Fingerprint(BaseModel):
    """Merge identity of an exposure: the day it happened and its risk level."""

    day: date
    transmission_risk_level: int = Field(..., ge=0, le=7)

    model_config = {**CAMEL_CONFIG, "frozen": True}

    def __str__(self) -> str:
        return f"{self.day.isoformat()}@{self.transmission_risk_level}"


class RawMeasurement(BaseModel):
    """One exposure as reported by the scanning collaborator."""

    date: datetime
    duration: int = Field(..., ge=0, description="Total exposure minutes")
    total_risk_score: int = Field(..., ge=0)
    transmission_risk_level: int = Field(..., ge=0, le=7)
    attenuation_value: int = Field(..., ge=0, description="Collaborator's attenuation classification")
    attenuation_durations: List[int] = Field(
        ..., min_length=3, max_length=3, description="Minutes per low/medium/high bucket"
    )

    model_config = CAMEL_CONFIG

    @field_validator("attenuation_durations")
    @classmethod
    def _non_negative(cls, value: List[int]) -> List[int]:
        if any(v < 0 for v in value):
            raise ValueError("attenuation durations must be non-negative")
        return value

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(
            day=self.date.date(),
            transmission_risk_level=self.transmission_risk_level,
        )


class ExposureRecord(BaseModel):
    """A refined exposure, owned by exactly one batch.

    Attributes:
        record_id: Stable identifier across passes
        date: Exposure timestamp from the first measurement
        transmission_risk_level: Risk level of the contact key (part of fingerprint)
        profile: Bounded per-bucket durations
        pass_count: Number of passes this record has been through
        duration: Bounded total exposure minutes
        reported_risk_score: Collaborator's raw risk score from the latest pass
        attenuation_value: Collaborator's attenuation classification from the latest pass
        total_risk_score: Weighted time recomputed from the refined profile
        classified_level: Weighted classification recomputed from the refined profile
    """

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    date: datetime
    transmission_risk_level: int = Field(..., ge=0, le=7)
    profile: DurationProfile
    pass_count: int = Field(0, ge=0)
    duration: BoundedValue = Field(default_factory=BoundedValue.unknown)
    reported_risk_score: int = Field(0, ge=0)
    attenuation_value: int = Field(0, ge=0)
    total_risk_score: BoundedValue = Field(default_factory=BoundedValue.unknown)
    classified_level: Optional[BoundedValue] = None

    model_config = CAMEL_CONFIG

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(
            day=self.date.date(),
            transmission_risk_level=self.transmission_risk_level,
        )
