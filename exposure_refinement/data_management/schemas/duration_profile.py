"""Per-bucket exposure durations and the weighted classification derived from them.

Bucket order is fixed: low, medium, high attenuation. It is tied to the
cutoffs of the pass that produced the measurement.

    weighted_time    = Σ duration_i * weight_i
    total_time       = Σ duration_i
    classified_level = weighted_time // total_time   (None when total_time is 0)
"""

from typing import Optional, Sequence

from pydantic import BaseModel, Field, field_validator

from exposure_refinement.anomalies import AnomalyLog
from exposure_refinement.data_management.schemas.bounded_value import BoundedValue, total
from exposure_refinement.data_management.schemas.pass_config import (
    AttenuationWeights,
    PassConfiguration,
)

BUCKETS = ("low", "medium", "high")


class DurationProfile(BaseModel):
    """Exactly three bounded bucket durations, in minutes."""

    durations: tuple[BoundedValue, BoundedValue, BoundedValue]

    model_config = {"frozen": True}

    @field_validator("durations", mode="before")
    @classmethod
    def _accept_plain_minutes(cls, value):
        # Plain integers at the boundary are exact measurements
        if isinstance(value, (list, tuple)):
            return tuple(
                BoundedValue.from_exact(v) if isinstance(v, int) else v for v in value
            )
        return value

    @classmethod
    def from_minutes(
        cls,
        minutes: Sequence[int],
        triage: bool,
        cap: int = 30,
    ) -> "DurationProfile":
        """Bound the raw bucket minutes reported by one pass.

        Triage-pass buckets are lower bounds: the coarse partition is refined
        by every later pass. Refinement-pass buckets are exact unless they
        reached the collaborator's reporting cap.
        """
        if len(minutes) != len(BUCKETS):
            raise ValueError(f"expected {len(BUCKETS)} bucket durations, got {len(minutes)}")
        if triage:
            bounded = [BoundedValue.from_lower_bound(m) for m in minutes]
        else:
            bounded = [BoundedValue.from_minutes(m, cap) for m in minutes]
        return cls(durations=tuple(bounded))

    @property
    def minutes(self) -> list[int]:
        return [d.value for d in self.durations]

    @property
    def total_time(self) -> BoundedValue:
        return total(self.durations)

    def weighted_time(self, weights: AttenuationWeights) -> BoundedValue:
        terms = []
        for duration, weight in zip(self.durations, weights.as_tuple()):
            if weight == 0:
                # A zero weight contributes exactly nothing, however uncertain the bucket
                terms.append(BoundedValue.from_exact(0))
            else:
                terms.append(BoundedValue(value=duration.value * weight, exact=duration.exact))
        return total(terms)

    def classify(self, weights: AttenuationWeights) -> Optional[BoundedValue]:
        """Weighted attenuation level, or None for an empty profile."""
        total_time = self.total_time
        if total_time.value == 0:
            return None
        level = self.weighted_time(weights).divide(total_time.value)
        return BoundedValue(value=level.value, exact=level.exact and total_time.exact)

    def merge(
        self,
        incoming: "DurationProfile",
        anomalies: Optional[AnomalyLog] = None,
    ) -> "DurationProfile":
        """Bucket-wise intersect with a later, finer measurement."""
        merged = []
        for bucket, old, new in zip(BUCKETS, self.durations, incoming.durations):
            log = anomalies.bind(bucket=bucket) if anomalies is not None else None
            merged.append(old.intersect(new, anomalies=log))
        return DurationProfile(durations=tuple(merged))

    def __str__(self) -> str:
        return "/".join(str(d) for d in self.durations)


def classify(profile: DurationProfile, config: PassConfiguration) -> Optional[BoundedValue]:
    """Classify ``profile`` with the weights of the active pass."""
    return profile.classify(config.weights)
