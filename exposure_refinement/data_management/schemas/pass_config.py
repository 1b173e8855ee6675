"""Precision configurations for the refinement ladder.

Each pass hands the scanning collaborator one ``PassConfiguration``: a pair
of attenuation cutoffs partitioning signal attenuation into low / medium /
high buckets, plus the per-bucket weights used for classification.

Ladder numbering:
    A batch that has completed ``p`` passes runs pass number ``p + 1``.
    Pass number ``k`` uses ``configurations[k - 1]``. With the default eight
    thresholds the ladder holds four configurations and a batch is complete
    after three collaborator calls.
"""

from typing import Any, Dict, List, Sequence

from pydantic import BaseModel, Field, model_validator


class AttenuationWeights(BaseModel):
    """Per-bucket weights. Reference deployment: low 0, medium 6, high 0."""

    low: int = Field(0, ge=0, le=8)
    medium: int = Field(6, ge=0, le=8)
    high: int = Field(0, ge=0, le=8)

    model_config = {"frozen": True}

    def as_tuple(self) -> tuple[int, int, int]:
        """Weights in bucket order (low, medium, high)."""
        return (self.low, self.medium, self.high)


class PassConfiguration(BaseModel):
    """One rung of the ladder."""

    low_cutoff: int = Field(..., ge=0, description="Attenuation below this is 'close'")
    high_cutoff: int = Field(..., ge=0, description="Attenuation above this is 'far'")
    weights: AttenuationWeights = Field(default_factory=AttenuationWeights)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _cutoffs_ordered(self) -> "PassConfiguration":
        if self.low_cutoff >= self.high_cutoff:
            raise ValueError(
                f"low_cutoff ({self.low_cutoff}) must be below high_cutoff ({self.high_cutoff})"
            )
        return self

    @property
    def label(self) -> str:
        return f"{self.low_cutoff}/{self.high_cutoff}"

    def to_scanner_payload(self) -> Dict[str, Any]:
        """Render in the collaborator's native exposure-configuration shape.

        The eight attenuation level slots run from the strongest signal to the
        weakest: two slots high, two medium, four low.
        """
        w = self.weights
        return {
            "minimumRiskScore": 0,
            "attenuationLevelValues": [w.high, w.high, w.medium, w.medium, w.low, w.low, w.low, w.low],
            "daysSinceLastExposureLevelValues": [1, 1, 1, 1, 1, 1, 1, 1],
            "durationLevelValues": [1, 1, 1, 5, 5, 5, 5, 5],
            "transmissionRiskLevelValues": [1, 1, 1, 1, 1, 1, 1, 1],
            "attenuationDurationThresholds": [self.low_cutoff, self.high_cutoff],
        }


class PassLadder(BaseModel):
    """Ordered sequence of ``PassConfiguration`` (indexed 0..N-1)."""

    configurations: List[PassConfiguration] = Field(..., min_length=1)

    model_config = {"frozen": True}

    @classmethod
    def from_thresholds(
        cls,
        thresholds: Sequence[int],
        weights: AttenuationWeights | None = None,
    ) -> "PassLadder":
        """Group raw thresholds in (low, high) pairs, one pair per rung."""
        if not thresholds or len(thresholds) % 2:
            raise ValueError("thresholds must hold a non-empty, even number of values")
        weights = weights or AttenuationWeights()
        return cls(
            configurations=[
                PassConfiguration(
                    low_cutoff=thresholds[i],
                    high_cutoff=thresholds[i + 1],
                    weights=weights,
                )
                for i in range(0, len(thresholds), 2)
            ]
        )

    @property
    def number_of_passes(self) -> int:
        return len(self.configurations)

    def __len__(self) -> int:
        return len(self.configurations)

    def __getitem__(self, index: int) -> PassConfiguration:
        return self.configurations[index]

    def is_complete(self, passes_done: int) -> bool:
        """A batch that has done ``passes_done`` passes needs no more."""
        return passes_done + 1 >= self.number_of_passes

    def for_pass(self, pass_number: int) -> PassConfiguration:
        """Configuration for 1-based ``pass_number``."""
        if not 1 <= pass_number <= self.number_of_passes:
            raise IndexError(
                f"pass number {pass_number} outside ladder of {self.number_of_passes}"
            )
        return self.configurations[pass_number - 1]
