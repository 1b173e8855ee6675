"""Schema package for bounded measurements, exposures and batches.

Primary exports:
- BoundedValue: exact value or lower bound, with convergence-aware intersect
- DurationProfile: bounded per-bucket durations and weighted classification
- PassConfiguration / PassLadder: precision configuration per refinement pass
- RawMeasurement: collaborator output for one exposure
- ExposureRecord: refined exposure, identified by its Fingerprint
- Batch: one contact's keys and refined exposures

Usage:
    from exposure_refinement.data_management.schemas import BoundedValue
    BoundedValue.parse(">= 30").intersect(BoundedValue.from_exact(42))
"""

from exposure_refinement.data_management.schemas.bounded_value import (
    BoundedValue,
    UNKNOWN,
    intersect,
    total,
)
from exposure_refinement.data_management.schemas.pass_config import (
    AttenuationWeights,
    PassConfiguration,
    PassLadder,
)
from exposure_refinement.data_management.schemas.duration_profile import (
    BUCKETS,
    DurationProfile,
    classify,
)
from exposure_refinement.data_management.schemas.exposure_schema import (
    ExposureRecord,
    Fingerprint,
    RawMeasurement,
)
from exposure_refinement.data_management.schemas.batch_schema import (
    Batch,
    DiagnosisKey,
    PackagedKeys,
)

__all__ = [
    # Bounds
    "BoundedValue",
    "UNKNOWN",
    "intersect",
    "total",
    # Configuration
    "AttenuationWeights",
    "PassConfiguration",
    "PassLadder",
    # Profiles
    "BUCKETS",
    "DurationProfile",
    "classify",
    # Exposures
    "ExposureRecord",
    "Fingerprint",
    "RawMeasurement",
    # Batches
    "Batch",
    "DiagnosisKey",
    "PackagedKeys",
]
