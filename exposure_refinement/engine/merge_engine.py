"""Merge engine folding successive pass measurements into refined exposure records.

Pass 0 (triage):
    Measurements become new records directly. Their bucket durations are
    lower bounds because the triage partition is refined by every later pass.

Pass k > 0 (refinement):
    Measurements are grouped by fingerprint. A record sharing a fingerprint
    gets the bucket-wise intersect of its old and new profiles and its
    derived fields recomputed. Records without a matching measurement are
    left untouched.

Measurements are only merged within one transmission risk level; results
for other levels belong to other batches and are ignored here.

Inconsistent bounds never abort a merge. They are recorded in the engine's
AnomalyLog with the fingerprint, pass and bucket they concern.
"""

import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from exposure_refinement.anomalies import AnomalyKind, AnomalyLog
from exposure_refinement.config.logging import get_logger
from exposure_refinement.config.settings import settings
from exposure_refinement.data_management.schemas import (
    BoundedValue,
    DurationProfile,
    ExposureRecord,
    Fingerprint,
    PassConfiguration,
    RawMeasurement,
)

_RECORD_NAMESPACE = uuid.UUID("5b0b7f0e-6f1e-4b43-9c55-0d1f2a1e7a11")


@dataclass
class MergeResult:
    """Outcome of one merge.

    Attributes:
        records: Resulting records (new records for pass 0, the given ones otherwise)
        refined: Fingerprints that received a measurement this pass
        ignored: Measurements skipped (other risk level or no matching record)
        duplicates: Measurements superseded by a later one with the same fingerprint
    """

    records: List[ExposureRecord]
    refined: List[Fingerprint] = field(default_factory=list)
    ignored: int = 0
    duplicates: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "records": len(self.records),
            "refined": len(self.refined),
            "ignored": self.ignored,
            "duplicates": self.duplicates,
        }


class MergeEngine:
    """
    Merges raw collaborator measurements into ExposureRecords.

    Usage:
        engine = MergeEngine()
        result = engine.merge_batch(batch.exposures, measurements, pass_index=1,
                                    config=ladder.for_pass(2),
                                    transmission_risk_level=batch.transmission_risk_level)

    Attributes:
        anomalies: Log receiving every inconsistency found while merging
        duration_cap: Collaborator reporting cap for a single duration, in minutes
    """

    def __init__(
        self,
        anomalies: Optional[AnomalyLog] = None,
        duration_cap: Optional[int] = None,
    ):
        self.anomalies = anomalies if anomalies is not None else AnomalyLog()
        self.duration_cap = duration_cap if duration_cap is not None else settings.duration_cap_minutes
        self.logger = get_logger("engine.merge")

    def merge_batch(
        self,
        records: List[ExposureRecord],
        measurements: Iterable[RawMeasurement],
        pass_index: int,
        config: PassConfiguration,
        transmission_risk_level: Optional[int] = None,
    ) -> MergeResult:
        """
        Merge one pass worth of measurements.

        Args:
            records: Existing records to refine (ignored for pass 0)
            measurements: Raw collaborator output for this pass
            pass_index: Passes already completed by the records (0 = triage)
            config: Configuration the collaborator ran with
            transmission_risk_level: Only merge measurements at this level (None = all)

        Returns:
            MergeResult describing the resulting records
        """
        incoming, ignored, duplicates = self._group(measurements, transmission_risk_level)

        if pass_index == 0:
            created = [
                self._new_record(measurement, config)
                for measurement in incoming.values()
            ]
            self.logger.info(
                f"Triage pass created {len(created)} records",
                ignored=ignored,
                duplicates=duplicates,
            )
            return MergeResult(
                records=created,
                refined=[r.fingerprint for r in created],
                ignored=ignored,
                duplicates=duplicates,
            )

        refined: List[Fingerprint] = []
        matched = set()
        for record in records:
            fingerprint = record.fingerprint
            measurement = incoming.get(fingerprint)
            if measurement is None:
                continue
            matched.add(fingerprint)
            self._refine(record, measurement, pass_index, config)
            refined.append(fingerprint)

        unmatched = len(set(incoming) - matched)
        if unmatched:
            self.logger.debug(f"{unmatched} measurements had no matching record")

        self.logger.info(
            f"Refinement pass {pass_index} refined {len(refined)} of {len(records)} records",
            ignored=ignored + unmatched,
            duplicates=duplicates,
        )
        return MergeResult(
            records=records,
            refined=refined,
            ignored=ignored + unmatched,
            duplicates=duplicates,
        )

    def _group(
        self,
        measurements: Iterable[RawMeasurement],
        transmission_risk_level: Optional[int],
    ) -> tuple[Dict[Fingerprint, RawMeasurement], int, int]:
        """Index measurements by fingerprint; the last one for a fingerprint wins."""
        grouped: Dict[Fingerprint, RawMeasurement] = {}
        ignored = 0
        duplicates = 0
        for measurement in measurements:
            if (
                transmission_risk_level is not None
                and measurement.transmission_risk_level != transmission_risk_level
            ):
                ignored += 1
                continue
            fingerprint = measurement.fingerprint
            if fingerprint in grouped:
                duplicates += 1
                self.logger.warning(f"Duplicate measurement for {fingerprint}, keeping the later one")
            grouped[fingerprint] = measurement
        return grouped, ignored, duplicates

    def _new_record(self, measurement: RawMeasurement, config: PassConfiguration) -> ExposureRecord:
        fingerprint = measurement.fingerprint
        record = ExposureRecord(
            record_id=str(uuid.uuid5(_RECORD_NAMESPACE, str(fingerprint))),
            date=measurement.date,
            transmission_risk_level=measurement.transmission_risk_level,
            profile=DurationProfile.from_minutes(
                measurement.attenuation_durations, triage=True, cap=self.duration_cap
            ),
            duration=BoundedValue.from_lower_bound(measurement.duration),
            reported_risk_score=measurement.total_risk_score,
            attenuation_value=measurement.attenuation_value,
        )
        self._recompute(record, config, pass_index=0)
        return record

    def _refine(
        self,
        record: ExposureRecord,
        measurement: RawMeasurement,
        pass_index: int,
        config: PassConfiguration,
    ) -> None:
        log = self.anomalies.bind(fingerprint=str(record.fingerprint), pass_index=pass_index)
        incoming = DurationProfile.from_minutes(
            measurement.attenuation_durations, triage=False, cap=self.duration_cap
        )
        record.profile = record.profile.merge(incoming, anomalies=log)

        measured = BoundedValue.from_minutes(measurement.duration, self.duration_cap)
        total_time = record.profile.total_time
        record.duration = record.duration.intersect(measured, anomalies=log.bind(field="duration")).clamp(
            lower=total_time,
            upper=total_time,
            anomalies=log.bind(field="duration"),
        )
        record.reported_risk_score = measurement.total_risk_score
        record.attenuation_value = measurement.attenuation_value
        self._recompute(record, config, pass_index)

    def _recompute(self, record: ExposureRecord, config: PassConfiguration, pass_index: int) -> None:
        """Refresh the fields derived from the profile and cross-check the collaborator."""
        record.total_risk_score = record.profile.weighted_time(config.weights)
        record.classified_level = record.profile.classify(config.weights)

        level = record.classified_level
        if level is not None and not level.matches(record.attenuation_value):
            self.anomalies.record(
                AnomalyKind.CLASSIFICATION_MISMATCH,
                "weighted classification disagrees with the reported attenuation value",
                level,
                record.attenuation_value,
                fingerprint=str(record.fingerprint),
                pass_index=pass_index,
                config=config.label,
            )
