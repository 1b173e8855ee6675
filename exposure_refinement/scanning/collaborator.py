"""Boundary with the external scanning collaborator.

The collaborator is an opaque oracle: given contact keys and a precision
configuration it returns raw exposure measurements. Calls are long-latency
and device bound, so the orchestrator awaits them off the event loop.

Provided implementations:
- BlockingScannerAdapter: runs a synchronous scanner in a worker thread
- ReplayScanner: serves recorded measurements from a JSON fixture, keyed by
  the configuration's cutoffs (used by the CLI and for offline analysis)

Fixture format:
    {
        "50/56": [{"date": "...", "duration": 25, "totalRiskScore": 42,
                   "transmissionRiskLevel": 5, "attenuationValue": 2,
                   "attenuationDurations": [5, 10, 10]}],
        "44/53": [...]
    }
"""

import asyncio
import json
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence, runtime_checkable

from exposure_refinement.config.logging import get_logger
from exposure_refinement.data_management.schemas import (
    DiagnosisKey,
    PassConfiguration,
    RawMeasurement,
)


@runtime_checkable
class ScanningCollaborator(Protocol):
    """Anything able to evaluate contact keys under a pass configuration."""

    async def evaluate(
        self,
        keys: Sequence[DiagnosisKey],
        config: PassConfiguration,
    ) -> Optional[List[RawMeasurement]]:
        ...


BlockingScanner = Callable[[Sequence[DiagnosisKey], PassConfiguration], List[RawMeasurement]]


class BlockingScannerAdapter:
    """Run a synchronous scanner in a background worker thread, one per call."""

    def __init__(self, scanner: BlockingScanner):
        self._scanner = scanner
        self.logger = get_logger("scanning.blocking")

    async def evaluate(
        self,
        keys: Sequence[DiagnosisKey],
        config: PassConfiguration,
    ) -> Optional[List[RawMeasurement]]:
        self.logger.debug(f"Scanning {len(keys)} keys with {config.label} in worker thread")
        return await asyncio.to_thread(self._scanner, list(keys), config)


class ReplayScanner:
    """
    Serve recorded collaborator output.

    Only measurements whose transmission risk level matches one of the
    submitted keys are returned, as the real collaborator only reports
    exposures to the keys it was given.
    """

    def __init__(self, recordings: Dict[str, List[RawMeasurement]]):
        self._recordings = recordings
        self.calls: List[str] = []
        self.logger = get_logger("scanning.replay")

    @classmethod
    def from_file(cls, path: str | Path) -> "ReplayScanner":
        """Load a fixture file (see module docstring for the format)."""
        with open(path) as f:
            raw = json.load(f)
        recordings = {
            label: [RawMeasurement.model_validate(item) for item in items]
            for label, items in raw.items()
        }
        return cls(recordings)

    async def evaluate(
        self,
        keys: Sequence[DiagnosisKey],
        config: PassConfiguration,
    ) -> Optional[List[RawMeasurement]]:
        self.calls.append(config.label)
        levels = {key.transmission_risk_level for key in keys}
        recorded = self._recordings.get(config.label, [])
        measurements = [m for m in recorded if m.transmission_risk_level in levels]
        self.logger.info(
            f"Replayed {len(measurements)} measurements for {config.label}",
            keys=len(keys),
        )
        return measurements
