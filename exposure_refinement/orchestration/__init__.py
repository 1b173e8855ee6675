"""Orchestration of multi-pass exposure analysis."""

from exposure_refinement.orchestration.analysis_orchestrator import (
    AnalysisOrchestrator,
    BatchState,
    PassOutcome,
    PassStatus,
)
from exposure_refinement.orchestration.cancellation import CancellationToken

__all__ = [
    "AnalysisOrchestrator",
    "BatchState",
    "CancellationToken",
    "PassOutcome",
    "PassStatus",
]
