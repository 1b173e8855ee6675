"""Structured anomaly log for inconsistent bounds.

An anomaly is a detected inconsistency between two bounds that are expected
to describe the same quantity (for example an exact 50 minutes followed by an
exact 60 minutes for the same bucket). Anomalies never abort a merge: the
operation that found one still returns a best-effort value, records an
``AnomalyDetected`` event here and emits a WARNING log line.

Usage:
    log = AnomalyLog()
    value = a.intersect(b, anomalies=log)
    if log:
        for event in log.events:
            print(event.kind, event.message)
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

from exposure_refinement.config.logging import get_logger


class AnomalyKind(str, Enum):
    """Species of bound inconsistency.

    INCONSISTENT_BOUND: exact value below a lower bound for the same quantity
    EXACT_CONFLICT: two different exact values for the same quantity
    BELOW_LOWER_BOUND: clamp found an exact value under the refinement bound
    NEGATIVE_DIFFERENCE: subtraction would have produced a negative bound
    CLASSIFICATION_MISMATCH: weighted classification disagrees with the collaborator
    """

    INCONSISTENT_BOUND = "inconsistent_bound"
    EXACT_CONFLICT = "exact_conflict"
    BELOW_LOWER_BOUND = "below_lower_bound"
    NEGATIVE_DIFFERENCE = "negative_difference"
    CLASSIFICATION_MISMATCH = "classification_mismatch"


@dataclass(frozen=True)
class AnomalyDetected:
    """A single diagnostic event.

    Attributes:
        kind: Which inconsistency was found
        message: Human-readable description
        left: Text form of the first operand
        right: Text form of the second operand
        context: Where it happened (user, fingerprint, bucket, pass, ...)
        detected_at: UTC timestamp
    """

    kind: AnomalyKind
    message: str
    left: str = ""
    right: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AnomalyLog:
    """Thread-safe, append-only collection of ``AnomalyDetected`` events.

    ``bind(**context)`` returns a view that stamps extra context on every
    event it records while sharing the same underlying event list.
    """

    def __init__(self) -> None:
        self._events: List[AnomalyDetected] = []
        self._lock = threading.Lock()
        self._context: Dict[str, Any] = {}
        self._logger = get_logger("anomalies")

    def bind(self, **context: Any) -> "AnomalyLog":
        """Return a view of this log with additional context."""
        view = AnomalyLog.__new__(AnomalyLog)
        view._events = self._events
        view._lock = self._lock
        view._context = {**self._context, **context}
        view._logger = self._logger
        return view

    def record(
        self,
        kind: AnomalyKind,
        message: str,
        left: Any = "",
        right: Any = "",
        **context: Any,
    ) -> AnomalyDetected:
        """Record an anomaly and emit it as a WARNING log line."""
        event = AnomalyDetected(
            kind=kind,
            message=message,
            left=str(left),
            right=str(right),
            context={**self._context, **context},
        )
        with self._lock:
            self._events.append(event)
        self._logger.warning(
            f"Anomaly {kind.value}: {message}",
            left=event.left,
            right=event.right,
            **{k: str(v) for k, v in event.context.items()},
        )
        return event

    @property
    def events(self) -> List[AnomalyDetected]:
        with self._lock:
            return list(self._events)

    def of_kind(self, kind: AnomalyKind) -> List[AnomalyDetected]:
        return [e for e in self.events if e.kind == kind]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def __iter__(self) -> Iterator[AnomalyDetected]:
        return iter(self.events)


def report(
    anomalies: Optional[AnomalyLog],
    kind: AnomalyKind,
    message: str,
    left: Any = "",
    right: Any = "",
    **context: Any,
) -> None:
    """Record into ``anomalies`` when given, otherwise only log the warning."""
    if anomalies is not None:
        anomalies.record(kind, message, left, right, **context)
        return
    get_logger("anomalies").warning(
        f"Anomaly {kind.value}: {message}", left=str(left), right=str(right)
    )
