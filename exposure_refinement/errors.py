"""Exception types raised by the refinement engine.

None of these is fatal to the process. The worst outcome is a batch that
stops advancing until the pass is retried.

Bound inconsistencies are not exceptions: they are recorded as
``AnomalyDetected`` events in an ``AnomalyLog`` (see ``exposure_refinement.anomalies``).
"""

from typing import Optional


class ParseError(ValueError):
    """Malformed bounded-value text such as ``">= x"`` or ``"abc"``."""

    def __init__(self, text: str, reason: str = "not a bounded value") -> None:
        super().__init__(f"cannot parse {text!r}: {reason}")
        self.text = text
        self.reason = reason


class CollaboratorFailure(RuntimeError):
    """The scanning collaborator failed or returned nothing for a pass.

    The batch stays at its last completed pass and the pass can be retried.
    """

    def __init__(self, user_name: str, pass_number: int, message: str) -> None:
        super().__init__(f"pass {pass_number} for {user_name!r} failed: {message}")
        self.user_name = user_name
        self.pass_number = pass_number


class PassTimedOut(CollaboratorFailure):
    """The collaborator did not answer within the configured per-pass timeout."""

    def __init__(self, user_name: str, pass_number: int, timeout: float) -> None:
        super().__init__(user_name, pass_number, f"no result after {timeout:g}s")
        self.timeout = timeout


class StalePassResult(RuntimeError):
    """A pass result arrived for a batch that has moved past that pass or was re-imported."""

    def __init__(
        self,
        user_name: str,
        expected_pass: int,
        actual_pass: int,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"result for pass index {expected_pass} of {user_name!r} is stale "
            f"({reason or f'batch is at {actual_pass}'})"
        )
        self.user_name = user_name
        self.expected_pass = expected_pass
        self.actual_pass = actual_pass
        self.reason = reason


class UnknownBatch(KeyError):
    """No batch is stored for the requested user."""

    def __init__(self, user_name: str) -> None:
        super().__init__(user_name)
        self.user_name = user_name

    def __str__(self) -> str:
        return f"no batch for user {self.user_name!r}"


class PersistenceFailure(OSError):
    """Reading or writing the persisted batch file failed."""

    def __init__(self, path: str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause else ""
        super().__init__(f"batch store persistence failed for {path}{detail}")
        self.path = path


__all__ = [
    "ParseError",
    "CollaboratorFailure",
    "PassTimedOut",
    "StalePassResult",
    "UnknownBatch",
    "PersistenceFailure",
]
