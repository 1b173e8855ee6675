"""Bounded-uncertainty integer used for every refined measurement.

A ``BoundedValue`` is either an exact measurement or a lower bound ("at
least N") produced by a pass that could not observe the quantity precisely.
Values are immutable; every operation returns a new instance and every
operation is total. Inconsistent inputs are reported to an ``AnomalyLog``
instead of raising, so an analysis always produces some answer.

Text form:
    "12"     exact 12
    ">= 30"  at least 30
"""

import re
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from exposure_refinement.anomalies import AnomalyKind, AnomalyLog, report
from exposure_refinement.errors import ParseError

_BOUND_PATTERN = re.compile(r"^\s*(?P<lower>>=\s*)?(?P<value>\d+)\s*$")


class BoundedValue(BaseModel):
    """Non-negative integer paired with an exactness flag.

    ``exact=False`` means "at least ``value``".
    """

    value: int = Field(0, ge=0, description="Measured value or lower bound")
    exact: bool = Field(False, description="True when value is a precise measurement")

    model_config = {"frozen": True}

    # -- construction -----------------------------------------------------

    @classmethod
    def from_exact(cls, value: int) -> "BoundedValue":
        return cls(value=value, exact=True)

    @classmethod
    def from_lower_bound(cls, value: int) -> "BoundedValue":
        return cls(value=value, exact=False)

    @classmethod
    def unknown(cls) -> "BoundedValue":
        """Nothing is known beyond non-negativity."""
        return cls(value=0, exact=False)

    @classmethod
    def from_minutes(cls, minutes: int, cap: int) -> "BoundedValue":
        """Duration as reported by the collaborator, which saturates at ``cap``."""
        return cls(value=minutes, exact=minutes < cap)

    @classmethod
    def parse(cls, text: str, strict: Optional[bool] = None) -> "BoundedValue":
        """Parse ``"N"`` (exact) or ``">= N"`` (lower bound).

        Args:
            text: Text to parse
            strict: Raise ``ParseError`` on malformed text. When False, malformed
                text yields the unknown bound. Defaults to the
                ``strict_bound_parsing`` setting.

        Raises:
            ParseError: Malformed text in strict mode
        """
        if strict is None:
            from exposure_refinement.config.settings import settings

            strict = settings.strict_bound_parsing

        match = _BOUND_PATTERN.match(text) if isinstance(text, str) else None
        if match is None:
            if strict:
                raise ParseError(str(text))
            return cls.unknown()

        return cls(value=int(match.group("value")), exact=match.group("lower") is None)

    # -- queries ----------------------------------------------------------

    @property
    def is_zero(self) -> bool:
        return self.exact and self.value == 0

    def as_lower_bound(self) -> "BoundedValue":
        if not self.exact:
            return self
        return BoundedValue.from_lower_bound(self.value)

    def matches(self, value: int) -> bool:
        """Whether an observed ``value`` is consistent with this bound."""
        if self.exact:
            return self.value == value
        return self.value <= value

    # -- arithmetic -------------------------------------------------------

    def add(self, other: "BoundedValue") -> "BoundedValue":
        return BoundedValue(value=self.value + other.value, exact=self.exact and other.exact)

    def subtract(
        self,
        other: "BoundedValue",
        anomalies: Optional[AnomalyLog] = None,
    ) -> "BoundedValue":
        """Difference; only meaningful when ``other`` is exact.

        A difference below zero is floored at zero and reported.
        """
        if not other.exact:
            return BoundedValue.unknown()
        difference = self.value - other.value
        if difference < 0:
            report(
                anomalies,
                AnomalyKind.NEGATIVE_DIFFERENCE,
                "subtraction would produce a negative bound",
                self,
                other,
            )
            difference = 0
        return BoundedValue(value=difference, exact=self.exact)

    def divide(self, scalar: int) -> "BoundedValue":
        if scalar <= 0:
            raise ValueError(f"divisor must be positive, got {scalar}")
        return BoundedValue(value=self.value // scalar, exact=self.exact)

    def __add__(self, other: "BoundedValue") -> "BoundedValue":
        if not isinstance(other, BoundedValue):
            return NotImplemented
        return self.add(other)

    def __sub__(self, other: "BoundedValue") -> "BoundedValue":
        if not isinstance(other, BoundedValue):
            return NotImplemented
        return self.subtract(other)

    def __floordiv__(self, scalar: int) -> "BoundedValue":
        if not isinstance(scalar, int):
            return NotImplemented
        return self.divide(scalar)

    # -- refinement -------------------------------------------------------

    def clamp(
        self,
        lower: "BoundedValue",
        upper: "BoundedValue",
        anomalies: Optional[AnomalyLog] = None,
    ) -> "BoundedValue":
        """Apply a refinement lower bound and a candidate exact upper value.

        An exact value is returned unchanged. A lower bound is raised to
        ``lower.value`` and becomes exact when it meets an exact ``upper``.
        """
        if self.exact:
            if self.value < lower.value:
                report(
                    anomalies,
                    AnomalyKind.BELOW_LOWER_BOUND,
                    "exact value is below the refinement lower bound",
                    self,
                    lower,
                )
            return self
        raised = max(self.value, lower.value)
        if upper.exact and raised == upper.value:
            return BoundedValue.from_exact(raised)
        return BoundedValue.from_lower_bound(raised)

    def intersect(
        self,
        other: "BoundedValue",
        anomalies: Optional[AnomalyLog] = None,
    ) -> "BoundedValue":
        """Combine two observations of the same quantity at different precision."""
        if not self.exact and not other.exact:
            return BoundedValue.from_lower_bound(max(self.value, other.value))

        if self.exact and other.exact:
            if self.value == other.value:
                return self
            report(
                anomalies,
                AnomalyKind.EXACT_CONFLICT,
                "two different exact values for the same quantity",
                self,
                other,
            )
            return BoundedValue.from_exact(max(self.value, other.value))

        exact, bound = (self, other) if self.exact else (other, self)
        if exact.value < bound.value:
            report(
                anomalies,
                AnomalyKind.INCONSISTENT_BOUND,
                "exact value is below an earlier lower bound",
                self,
                other,
            )
        return exact

    def __str__(self) -> str:
        if self.exact:
            return str(self.value)
        return f">= {self.value}"


UNKNOWN = BoundedValue.unknown()


def total(values: Iterable[BoundedValue]) -> BoundedValue:
    """Sum of bounds; exact only when every term is exact."""
    result = BoundedValue.from_exact(0)
    for value in values:
        result = result.add(value)
    return result


def intersect(
    left: BoundedValue,
    right: BoundedValue,
    anomalies: Optional[AnomalyLog] = None,
) -> BoundedValue:
    return left.intersect(right, anomalies=anomalies)
