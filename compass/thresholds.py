"""Threshold evaluation: KPI value history + band config -> traffic-light status.

Bands
-----
Both modes share one band shape::

    {"green": {"min": 90}, "yellow": {"min": 70}, "red": {"max": 70}}

``value`` is accepted in place of ``min``/``max``.  The highest band whose
floor is met wins; anything below the yellow floor is red.

- ``fixed``   -- floors are percentages of target (achievement).
- ``dynamic`` -- floors were resolved from history by an external job and
  stored under ``thresholds["resolved"]``; they are in the KPI's own units
  and are applied to the raw value.  Nothing here computes statistics.

Exceptions and missing data are states of their own (``exception``,
``no_data``) and never fold into red.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from compass.errors import InvalidStateError

GREEN = "green"
YELLOW = "yellow"
RED = "red"
NO_DATA = "no_data"
EXCEPTION = "exception"

COLOURS = (GREEN, YELLOW, RED)
STATUSES = (GREEN, YELLOW, RED, NO_DATA, EXCEPTION)
MODES = ("fixed", "dynamic")

_PERIOD_RE = re.compile(r"^(\d{4})-(?:Q([1-4])|(\d{2}))$")


# ---------------------------------------------------------------------------
# Value snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Normal:
    """A regular measured value."""


@dataclass(frozen=True)
class ManualException:
    """A value an operator excluded from colour aggregation."""

    reason: str


ValueFlag = Normal | ManualException


@dataclass(frozen=True)
class KPIValueSnapshot:
    period: str
    value: float
    target_value: float | None = None
    flag: ValueFlag = field(default_factory=Normal)

    @property
    def is_exception(self) -> bool:
        match self.flag:
            case ManualException():
                return True
            case Normal():
                return False


@dataclass(frozen=True)
class KPISnapshot:
    id: int
    name: str
    target_value: float | None
    thresholds: dict[str, Any]
    values: tuple[KPIValueSnapshot, ...] = ()
    perspective: str | None = None

    @property
    def latest(self) -> KPIValueSnapshot | None:
        if not self.values:
            return None
        return max(self.values, key=lambda v: period_key(v.period))


def period_key(period: str) -> tuple[int, int, str]:
    """Sort key for ``YYYY-MM`` / ``YYYY-Qn`` periods (quarters sort at their last month)."""
    m = _PERIOD_RE.match(period or "")
    if not m:
        return (0, 0, period or "")
    year, quarter, month = m.groups()
    return (int(year), int(quarter) * 3 if quarter else int(month), period)


# ---------------------------------------------------------------------------
# Bands
# ---------------------------------------------------------------------------


def _bound(band: Any, key: str) -> float | None:
    if not isinstance(band, dict):
        return None
    for k in (key, "value"):
        raw = band.get(k)
        if raw is None:
            continue
        try:
            return float(raw)
        except (TypeError, ValueError):
            return None
    return None


@dataclass(frozen=True)
class Bands:
    green_min: float
    yellow_min: float
    basis: str  # "achievement" | "value"

    def classify(self, measured: float) -> str:
        if measured >= self.green_min:
            return GREEN
        if measured >= self.yellow_min:
            return YELLOW
        return RED


def resolve_bands(thresholds: dict[str, Any] | None) -> Bands:
    """Turn a stored threshold config into numeric bands. Raises InvalidStateError."""
    if not isinstance(thresholds, dict) or not thresholds.get("mode"):
        raise InvalidStateError("Threshold mode is not set")
    mode = thresholds["mode"]
    if mode == "fixed":
        source, basis = thresholds, "achievement"
    elif mode == "dynamic":
        source, basis = thresholds.get("resolved"), "value"
        if not isinstance(source, dict):
            raise InvalidStateError("Dynamic thresholds have no resolved bands yet")
    else:
        raise InvalidStateError(f"Unknown threshold mode '{mode}'")

    green_min = _bound(source.get("green"), "min")
    yellow_min = _bound(source.get("yellow"), "min")
    if green_min is None or yellow_min is None:
        raise InvalidStateError("Thresholds need numeric green and yellow floors")
    if green_min < yellow_min:
        raise InvalidStateError(f"Green floor {green_min} is below yellow floor {yellow_min}")
    return Bands(green_min=green_min, yellow_min=yellow_min, basis=basis)


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def validate_thresholds(thresholds: dict[str, Any] | None) -> ValidationResult:
    """Check a threshold config before it is saved. Never raises."""
    errors: list[str] = []
    warnings: list[str] = []

    if not isinstance(thresholds, dict) or not thresholds.get("mode"):
        return ValidationResult(False, ["Threshold mode is not set"], [])
    mode = thresholds["mode"]
    if mode not in MODES:
        return ValidationResult(False, [f"Unknown threshold mode '{mode}'"], [])

    source = thresholds
    if mode == "dynamic":
        source = thresholds.get("resolved")
        if not isinstance(source, dict):
            warnings.append("Dynamic thresholds have no resolved bands yet; status stays unevaluable until resolved")
            return ValidationResult(True, errors, warnings)

    green_min = _bound(source.get("green"), "min")
    yellow_min = _bound(source.get("yellow"), "min")
    yellow_max = _bound(source.get("yellow"), "max")
    red_max = _bound(source.get("red"), "max")

    if green_min is None:
        errors.append("Green floor is missing")
    if yellow_min is None:
        errors.append("Yellow floor is missing")
    if green_min is not None and yellow_min is not None and green_min < yellow_min:
        errors.append("Green and yellow ranges overlap")
    if green_min is not None and yellow_max is not None and yellow_max > green_min:
        errors.append("Green and yellow ranges overlap")
    if yellow_min is not None and red_max is not None and red_max > yellow_min:
        errors.append("Yellow and red ranges overlap")
    if red_max is None:
        warnings.append("Red band not set; values below the yellow floor are red")
    if red_max is not None and yellow_min is not None and red_max < yellow_min:
        warnings.append(f"Values in [{red_max}, {yellow_min}) fall between red and yellow and are treated as red")

    return ValidationResult(not errors, errors, warnings)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatusResult:
    status: str
    reason: str
    achievement: float | None = None
    period: str | None = None
    value: float | None = None

    @property
    def colour(self) -> str | None:
        return self.status if self.status in COLOURS else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status, "reason": self.reason,
            "achievement": self.achievement, "period": self.period, "value": self.value,
        }


def _target_for(kpi: KPISnapshot, latest: KPIValueSnapshot) -> float | None:
    return latest.target_value if latest.target_value is not None else kpi.target_value


def achievement_of(kpi: KPISnapshot, latest: KPIValueSnapshot) -> float | None:
    target = _target_for(kpi, latest)
    if not target:
        return None
    return latest.value / target * 100


def evaluate_status(kpi: KPISnapshot) -> StatusResult:
    latest = kpi.latest
    if latest is None:
        return StatusResult(NO_DATA, "no values recorded")

    match latest.flag:
        case ManualException(reason=reason):
            return StatusResult(
                EXCEPTION, f"manual exception: {reason}",
                period=latest.period, value=latest.value,
            )
        case Normal():
            pass

    achievement = achievement_of(kpi, latest)
    dynamic = isinstance(kpi.thresholds, dict) and kpi.thresholds.get("mode") == "dynamic"
    if achievement is None and not dynamic:
        return StatusResult(
            RED, "achievement undefined (target is zero or missing)",
            None, latest.period, latest.value,
        )

    bands = resolve_bands(kpi.thresholds)
    if bands.basis == "value":
        status = bands.classify(latest.value)
        reason = f"value {latest.value:g} against resolved floors green>={bands.green_min:g}, yellow>={bands.yellow_min:g}"
        return StatusResult(status, reason, achievement, latest.period, latest.value)

    status = bands.classify(achievement)
    reason = f"achievement {achievement:.1f}% against floors green>={bands.green_min:g}, yellow>={bands.yellow_min:g}"
    return StatusResult(status, reason, achievement, latest.period, latest.value)


# ---------------------------------------------------------------------------
# Rollup
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StatusRollup:
    total: int
    green: int
    yellow: int
    red: int
    no_data: int
    exception: int

    @property
    def considered(self) -> int:
        return self.green + self.yellow + self.red

    @property
    def health(self) -> str | None:
        if self.red:
            return RED
        if self.yellow:
            return YELLOW
        if self.green:
            return GREEN
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total, "green": self.green, "yellow": self.yellow, "red": self.red,
            "no_data": self.no_data, "exception": self.exception,
            "considered": self.considered, "health": self.health,
        }


def rollup(results: Iterable[StatusResult]) -> StatusRollup:
    """Aggregate statuses; exception and no-data entries stay out of the colour counts."""
    counts = dict.fromkeys(STATUSES, 0)
    total = 0
    for result in results:
        total += 1
        counts[result.status] += 1
    return StatusRollup(
        total=total, green=counts[GREEN], yellow=counts[YELLOW], red=counts[RED],
        no_data=counts[NO_DATA], exception=counts[EXCEPTION],
    )

