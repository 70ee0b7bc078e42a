"""Key-result progress from KPI values.

Sync is pull-based: a new KPI value does not touch any key result until
someone asks for a sync.  The key result keeps its own snapshot of
``current_value`` / ``progress_percentage`` as of that moment.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from compass.errors import InvalidStateError, NotKpiBasedError
from compass.thresholds import KPIValueSnapshot, period_key

KPI_BASED = "kpi_based"
CUSTOM = "custom"

COMPLETED = "completed"
IN_PROGRESS = "in_progress"
NOT_STARTED = "not_started"


@dataclass(frozen=True)
class KeyResultSnapshot:
    id: int
    kr_type: str
    kpi_id: int | None = None
    kpi_baseline_value: float | None = None
    kpi_target_value: float | None = None
    target_value: float | None = None


@dataclass(frozen=True)
class SyncResult:
    current_value: float
    progress_percentage: float
    status: str
    period: str | None
    used_baseline: bool

    def to_dict(self) -> dict:
        return {
            "current_value": self.current_value,
            "progress_percentage": self.progress_percentage,
            "status": self.status,
            "period": self.period,
            "used_baseline": self.used_baseline,
        }


def kr_status(progress: float) -> str:
    if progress >= 100:
        return COMPLETED
    if progress > 0:
        return IN_PROGRESS
    return NOT_STARTED


def compute_progress(current: float, baseline: float, target: float) -> float:
    """Clamp (current - baseline) / (target - baseline) to 0..100.

    A flat range (target == baseline) is all-or-nothing.
    """
    if target == baseline:
        return 100.0 if current >= target else 0.0
    progress = (current - baseline) * 100 / (target - baseline)
    return max(0.0, min(100.0, progress))


def custom_progress(current: float, target: float | None) -> float:
    if not target or target <= 0:
        return 0.0
    return max(0.0, min(100.0, current * 100 / target))


def latest_usable_value(values: Iterable[KPIValueSnapshot]) -> KPIValueSnapshot | None:
    usable = [v for v in values if not v.is_exception]
    if not usable:
        return None
    return max(usable, key=lambda v: period_key(v.period))


def check_shape(kr: KeyResultSnapshot) -> None:
    """Exactly one of the two key-result shapes may be populated."""
    kpi_fields = (kr.kpi_id, kr.kpi_baseline_value, kr.kpi_target_value)
    if kr.kr_type == KPI_BASED:
        if kr.kpi_id is None or kr.kpi_target_value is None:
            raise InvalidStateError("kpi_based key results need kpi_id and kpi_target_value")
        if kr.target_value is not None:
            raise InvalidStateError("kpi_based key results must not carry a custom target_value")
    elif kr.kr_type == CUSTOM:
        if kr.target_value is None:
            raise InvalidStateError("custom key results need target_value")
        if any(f is not None for f in kpi_fields):
            raise InvalidStateError("custom key results must not carry KPI fields")
    else:
        raise InvalidStateError(f"Unknown key result type '{kr.kr_type}'")


def sync_key_result(kr: KeyResultSnapshot, values: Iterable[KPIValueSnapshot]) -> SyncResult:
    if kr.kr_type != KPI_BASED:
        raise NotKpiBasedError(kr.id)
    check_shape(kr)

    baseline = kr.kpi_baseline_value or 0.0
    target = float(kr.kpi_target_value)  # type: ignore[arg-type]
    latest = latest_usable_value(values)
    if latest is None:
        current, period, used_baseline = baseline, None, True
    else:
        current, period, used_baseline = latest.value, latest.period, False

    progress = compute_progress(current, baseline, target)
    return SyncResult(
        current_value=current, progress_percentage=progress,
        status=kr_status(progress), period=period, used_baseline=used_baseline,
    )


def is_stale(synced: bool, synced_period: str | None, values: Iterable[KPIValueSnapshot]) -> bool:
    """True when the KPI's latest usable value is not the one the snapshot was taken from.

    New values and exception toggles both move the latest usable value, so
    either makes a synced key result stale.  Never-synced key results are
    stale once their KPI has a usable value.
    """
    latest = latest_usable_value(values)
    current_period = latest.period if latest is not None else None
    if not synced:
        return current_period is not None
    return current_period != synced_period
