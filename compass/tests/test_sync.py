"""Tests for key-result progress and KPI sync."""
from __future__ import annotations

import pytest

from compass.errors import InvalidStateError, NotKpiBasedError
from compass.sync import (
    COMPLETED, IN_PROGRESS, NOT_STARTED,
    KeyResultSnapshot, check_shape, compute_progress, custom_progress, is_stale, kr_status, sync_key_result,
)
from compass.thresholds import KPIValueSnapshot, ManualException


def _kr(baseline=400.0, target=500.0, **kw) -> KeyResultSnapshot:
    fields = dict(id=1, kr_type="kpi_based", kpi_id=7, kpi_baseline_value=baseline, kpi_target_value=target)
    fields.update(kw)
    return KeyResultSnapshot(**fields)


class TestSyncKeyResult:
    def test_sixty_percent_of_the_way(self):
        result = sync_key_result(_kr(), [KPIValueSnapshot("2024-01", 430), KPIValueSnapshot("2024-02", 460)])
        assert result.current_value == 460
        assert result.progress_percentage == 60.0
        assert result.status == IN_PROGRESS
        assert result.period == "2024-02"
        assert not result.used_baseline

    @pytest.mark.parametrize("current, expected", [(500, 100.0), (650, 100.0), (499, 0.0)])
    def test_flat_range_is_all_or_nothing(self, current, expected):
        result = sync_key_result(_kr(baseline=500, target=500), [KPIValueSnapshot("2024-01", current)])
        assert result.progress_percentage == expected

    def test_exceptions_are_skipped(self):
        values = [
            KPIValueSnapshot("2024-01", 450),
            KPIValueSnapshot("2024-02", 999, flag=ManualException("data glitch")),
        ]
        result = sync_key_result(_kr(), values)
        assert result.current_value == 450
        assert result.period == "2024-01"

    def test_no_usable_value_falls_back_to_baseline(self):
        result = sync_key_result(_kr(), [])
        assert result.current_value == 400
        assert result.progress_percentage == 0.0
        assert result.status == NOT_STARTED
        assert result.used_baseline

    def test_overshoot_and_undershoot_clamp(self):
        assert sync_key_result(_kr(), [KPIValueSnapshot("2024-01", 900)]).progress_percentage == 100.0
        assert sync_key_result(_kr(), [KPIValueSnapshot("2024-01", 100)]).progress_percentage == 0.0

    def test_decreasing_target(self):
        # lower is better: baseline 10 days, target 5 days
        result = sync_key_result(_kr(baseline=10, target=5), [KPIValueSnapshot("2024-01", 7.5)])
        assert result.progress_percentage == 50.0

    def test_custom_key_result_rejected(self):
        kr = KeyResultSnapshot(id=3, kr_type="custom", target_value=10)
        with pytest.raises(NotKpiBasedError):
            sync_key_result(kr, [])

    def test_not_kpi_based_is_invalid_state(self):
        assert issubclass(NotKpiBasedError, InvalidStateError)


class TestShape:
    def test_kpi_based_needs_kpi_and_target(self):
        with pytest.raises(InvalidStateError):
            check_shape(_kr(kpi_id=None))
        with pytest.raises(InvalidStateError):
            check_shape(_kr(target=None))

    def test_kpi_based_rejects_custom_target(self):
        with pytest.raises(InvalidStateError):
            check_shape(_kr(target_value=10))

    def test_custom_rejects_kpi_fields(self):
        with pytest.raises(InvalidStateError):
            check_shape(KeyResultSnapshot(id=1, kr_type="custom", target_value=10, kpi_id=7))

    def test_unknown_type(self):
        with pytest.raises(InvalidStateError):
            check_shape(KeyResultSnapshot(id=1, kr_type="vibes"))


def test_compute_progress_midpoint():
    assert compute_progress(50, 0, 100) == 50.0


@pytest.mark.parametrize("current, target, expected", [(5, 10, 50.0), (15, 10, 100.0), (5, 0, 0.0), (5, None, 0.0)])
def test_custom_progress(current, target, expected):
    assert custom_progress(current, target) == expected


@pytest.mark.parametrize("progress, status", [(0, NOT_STARTED), (0.1, IN_PROGRESS), (100, COMPLETED)])
def test_kr_status(progress, status):
    assert kr_status(progress) == status


class TestIsStale:
    def test_fresh_when_latest_usable_matches(self):
        assert not is_stale(True, "2024-02", [KPIValueSnapshot("2024-01", 1), KPIValueSnapshot("2024-02", 2)])

    def test_newer_period_is_stale(self):
        assert is_stale(True, "2024-01", [KPIValueSnapshot("2024-01", 1), KPIValueSnapshot("2024-02", 2)])

    def test_synced_value_turned_exception_is_stale(self):
        values = [KPIValueSnapshot("2024-01", 1), KPIValueSnapshot("2024-02", 2, flag=ManualException("outage"))]
        assert is_stale(True, "2024-02", values)

    def test_baseline_sync_without_values_is_fresh(self):
        assert not is_stale(True, None, [])

    def test_never_synced(self):
        assert not is_stale(False, None, [])
        assert is_stale(False, None, [KPIValueSnapshot("2024-01", 1)])
