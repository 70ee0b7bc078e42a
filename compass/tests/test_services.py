"""Service-layer tests against an in-memory SQLite database."""
from __future__ import annotations

import json
from datetime import datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from compass import services
from compass.errors import ConflictError, InvalidStateError, NotFoundError, NotKpiBasedError
from compass.models import (
    KPI, OKR, Base, BSCObjective, CausalLink, ConsultationRecord, Initiative, KeyResult, KPIValue,
    KPIVersion, RaciWorkflow, Task, WorkflowAssignee,
)

FIXED = {"mode": "fixed", "green": {"min": 90}, "yellow": {"min": 70}, "red": {"max": 70}}

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def seeded(session):
    """O1 <- K2 <- I1 <- OKR1 <- KR1 <- T1, plus a KPI-based key result on K2."""
    o1 = BSCObjective(name="Grow revenue", perspective="financial")
    o2 = BSCObjective(name="Retain customers", perspective="customer")
    session.add_all([o1, o2])
    session.flush()

    k2 = KPI(code="REV", name="Monthly revenue", objective_id=o1.id, target_value=100.0,
             thresholds_json=json.dumps(FIXED))
    k3 = KPI(code="CHURN", name="Churn", objective_id=o2.id, target_value=100.0,
             thresholds_json=json.dumps(FIXED))
    session.add_all([k2, k3])
    session.flush()

    i1 = Initiative(name="Partner program")
    i1.kpis.append(k2)
    okr = OKR(quarter="2024-Q1", objective="Win partners")
    okr.key_results.append(KeyResult(description="Sign 10 partners", kr_type="custom", target_value=10))
    okr.key_results.append(KeyResult(
        description="Revenue to 500", kr_type="kpi_based", kpi_id=k2.id,
        kpi_baseline_value=400, kpi_target_value=500,
    ))
    i1.okrs.append(okr)
    session.add(i1)
    session.flush()

    task = Task(title="Draft partner deck", kr_id=okr.key_results[0].id)
    session.add(task)
    session.commit()
    return {
        "o1": o1.id, "o2": o2.id, "k2": k2.id, "k3": k3.id, "i1": i1.id, "okr": okr.id,
        "kr_custom": okr.key_results[0].id, "kr_kpi": okr.key_results[1].id, "task": task.id,
    }


# ---------------------------------------------------------------------------
# KPI status & values
# ---------------------------------------------------------------------------


class TestKpiValues:
    def test_status_red_at_half_target(self, session, seeded):
        services.record_kpi_value(session, seeded["k2"], "2024-01", 50)
        status = services.kpi_status(session, seeded["k2"])
        assert status["status"] == "red"
        assert status["achievement"] == pytest.approx(50.0)

    def test_status_without_values_is_no_data(self, session, seeded):
        assert services.kpi_status(session, seeded["k3"])["status"] == "no_data"

    def test_duplicate_period_conflicts(self, session, seeded):
        services.record_kpi_value(session, seeded["k2"], "2024-01", 50)
        with pytest.raises(ConflictError):
            services.record_kpi_value(session, seeded["k2"], "2024-01", 60)

    @pytest.mark.parametrize("period", ["2024-13", "24-01", "2024-Q5", "January"])
    def test_bad_period(self, session, seeded, period):
        with pytest.raises(InvalidStateError):
            services.record_kpi_value(session, seeded["k2"], period, 1)

    def test_unknown_kpi(self, session, seeded):
        with pytest.raises(NotFoundError):
            services.kpi_status(session, 999)

    def test_exception_toggle(self, session, seeded):
        services.record_kpi_value(session, seeded["k2"], "2024-01", 50)
        row = services.mark_exception(session, seeded["k2"], "2024-01", "  supplier strike ")
        assert row.is_manual_exception
        assert row.exception_reason == "supplier strike"
        assert row.exception_marked_at is not None
        assert services.kpi_status(session, seeded["k2"])["status"] == "exception"

        row = services.clear_exception(session, seeded["k2"], "2024-01")
        assert not row.is_manual_exception
        assert row.exception_reason is None
        assert services.kpi_status(session, seeded["k2"])["status"] == "red"

    def test_exception_needs_reason(self, session, seeded):
        services.record_kpi_value(session, seeded["k2"], "2024-01", 50)
        with pytest.raises(InvalidStateError):
            services.mark_exception(session, seeded["k2"], "2024-01", "   ")

    def test_exception_on_missing_period(self, session, seeded):
        with pytest.raises(NotFoundError):
            services.mark_exception(session, seeded["k2"], "2030-01", "why")


class TestThresholds:
    def test_update_bumps_version(self, session, seeded):
        new = {"mode": "fixed", "green": {"min": 50}, "yellow": {"min": 30}, "red": {"max": 30}}
        result = services.update_thresholds(session, seeded["k2"], new, "lower bar for launch quarter")
        assert result["version"] == 2
        versions = session.execute(select(KPIVersion).where(KPIVersion.kpi_id == seeded["k2"])).scalars().all()
        assert [v.version for v in versions] == [2]

        row = services.record_kpi_value(session, seeded["k2"], "2024-02", 55)
        assert row.version_used == 2
        assert services.kpi_status(session, seeded["k2"])["status"] == "green"

    def test_invalid_update_rejected(self, session, seeded):
        bad = {"mode": "fixed", "green": {"min": 90}, "yellow": {"min": 70}, "red": {"max": 80}}
        with pytest.raises(InvalidStateError, match="overlap"):
            services.update_thresholds(session, seeded["k2"], bad)
        assert session.get(KPI, seeded["k2"]).versions == []


# ---------------------------------------------------------------------------
# OKRs & key results
# ---------------------------------------------------------------------------


class TestKeyResults:
    def test_sync_sixty_percent(self, session, seeded):
        services.record_kpi_value(session, seeded["k2"], "2024-01", 430)
        services.record_kpi_value(session, seeded["k2"], "2024-02", 460)
        result = services.sync_key_result(session, seeded["kr_kpi"])
        assert result["current_value"] == 460
        assert result["progress_percentage"] == 60.0
        kr = session.get(KeyResult, seeded["kr_kpi"])
        assert kr.progress_percentage == 60.0
        assert kr.status == "in_progress"
        assert kr.synced_at is not None

    def test_stale_after_value_recorded_since_sync(self, session, seeded):
        services.record_kpi_value(session, seeded["k2"], "2024-01", 430)
        services.sync_key_result(session, seeded["kr_kpi"])
        session.commit()
        kr = session.get(KeyResult, seeded["kr_kpi"])
        assert kr.synced_period == "2024-01"
        assert services.key_result_dict(session, kr)["stale"] is False

        services.record_kpi_value(session, seeded["k2"], "2024-03", 480)
        session.commit()
        assert services.key_result_dict(session, kr)["stale"] is True

    def test_stale_after_synced_value_marked_exception(self, session, seeded):
        services.record_kpi_value(session, seeded["k2"], "2024-01", 430)
        services.record_kpi_value(session, seeded["k2"], "2024-02", 460)
        services.sync_key_result(session, seeded["kr_kpi"])
        kr = session.get(KeyResult, seeded["kr_kpi"])

        services.mark_exception(session, seeded["k2"], "2024-02", "data outage")
        assert services.key_result_dict(session, kr)["stale"] is True

        services.clear_exception(session, seeded["k2"], "2024-02")
        assert services.key_result_dict(session, kr)["stale"] is False

    def test_baseline_sync_goes_stale_on_first_value(self, session, seeded):
        services.sync_key_result(session, seeded["kr_kpi"])
        kr = session.get(KeyResult, seeded["kr_kpi"])
        assert kr.synced_period is None
        assert services.key_result_dict(session, kr)["stale"] is False

        services.record_kpi_value(session, seeded["k2"], "2024-01", 430)
        assert services.key_result_dict(session, kr)["stale"] is True

    def test_never_synced_with_values_is_stale(self, session, seeded):
        services.record_kpi_value(session, seeded["k2"], "2024-01", 430)
        kr = session.get(KeyResult, seeded["kr_kpi"])
        assert services.key_result_dict(session, kr)["stale"] is True

    def test_never_synced_without_values_not_stale(self, session, seeded):
        kr = session.get(KeyResult, seeded["kr_kpi"])
        assert services.key_result_dict(session, kr)["stale"] is False

    def test_sync_custom_rejected(self, session, seeded):
        with pytest.raises(NotKpiBasedError):
            services.sync_key_result(session, seeded["kr_custom"])

    def test_sync_all(self, session, seeded):
        services.record_kpi_value(session, seeded["k2"], "2024-01", 450)
        result = services.sync_all_kpi_key_results(session)
        assert result["synced_count"] == 1
        assert result["skipped_count"] == 0
        assert result["details"][0]["progress"] == 50.0

    def test_custom_progress_and_okr_average(self, session, seeded):
        result = services.update_custom_progress(session, seeded["kr_custom"], 5)
        assert result["progress"] == 50.0
        assert result["status"] == "in_progress"
        assert result["okr_avg_progress"] == 25.0

    def test_custom_progress_on_kpi_based_rejected(self, session, seeded):
        with pytest.raises(InvalidStateError):
            services.update_custom_progress(session, seeded["kr_kpi"], 5)


class TestCreateOkr:
    def test_create_with_both_shapes(self, session, seeded):
        okr = services.create_okr(session, seeded["i1"], "2024-Q2", "Expand", [
            {"description": "Launch in 2 cities", "kr_type": "custom", "target_value": 2},
            {"description": "Revenue 600", "kr_type": "kpi_based", "kpi_id": seeded["k2"], "kpi_target_value": 600},
        ])
        detail = services.okr_detail(session, okr)
        assert detail["quarter"] == "2024-Q2"
        assert len(detail["key_results"]) == 2
        assert detail["key_results"][1]["kpi_baseline_value"] == 0.0
        assert detail["progress"] == 0.0

    @pytest.mark.parametrize("count", [0, 6])
    def test_key_result_count_bounds(self, session, seeded, count):
        krs = [{"description": f"KR {i}", "target_value": 1} for i in range(count)]
        with pytest.raises(InvalidStateError):
            services.create_okr(session, seeded["i1"], "2024-Q2", "Expand", krs)

    def test_bad_quarter(self, session, seeded):
        with pytest.raises(InvalidStateError):
            services.create_okr(session, seeded["i1"], "2024-Q5", "Expand", [{"description": "x", "target_value": 1}])

    def test_mixed_shape_rejected(self, session, seeded):
        with pytest.raises(InvalidStateError):
            services.create_okr(session, seeded["i1"], "2024-Q2", "Expand", [
                {"description": "x", "kr_type": "custom", "target_value": 1, "kpi_id": seeded["k2"]},
            ])

    def test_unknown_initiative(self, session, seeded):
        with pytest.raises(NotFoundError):
            services.create_okr(session, 999, "2024-Q2", "Expand", [{"description": "x", "target_value": 1}])


# ---------------------------------------------------------------------------
# Trace
# ---------------------------------------------------------------------------


class TestTrace:
    def test_task_up_through_orm(self, session, seeded):
        result = services.trace_task_up(session, seeded["task"])
        assert [n["type"] for n in result["path_up"]] == [
            "task", "key_result", "okr", "initiative", "kpi", "bsc_objective",
        ]
        assert result["path_down"] == list(reversed(result["path_up"]))
        assert result["traceable"]
        assert not result["truncated"]

    def test_tail(self, session, seeded):
        result = services.trace_task_up(session, seeded["task"], last=2)
        assert [n["type"] for n in result["path_up"]] == ["kpi", "bsc_objective"]
        assert result["total_nodes"] == 6

    def test_kpi_down_includes_kpi_based_kr(self, session, seeded):
        result = services.trace_kpi_down(session, seeded["k2"])
        kr_ids = [n["id"] for n in result["path_down"] if n["type"] == "key_result"]
        assert kr_ids == [seeded["kr_custom"], seeded["kr_kpi"]]
        assert [n["id"] for n in result["path_down"] if n["type"] == "task"] == [seeded["task"]]

    def test_unlinked_task(self, session, seeded):
        task = Task(title="Water plants")
        session.add(task)
        session.commit()
        result = services.trace_task_up(session, task.id)
        assert result["path_up"] == []
        assert not result["traceable"]


# ---------------------------------------------------------------------------
# Causal links & dashboard
# ---------------------------------------------------------------------------


class TestCausalLinks:
    def test_create_and_list(self, session, seeded):
        link, warnings = services.create_causal_link(session, seeded["o2"], seeded["o1"], "retention drives revenue")
        session.commit()
        assert warnings == []
        assert services.list_causal_links(session)[0]["id"] == link.id

    def test_self_loop_rejected(self, session, seeded):
        with pytest.raises(InvalidStateError):
            services.create_causal_link(session, seeded["o1"], seeded["o1"])

    def test_duplicate_rejected(self, session, seeded):
        services.create_causal_link(session, seeded["o2"], seeded["o1"])
        session.commit()
        with pytest.raises(ConflictError):
            services.create_causal_link(session, seeded["o2"], seeded["o1"])

    def test_duplicate_keeps_callers_pending_work(self, session, seeded):
        services.create_causal_link(session, seeded["o2"], seeded["o1"])
        session.commit()
        pending = BSCObjective(name="Lower costs", perspective="financial")
        session.add(pending)
        with pytest.raises(ConflictError):
            services.create_causal_link(session, seeded["o2"], seeded["o1"])
        assert pending in session.new

    def test_integrity_error_leaves_rollback_to_caller(self, session, seeded, monkeypatch):
        def failing_flush(*args, **kwargs):
            raise IntegrityError("INSERT INTO causal_links", {}, Exception("UNIQUE constraint failed"))

        rollbacks = []
        monkeypatch.setattr(session, "flush", failing_flush)
        monkeypatch.setattr(session, "rollback", lambda: rollbacks.append(True))
        with pytest.raises(ConflictError):
            services.create_causal_link(session, seeded["o2"], seeded["o1"])
        assert rollbacks == []

    def test_closing_a_cycle_warns(self, session, seeded):
        services.create_causal_link(session, seeded["o2"], seeded["o1"])
        session.commit()
        _, warnings = services.create_causal_link(session, seeded["o1"], seeded["o2"])
        assert len(warnings) == 1
        assert "cycle" in warnings[0]

    def test_delete(self, session, seeded):
        link, _ = services.create_causal_link(session, seeded["o2"], seeded["o1"])
        session.commit()
        services.delete_causal_link(session, link.id)
        session.commit()
        assert session.execute(select(CausalLink)).scalars().all() == []
        with pytest.raises(NotFoundError):
            services.delete_causal_link(session, link.id)

    def test_reachable(self, session, seeded):
        services.create_causal_link(session, seeded["o2"], seeded["o1"])
        session.commit()
        forward = services.reachable_objectives(session, seeded["o2"], "forward")
        assert [n["id"] for n in forward["objectives"]] == [seeded["o2"], seeded["o1"]]
        backward = services.reachable_objectives(session, seeded["o2"], "backward")
        assert [n["id"] for n in backward["objectives"]] == [seeded["o2"]]

    def test_reachable_bad_direction(self, session, seeded):
        with pytest.raises(InvalidStateError):
            services.reachable_objectives(session, seeded["o1"], "sideways")


class TestPerspectiveSummary:
    def test_rollup_per_perspective(self, session, seeded):
        services.record_kpi_value(session, seeded["k2"], "2024-01", 95)
        services.record_kpi_value(session, seeded["k3"], "2024-01", 40)
        services.mark_exception(session, seeded["k3"], "2024-01", "migration month")
        summary = services.perspective_summary(session)
        by_name = {p["perspective"]: p for p in summary["perspectives"]}
        assert list(by_name) == ["financial", "customer", "internal_process", "learning_growth"]
        assert by_name["financial"]["green"] == 1
        assert by_name["financial"]["achievement_rate"] == 95.0
        assert by_name["customer"]["exception"] == 1
        assert by_name["customer"]["considered"] == 0
        assert by_name["customer"]["achievement_rate"] == 0.0
        assert summary["summary"]["health"] == "green"

    def test_achievement_rate_clamped(self, session, seeded):
        services.record_kpi_value(session, seeded["k2"], "2024-01", 250)
        by_name = {p["perspective"]: p for p in services.perspective_summary(session)["perspectives"]}
        assert by_name["financial"]["achievement_rate"] == 100.0

    def test_no_data_counted_separately(self, session, seeded):
        summary = services.perspective_summary(session)
        assert summary["summary"]["no_data"] == 2
        assert summary["summary"]["health"] is None


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


class TestWorkflowProgress:
    def test_progress_through_orm(self, session):
        wf = RaciWorkflow(template_name="Budget approval", current_step="consultation",
                          step_started_at=datetime(2024, 3, 1), sla_days=3)
        wf.assignees.extend([
            WorkflowAssignee(user_id="alice", role="C"),
            WorkflowAssignee(user_id="bob", role="C"),
            WorkflowAssignee(user_id="carol", role="C"),
            WorkflowAssignee(user_id="owner", role="A"),
        ])
        wf.records.extend([
            ConsultationRecord(user_id="alice", action_type="consult", comment="ok",
                               created_at=datetime(2024, 3, 2)),
            ConsultationRecord(user_id="bob", action_type="view", created_at=datetime(2024, 3, 2)),
        ])
        session.add(wf)
        session.commit()

        payload = services.workflow_progress(session, wf.id, now=datetime(2024, 3, 10))
        assert payload["stats"] == {"total": 3, "completed": 1, "in_progress": 1, "overdue": 1, "pending": 0}
        assert [p["user_id"] for p in payload["progress"]] == ["alice", "bob", "carol"]

    def test_unknown_workflow(self, session):
        with pytest.raises(NotFoundError):
            services.workflow_progress(session, 7)


def test_get_entity_returns_none_for_missing(session):
    assert services.get_entity(session, KPIValue, 1) is None
