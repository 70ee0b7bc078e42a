"""Shared business logic for the Compass API, MCP server, and CLI.

ORM rows are turned into immutable snapshots here and handed to the pure
engine modules (thresholds, graph, sync, trace, progress).  Functions that
write leave the commit to the caller.
"""
from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from compass import progress as progress_mod
from compass import sync as sync_mod
from compass import thresholds as th
from compass import trace as trace_mod
from compass.errors import ConflictError, InvalidStateError, NotFoundError, NotKpiBasedError
from compass.graph import DIRECTIONS, LinkEdge, ObjectiveNode
from compass.models import (
    KPI, OKR, PERSPECTIVES, BSCObjective, CausalLink, Initiative, KeyResult,
    KPIValue, KPIVersion, RaciWorkflow, Task, initiative_kpis, initiative_objectives,
)
from compass.utils import isoformat, json_parse, utcnow

log = logging.getLogger(__name__)

PERIOD_RE = re.compile(r"^\d{4}-(Q[1-4]|(0[1-9]|1[0-2]))$")
QUARTER_RE = re.compile(r"^\d{4}-Q[1-4]$")
MAX_KEY_RESULTS = 5
CONSULTED = "C"

# ---------------------------------------------------------------------------
# Lookup helpers
# ---------------------------------------------------------------------------


def get_entity(session: Session, model, entity_id: int):
    return session.execute(select(model).where(model.id == entity_id)).scalars().first()


def require(session: Session, model, entity_id: int, label: str):
    obj = get_entity(session, model, entity_id)
    if obj is None:
        raise NotFoundError(label, entity_id)
    return obj


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def value_snapshot(row: KPIValue) -> th.KPIValueSnapshot:
    flag: th.ValueFlag
    if row.is_manual_exception:
        flag = th.ManualException(reason=row.exception_reason or "")
    else:
        flag = th.Normal()
    return th.KPIValueSnapshot(period=row.period, value=row.value, target_value=row.target_value, flag=flag)


def kpi_snapshot(kpi: KPI) -> th.KPISnapshot:
    return th.KPISnapshot(
        id=kpi.id, name=kpi.name, target_value=kpi.target_value,
        thresholds=json_parse(kpi.thresholds_json, {}),
        values=tuple(value_snapshot(v) for v in kpi.values),
        perspective=kpi.perspective,
    )


def kr_snapshot(kr: KeyResult) -> sync_mod.KeyResultSnapshot:
    return sync_mod.KeyResultSnapshot(
        id=kr.id, kr_type=kr.kr_type, kpi_id=kr.kpi_id,
        kpi_baseline_value=kr.kpi_baseline_value, kpi_target_value=kr.kpi_target_value,
        target_value=kr.target_value,
    )


def workflow_snapshot(wf: RaciWorkflow) -> progress_mod.WorkflowSnapshot:
    return progress_mod.WorkflowSnapshot(
        id=wf.id, step_started_at=wf.step_started_at, sla_days=wf.sla_days,
        assignees=tuple(a.user_id for a in wf.assignees if a.role == CONSULTED),
        records=tuple(
            progress_mod.ConsultationEntry(
                user_id=r.user_id, action_type=r.action_type, comment=r.comment, created_at=r.created_at,
            )
            for r in wf.records
        ),
        template_name=wf.template_name, current_step=wf.current_step, status=wf.status,
    )


def load_trace_data(session: Session) -> trace_mod.TraceData:
    """One fetch per entity class; the resolver works on the result in memory."""
    data = trace_mod.TraceData()
    for o in session.execute(select(BSCObjective).order_by(BSCObjective.id)).scalars():
        data.objectives[o.id] = ObjectiveNode(id=o.id, name=o.name, perspective=o.perspective)
    for link in session.execute(select(CausalLink).order_by(CausalLink.id)).scalars():
        data.links.append(LinkEdge(from_id=link.from_objective_id, to_id=link.to_objective_id, id=link.id))
    for k in session.execute(select(KPI).order_by(KPI.id)).scalars():
        data.kpis[k.id] = trace_mod.KpiRef(id=k.id, name=k.name, objective_id=k.objective_id)
    for i in session.execute(select(Initiative).order_by(Initiative.id)).scalars():
        data.initiatives[i.id] = trace_mod.InitiativeRef(id=i.id, name=i.name)
    for o in session.execute(select(OKR).order_by(OKR.id)).scalars():
        data.okrs[o.id] = trace_mod.OkrRef(id=o.id, name=o.objective, initiative_id=o.initiative_id)
    for kr in session.execute(select(KeyResult).order_by(KeyResult.id)).scalars():
        data.key_results[kr.id] = trace_mod.KeyResultRef(
            id=kr.id, name=kr.description, okr_id=kr.okr_id,
            kpi_id=kr.kpi_id if kr.kr_type == sync_mod.KPI_BASED else None,
        )
    for t in session.execute(select(Task).order_by(Task.id)).scalars():
        data.tasks[t.id] = trace_mod.TaskRef(id=t.id, name=t.title, kr_id=t.kr_id, kpi_id=t.kpi_id)
    data.initiative_kpis = [tuple(r) for r in session.execute(
        select(initiative_kpis.c.initiative_id, initiative_kpis.c.kpi_id)
        .order_by(initiative_kpis.c.initiative_id, initiative_kpis.c.kpi_id)
    ).all()]
    data.initiative_objectives = [tuple(r) for r in session.execute(
        select(initiative_objectives.c.initiative_id, initiative_objectives.c.objective_id)
        .order_by(initiative_objectives.c.initiative_id, initiative_objectives.c.objective_id)
    ).all()]
    return data


# ---------------------------------------------------------------------------
# Trace
# ---------------------------------------------------------------------------


def _trace_payload(result: trace_mod.TraceResult, last: int | None) -> dict[str, Any]:
    return {
        "truncated": result.truncated,
        "warnings": [c.describe() for c in result.cycles],
        "traceable": not result.empty,
        "total_nodes": len(result.nodes),
        "last": last,
    }


def trace_task_up(session: Session, task_id: int, last: int | None = None) -> dict[str, Any]:
    result = trace_mod.trace_up(load_trace_data(session), task_id)
    path_up = trace_mod.tail(result.nodes, last)
    return {
        "task_id": task_id,
        "path_up": path_up,
        "path_down": list(reversed(path_up)),
        **_trace_payload(result, last),
    }


def trace_kpi_down(session: Session, kpi_id: int, last: int | None = None) -> dict[str, Any]:
    result = trace_mod.trace_down(load_trace_data(session), kpi_id)
    return {
        "kpi_id": kpi_id,
        "path_down": trace_mod.tail(result.nodes, last),
        **_trace_payload(result, last),
    }


def trace_objective(session: Session, objective_id: int) -> dict[str, Any]:
    return trace_mod.trace_objective(load_trace_data(session), objective_id)


# ---------------------------------------------------------------------------
# KPI status & values
# ---------------------------------------------------------------------------


def kpi_status(session: Session, kpi_id: int) -> dict[str, Any]:
    kpi = require(session, KPI, kpi_id, "KPI")
    result = th.evaluate_status(kpi_snapshot(kpi))
    return {"kpi_id": kpi.id, "name": kpi.name, **result.to_dict()}


def kpi_value_dict(row: KPIValue) -> dict[str, Any]:
    return {
        "id": row.id, "kpi_id": row.kpi_id, "period": row.period, "value": row.value,
        "target_value": row.target_value, "is_manual_exception": row.is_manual_exception,
        "exception_reason": row.exception_reason,
        "exception_marked_at": isoformat(row.exception_marked_at),
        "version_used": row.version_used,
    }


def _current_version(kpi: KPI) -> int:
    return max((v.version for v in kpi.versions), default=1)


def record_kpi_value(
    session: Session, kpi_id: int, period: str, value: float, target_value: float | None = None,
) -> KPIValue:
    """Append a value for a new period. Existing periods are immutable apart from the exception flag."""
    kpi = require(session, KPI, kpi_id, "KPI")
    if not PERIOD_RE.match(period):
        raise InvalidStateError(f"Period '{period}' must look like YYYY-MM or YYYY-Qn")
    existing = session.execute(
        select(KPIValue).where(KPIValue.kpi_id == kpi_id, KPIValue.period == period)
    ).scalars().first()
    if existing is not None:
        raise ConflictError(f"KPI {kpi_id} already has a value for {period}")
    row = KPIValue(
        period=period, value=value, target_value=target_value,
        version_used=_current_version(kpi),
    )
    kpi.values.append(row)
    session.flush()
    return row


def _value_row(session: Session, kpi_id: int, period: str) -> KPIValue:
    row = session.execute(
        select(KPIValue).where(KPIValue.kpi_id == kpi_id, KPIValue.period == period)
    ).scalars().first()
    if row is None:
        raise NotFoundError("KPI value", f"{kpi_id}/{period}")
    return row


def mark_exception(session: Session, kpi_id: int, period: str, reason: str) -> KPIValue:
    if not (reason or "").strip():
        raise InvalidStateError("An exception reason is required")
    row = _value_row(session, kpi_id, period)
    row.is_manual_exception = True
    row.exception_reason = reason.strip()
    row.exception_marked_at = utcnow()
    log.info("KPI %s period %s marked as manual exception: %s", kpi_id, period, row.exception_reason)
    return row


def clear_exception(session: Session, kpi_id: int, period: str) -> KPIValue:
    row = _value_row(session, kpi_id, period)
    row.is_manual_exception = False
    row.exception_reason = None
    row.exception_marked_at = None
    log.info("KPI %s period %s exception cleared", kpi_id, period)
    return row


def update_thresholds(
    session: Session, kpi_id: int, thresholds: dict[str, Any], change_reason: str = "",
) -> dict[str, Any]:
    kpi = require(session, KPI, kpi_id, "KPI")
    check = th.validate_thresholds(thresholds)
    if not check.valid:
        raise InvalidStateError("; ".join(check.errors))
    version = _current_version(kpi) + 1
    kpi.thresholds_json = json.dumps(thresholds)
    kpi.versions.append(KPIVersion(
        version=version, thresholds_json=kpi.thresholds_json, change_reason=change_reason,
    ))
    session.flush()
    return {"kpi_id": kpi.id, "version": version, "thresholds": thresholds, "warnings": check.warnings}


# ---------------------------------------------------------------------------
# OKRs & key results
# ---------------------------------------------------------------------------


def key_result_dict(session: Session, kr: KeyResult) -> dict[str, Any]:
    stale = False
    if kr.kr_type == sync_mod.KPI_BASED and kr.kpi_id is not None:
        kpi = get_entity(session, KPI, kr.kpi_id)
        if kpi is not None:
            values = [value_snapshot(v) for v in kpi.values]
            stale = sync_mod.is_stale(kr.synced_at is not None, kr.synced_period, values)
    return {
        "id": kr.id, "okr_id": kr.okr_id, "description": kr.description, "kr_type": kr.kr_type,
        "kpi_id": kr.kpi_id, "kpi_baseline_value": kr.kpi_baseline_value,
        "kpi_target_value": kr.kpi_target_value, "target_value": kr.target_value, "unit": kr.unit,
        "current_value": kr.current_value, "progress_percentage": kr.progress_percentage,
        "status": kr.status, "synced_at": isoformat(kr.synced_at), "synced_period": kr.synced_period,
        "stale": stale,
    }


def okr_progress(okr: OKR) -> float:
    if not okr.key_results:
        return 0.0
    return sum(kr.progress_percentage or 0.0 for kr in okr.key_results) / len(okr.key_results)


def okr_detail(session: Session, okr: OKR) -> dict[str, Any]:
    return {
        "id": okr.id, "initiative_id": okr.initiative_id, "quarter": okr.quarter,
        "objective": okr.objective, "progress": okr_progress(okr),
        "key_results": [key_result_dict(session, kr) for kr in okr.key_results],
    }


def create_okr(
    session: Session, initiative_id: int, quarter: str, objective: str, key_results: list[dict[str, Any]],
) -> OKR:
    require(session, Initiative, initiative_id, "Initiative")
    if not QUARTER_RE.match(quarter):
        raise InvalidStateError(f"Quarter '{quarter}' must look like YYYY-Qn")
    if not 1 <= len(key_results) <= MAX_KEY_RESULTS:
        raise InvalidStateError(f"An OKR needs between 1 and {MAX_KEY_RESULTS} key results")

    okr = OKR(initiative_id=initiative_id, quarter=quarter, objective=objective)
    for spec in key_results:
        kr = KeyResult(
            description=spec["description"],
            kr_type=spec.get("kr_type", sync_mod.CUSTOM),
            kpi_id=spec.get("kpi_id"),
            kpi_baseline_value=spec.get("kpi_baseline_value"),
            kpi_target_value=spec.get("kpi_target_value"),
            target_value=spec.get("target_value"),
            unit=spec.get("unit"),
        )
        sync_mod.check_shape(kr_snapshot(kr))
        if kr.kr_type == sync_mod.KPI_BASED:
            require(session, KPI, kr.kpi_id, "KPI")
            if kr.kpi_baseline_value is None:
                kr.kpi_baseline_value = 0.0
        okr.key_results.append(kr)
    session.add(okr)
    session.flush()
    return okr


def sync_key_result(session: Session, kr_id: int) -> dict[str, Any]:
    """Pull the linked KPI's latest usable value into the key result's snapshot."""
    kr = require(session, KeyResult, kr_id, "Key result")
    snapshot = kr_snapshot(kr)
    if snapshot.kr_type != sync_mod.KPI_BASED:
        raise NotKpiBasedError(kr_id)
    sync_mod.check_shape(snapshot)
    kpi = require(session, KPI, kr.kpi_id, "KPI")
    result = sync_mod.sync_key_result(snapshot, (value_snapshot(v) for v in kpi.values))
    kr.current_value = result.current_value
    kr.progress_percentage = result.progress_percentage
    kr.status = result.status
    kr.synced_at = utcnow()
    kr.synced_period = result.period
    log.info("Synced key result %s from KPI %s: %.1f%%", kr.id, kpi.id, result.progress_percentage)
    return {
        "kr_id": kr.id, "kpi_id": kpi.id,
        "kpi_baseline_value": kr.kpi_baseline_value, "kpi_target_value": kr.kpi_target_value,
        **result.to_dict(),
    }


def sync_all_kpi_key_results(session: Session) -> dict[str, Any]:
    krs = session.execute(
        select(KeyResult).where(KeyResult.kr_type == sync_mod.KPI_BASED).order_by(KeyResult.id)
    ).scalars().all()
    details: list[dict[str, Any]] = []
    for kr in krs:
        try:
            outcome = sync_key_result(session, kr.id)
        except (InvalidStateError, NotFoundError) as exc:
            log.warning("Skipping key result %s: %s", kr.id, exc)
            details.append({"kr_id": kr.id, "status": "skipped", "reason": str(exc)})
            continue
        details.append({
            "kr_id": kr.id,
            "status": "baseline" if outcome["used_baseline"] else "synced",
            "progress": outcome["progress_percentage"],
        })
    return {
        "synced_count": sum(1 for d in details if d["status"] != "skipped"),
        "skipped_count": sum(1 for d in details if d["status"] == "skipped"),
        "details": details,
    }


def update_custom_progress(session: Session, kr_id: int, current_value: float) -> dict[str, Any]:
    kr = require(session, KeyResult, kr_id, "Key result")
    if kr.kr_type == sync_mod.KPI_BASED:
        raise InvalidStateError("kpi_based key results are updated by syncing their KPI")
    progress = sync_mod.custom_progress(current_value, kr.target_value)
    kr.current_value = current_value
    kr.progress_percentage = progress
    kr.status = sync_mod.kr_status(progress)
    session.flush()
    return {"kr_id": kr.id, "progress": progress, "status": kr.status, "okr_avg_progress": okr_progress(kr.okr)}


# ---------------------------------------------------------------------------
# Causal links
# ---------------------------------------------------------------------------


def causal_link_dict(link: CausalLink) -> dict[str, Any]:
    return {
        "id": link.id, "from_objective_id": link.from_objective_id,
        "to_objective_id": link.to_objective_id, "description": link.description,
    }


def list_causal_links(session: Session) -> list[dict[str, Any]]:
    links = session.execute(select(CausalLink).order_by(CausalLink.id)).scalars().all()
    return [causal_link_dict(link) for link in links]


def create_causal_link(
    session: Session, from_objective_id: int, to_objective_id: int, description: str = "",
) -> tuple[CausalLink, list[str]]:
    """Create a link; returns it with warnings for any cycle it closes."""
    if from_objective_id == to_objective_id:
        raise InvalidStateError("A causal link cannot point an objective at itself")
    require(session, BSCObjective, from_objective_id, "Objective")
    require(session, BSCObjective, to_objective_id, "Objective")
    duplicate = session.execute(select(CausalLink).where(
        CausalLink.from_objective_id == from_objective_id,
        CausalLink.to_objective_id == to_objective_id,
    )).scalars().first()
    if duplicate is not None:
        raise ConflictError("Causal link already exists")

    link = CausalLink(from_objective_id=from_objective_id, to_objective_id=to_objective_id, description=description)
    session.add(link)
    try:
        session.flush()
    except IntegrityError as exc:
        raise ConflictError("Causal link already exists") from exc

    warnings = []
    for cycle in load_trace_data(session).graph().find_cycles():
        if from_objective_id in cycle and to_objective_id in cycle:
            msg = "causal cycle: " + " -> ".join(str(o) for o in [*cycle, cycle[0]])
            log.warning("Link %s closes a loop (%s)", link.id, msg)
            warnings.append(msg)
    return link, warnings


def delete_causal_link(session: Session, link_id: int) -> None:
    link = require(session, CausalLink, link_id, "Causal link")
    session.delete(link)


def reachable_objectives(session: Session, objective_id: int, direction: str = "forward") -> dict[str, Any]:
    if direction not in DIRECTIONS:
        raise InvalidStateError(f"direction must be one of {', '.join(DIRECTIONS)}")
    data = load_trace_data(session)
    reach = data.graph().reachable_from(objective_id, direction)
    return {
        "objective_id": objective_id,
        "direction": direction,
        "objectives": [
            trace_mod.make_node("bsc_objective", oid, data.objectives[oid].name,
                                perspective=data.objectives[oid].perspective)
            for oid in reach.ids
        ],
        "truncated": reach.truncated,
        "warnings": [c.describe() for c in reach.cycles],
    }


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def perspective_summary(session: Session) -> dict[str, Any]:
    """Per-perspective status rollup; exception periods stay out of the colour counts."""
    kpis = session.execute(select(KPI).order_by(KPI.id)).scalars().all()
    objectives = {o.id: o.perspective for o in session.execute(select(BSCObjective)).scalars()}

    results: dict[str, list[th.StatusResult]] = defaultdict(list)
    achievements: dict[str, list[float]] = defaultdict(list)
    unevaluable = 0
    for kpi in kpis:
        perspective = kpi.perspective or objectives.get(kpi.objective_id or -1)
        if perspective not in PERSPECTIVES:
            continue
        try:
            result = th.evaluate_status(kpi_snapshot(kpi))
        except InvalidStateError as exc:
            log.warning("KPI %s has malformed thresholds: %s", kpi.id, exc)
            unevaluable += 1
            continue
        results[perspective].append(result)
        if result.colour and result.achievement is not None:
            achievements[perspective].append(result.achievement)

    perspectives = []
    for perspective in PERSPECTIVES:
        roll = th.rollup(results[perspective])
        rates = achievements[perspective]
        rate = sum(rates) / len(rates) if rates else 0.0
        perspectives.append({
            "perspective": perspective,
            **roll.to_dict(),
            "achievement_rate": max(0.0, min(100.0, rate)),
        })

    overall = th.rollup(r for rs in results.values() for r in rs)
    return {"perspectives": perspectives, "summary": overall.to_dict(), "unevaluable": unevaluable}


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


def workflow_progress(session: Session, workflow_id: int, now: datetime | None = None) -> dict[str, Any]:
    wf = require(session, RaciWorkflow, workflow_id, "Workflow")
    return progress_mod.compute_progress(workflow_snapshot(wf), now=now).to_dict()

