"""Bidirectional traceability between tasks and strategy.

Upward:   Task -> Key Result -> OKR -> Initiative -> KPI -> BSC Objective(s)
Downward: KPI -> Initiatives -> OKRs -> Key Results -> Tasks

Paths are built fresh from a :class:`TraceData` bundle on every call and are
returned as flat, deduplicated lists of plain dicts.  Nothing is persisted.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from compass.errors import CycleDetectedWarning, NotFoundError
from compass.graph import BACKWARD, FORWARD, CausalGraph, LinkEdge, ObjectiveNode, build_graph

log = logging.getLogger(__name__)

LEVELS = {
    "task": "task",
    "key_result": "kr",
    "okr": "okr",
    "initiative": "initiative",
    "kpi": "kpi",
    "bsc_objective": "bsc",
}

_URLS = {
    "task": "/kanban?task={id}",
    "key_result": "/okr?kr={id}",
    "okr": "/okr?okr={id}",
    "initiative": "/initiatives/{id}",
    "kpi": "/kpi/{id}",
    "bsc_objective": "/dashboard/strategy-map?objective={id}",
}


# ---------------------------------------------------------------------------
# Input bundle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KpiRef:
    id: int
    name: str
    objective_id: int | None = None


@dataclass(frozen=True)
class InitiativeRef:
    id: int
    name: str


@dataclass(frozen=True)
class OkrRef:
    id: int
    name: str
    initiative_id: int


@dataclass(frozen=True)
class KeyResultRef:
    id: int
    name: str
    okr_id: int
    kpi_id: int | None = None  # set only for kpi_based key results


@dataclass(frozen=True)
class TaskRef:
    id: int
    name: str
    kr_id: int | None = None
    kpi_id: int | None = None


@dataclass
class TraceData:
    """Everything the resolver reads, keyed by id, in insertion (id) order."""

    objectives: dict[int, ObjectiveNode] = field(default_factory=dict)
    links: list[LinkEdge] = field(default_factory=list)
    kpis: dict[int, KpiRef] = field(default_factory=dict)
    initiatives: dict[int, InitiativeRef] = field(default_factory=dict)
    okrs: dict[int, OkrRef] = field(default_factory=dict)
    key_results: dict[int, KeyResultRef] = field(default_factory=dict)
    tasks: dict[int, TaskRef] = field(default_factory=dict)
    initiative_kpis: list[tuple[int, int]] = field(default_factory=list)
    initiative_objectives: list[tuple[int, int]] = field(default_factory=list)

    def graph(self) -> CausalGraph:
        return build_graph(self.objectives.values(), self.links)

    def kpis_of_initiative(self, initiative_id: int) -> list[int]:
        return [k for i, k in self.initiative_kpis if i == initiative_id]

    def initiatives_of_kpi(self, kpi_id: int) -> list[int]:
        return [i for i, k in self.initiative_kpis if k == kpi_id]

    def objectives_of_initiative(self, initiative_id: int) -> list[int]:
        return [o for i, o in self.initiative_objectives if i == initiative_id]


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------


def make_node(node_type: str, entity_id: int, name: str, **extra: Any) -> dict[str, Any]:
    node = {
        "type": node_type,
        "level": LEVELS[node_type],
        "id": entity_id,
        "name": name,
        "url": _URLS[node_type].format(id=entity_id),
    }
    node.update(extra)
    return node


@dataclass
class TraceResult:
    nodes: list[dict[str, Any]] = field(default_factory=list)
    cycles: list[CycleDetectedWarning] = field(default_factory=list)
    _seen: set[tuple[str, int]] = field(default_factory=set, repr=False)

    @property
    def truncated(self) -> bool:
        return bool(self.cycles)

    @property
    def empty(self) -> bool:
        return not self.nodes

    def add(self, node_type: str, entity_id: int, name: str, **extra: Any) -> None:
        key = (node_type, entity_id)
        if key in self._seen:
            return
        self._seen.add(key)
        self.nodes.append(make_node(node_type, entity_id, name, **extra))

    def ids(self, node_type: str) -> list[int]:
        return [n["id"] for n in self.nodes if n["type"] == node_type]


def tail(nodes: list[dict[str, Any]], last: int | None) -> list[dict[str, Any]]:
    """Keep only the last *last* hops; ``None`` or non-positive keeps everything."""
    if not last or last <= 0:
        return list(nodes)
    return list(nodes[-last:])


def _dedupe(ids: Iterable[int | None]) -> list[int]:
    seen: set[int] = set()
    out: list[int] = []
    for i in ids:
        if i is not None and i not in seen:
            seen.add(i)
            out.append(i)
    return out


def _add_objectives(result: TraceResult, data: TraceData, start_ids: list[int]) -> None:
    if not start_ids:
        return
    reach = data.graph().reachable_from_many(start_ids, FORWARD)
    result.cycles.extend(reach.cycles)
    for oid in reach.ids:
        obj = data.objectives[oid]
        result.add("bsc_objective", obj.id, obj.name, perspective=obj.perspective)


# ---------------------------------------------------------------------------
# Traversals
# ---------------------------------------------------------------------------


def trace_up(data: TraceData, task_id: int) -> TraceResult:
    """Task -> strategy.  A task linked to neither a key result nor a KPI yields an empty path."""
    task = data.tasks.get(task_id)
    if task is None:
        raise NotFoundError("Task", task_id)

    result = TraceResult()
    kr = data.key_results.get(task.kr_id) if task.kr_id is not None else None
    if kr is None and task.kpi_id is None:
        log.info("Task %s has no key result or KPI link; nothing to trace", task_id)
        return result

    result.add("task", task.id, task.name)
    kpi_ids: list[int | None] = []
    objective_ids: list[int | None] = []
    initiative_objectives: list[int] = []

    if kr is not None:
        result.add("key_result", kr.id, kr.name)
        okr = data.okrs.get(kr.okr_id)
        initiative = data.initiatives.get(okr.initiative_id) if okr is not None else None
        if okr is not None:
            result.add("okr", okr.id, okr.name)
        if initiative is not None:
            result.add("initiative", initiative.id, initiative.name)
            kpi_ids.extend(data.kpis_of_initiative(initiative.id))
            initiative_objectives = data.objectives_of_initiative(initiative.id)
        kpi_ids.append(kr.kpi_id)
    kpi_ids.append(task.kpi_id)

    for kid in _dedupe(kpi_ids):
        kpi = data.kpis.get(kid)
        if kpi is None:
            log.warning("Task %s references missing KPI %s", task_id, kid)
            continue
        result.add("kpi", kpi.id, kpi.name)
        objective_ids.append(kpi.objective_id)
    objective_ids.extend(initiative_objectives)

    _add_objectives(result, data, [o for o in _dedupe(objective_ids) if o in data.objectives])
    return result


def trace_down(data: TraceData, kpi_id: int) -> TraceResult:
    """KPI -> every task whose upward trace passes through this KPI.

    Grouped by level (kpi, initiatives, OKRs, key results, tasks) rather than
    as one chain, since initiatives and OKRs fan out.
    """
    kpi = data.kpis.get(kpi_id)
    if kpi is None:
        raise NotFoundError("KPI", kpi_id)

    initiative_ids = _dedupe(data.initiatives_of_kpi(kpi_id))
    initiative_set = set(initiative_ids)

    okr_ids = [o.id for o in data.okrs.values() if o.initiative_id in initiative_set]
    okr_set = set(okr_ids)
    kr_ids = [kr.id for kr in data.key_results.values() if kr.okr_id in okr_set]
    # kpi_based key results on this KPI, wherever their OKR lives
    for kr in data.key_results.values():
        if kr.kpi_id == kpi_id:
            kr_ids.append(kr.id)
            okr_ids.append(kr.okr_id)

    task_ids: list[int] = []
    kr_set = set(kr_ids)
    for task in data.tasks.values():
        if task.kpi_id == kpi_id:
            task_ids.append(task.id)
            if task.kr_id is not None and task.kr_id in data.key_results:
                kr_ids.append(task.kr_id)
                okr_ids.append(data.key_results[task.kr_id].okr_id)
        elif task.kr_id is not None and task.kr_id in kr_set:
            task_ids.append(task.id)

    result = TraceResult()
    result.add("kpi", kpi.id, kpi.name)
    for iid in initiative_ids:
        ref = data.initiatives.get(iid)
        if ref is not None:
            result.add("initiative", ref.id, ref.name)
    for oid in sorted(_dedupe(okr_ids)):
        ref = data.okrs.get(oid)
        if ref is not None:
            result.add("okr", ref.id, ref.name)
    for rid in sorted(_dedupe(kr_ids)):
        ref = data.key_results.get(rid)
        if ref is not None:
            result.add("key_result", ref.id, ref.name)
    for tid in sorted(_dedupe(task_ids)):
        ref = data.tasks[tid]
        result.add("task", ref.id, ref.name)
    return result


def trace_objective(data: TraceData, objective_id: int) -> dict[str, Any]:
    """Strategy-map view of one objective: what drives it, what it serves, which KPIs measure the drivers."""
    graph = data.graph()
    drivers = graph.reachable_from(objective_id, BACKWARD)
    serves = graph.reachable_from(objective_id, FORWARD)

    def _objective_nodes(ids: Iterable[int]) -> list[dict[str, Any]]:
        return [
            make_node("bsc_objective", oid, data.objectives[oid].name, perspective=data.objectives[oid].perspective)
            for oid in ids
        ]

    driver_set = set(drivers.ids)
    kpis = [make_node("kpi", k.id, k.name) for k in data.kpis.values() if k.objective_id in driver_set]
    return {
        "objective": _objective_nodes([objective_id])[0],
        "drivers": _objective_nodes(drivers.ids[1:]),
        "serves": _objective_nodes(serves.ids[1:]),
        "kpis": kpis,
        "truncated": drivers.truncated or serves.truncated,
    }
