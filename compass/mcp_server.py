from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from compass import services
from compass.config import get_settings
from compass.db import get_session, init_db
from compass.errors import CompassError
from compass.models import KPI, KeyResult, RaciWorkflow, Task

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def compass_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Compass",
    instructions=(
        "Compass links day-to-day tasks to strategy: tasks roll up through key results, "
        "OKRs, initiatives, and KPIs to Balanced Scorecard objectives. "
        "Start with get_dashboard_summary() for an overview, then trace_task_up(id) or "
        "trace_kpi_down(id) to follow a thread."
    ),
    lifespan=compass_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


def _error(exc: CompassError) -> dict:
    return {"error": exc.message, "code": exc.code}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("compass://overview")
def compass_overview() -> str:
    """Overview of Compass: the trace chain, status vocabulary, and workflow."""
    return json.dumps({
        "system": "Compass - traceability and status rollup",
        "chain": "task -> key_result -> okr -> initiative -> kpi -> bsc_objective (+ causal links)",
        "data_model": {
            "bsc_objective": "Strategic objective in one of four perspectives; causal links connect them.",
            "kpi": "Measured indicator with versioned thresholds and periodic values.",
            "initiative": "Project serving one or more KPIs and objectives.",
            "okr": "Quarterly objective of an initiative with 1-5 key results.",
            "key_result": "custom (manual progress) or kpi_based (synced from a KPI).",
            "task": "Unit of work linked to a key result and/or a KPI.",
        },
        "statuses": {
            "green": "At or above the green floor.",
            "yellow": "At or above the yellow floor.",
            "red": "Below the yellow floor, or achievement undefined.",
            "no_data": "No values recorded yet.",
            "exception": "Latest value was marked as a manual exception; excluded from rollups.",
        },
        "workflow": [
            "1. get_dashboard_summary() - health per perspective.",
            "2. get_kpi_status(kpi_id) - why a KPI has its colour.",
            "3. trace_kpi_down(kpi_id) - which work serves a KPI.",
            "4. trace_task_up(task_id) - which strategy a task serves.",
            "5. sync_key_result_tool(kr_id) or sync_all_key_results() - refresh KR progress.",
        ],
        "trace_tail_default": get_settings().trace_tail_default,
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Trace
# ---------------------------------------------------------------------------


@mcp.tool()
def trace_task_up(task_id: int, last: int | None = None) -> dict:
    """Trace a task up to the BSC objectives it ultimately serves.

    Args:
        task_id: The task to start from.
        last: Keep only the last N hops of the path. Defaults to the
            configured trace tail; 0 returns the whole path.
    """
    if last is None:
        last = get_settings().trace_tail_default
    with _session() as session:
        _, err = _get_or_error(session, Task, task_id, "Task")
        if err:
            return err
        return services.trace_task_up(session, task_id, last)


@mcp.tool()
def trace_kpi_down(kpi_id: int, last: int | None = None) -> dict:
    """List the initiatives, OKRs, key results, and tasks that serve a KPI."""
    with _session() as session:
        _, err = _get_or_error(session, KPI, kpi_id, "KPI")
        if err:
            return err
        return services.trace_kpi_down(session, kpi_id, last)


# ---------------------------------------------------------------------------
# Tools: Status & sync
# ---------------------------------------------------------------------------


@mcp.tool()
def get_kpi_status(kpi_id: int) -> dict:
    """Current status of a KPI (green/yellow/red/no_data/exception) with the reason."""
    with _session() as session:
        try:
            return services.kpi_status(session, kpi_id)
        except CompassError as exc:
            return _error(exc)


@mcp.tool()
def sync_key_result_tool(kr_id: int) -> dict:
    """Pull the linked KPI's latest usable value into a kpi_based key result."""
    with _session() as session:
        _, err = _get_or_error(session, KeyResult, kr_id, "Key result")
        if err:
            return err
        try:
            result = services.sync_key_result(session, kr_id)
        except CompassError as exc:
            session.rollback()
            return _error(exc)
        session.commit()
        return result


@mcp.tool()
def sync_all_key_results() -> dict:
    """Sync every kpi_based key result. Key results that cannot be synced are skipped and listed."""
    with _session() as session:
        result = services.sync_all_kpi_key_results(session)
        session.commit()
        return result


# ---------------------------------------------------------------------------
# Tools: Dashboard & workflows
# ---------------------------------------------------------------------------


@mcp.tool()
def get_dashboard_summary() -> dict:
    """Status rollup per BSC perspective. Exception and no-data KPIs are counted separately."""
    with _session() as session:
        return services.perspective_summary(session)


@mcp.tool()
def get_workflow_progress(workflow_id: int) -> dict:
    """Consultation progress of a RACI workflow: per-assignee status and counts."""
    with _session() as session:
        _, err = _get_or_error(session, RaciWorkflow, workflow_id, "Workflow")
        if err:
            return err
        return services.workflow_progress(session, workflow_id)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Compass MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
