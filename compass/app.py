from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from compass import services
from compass.config import get_settings
from compass.db import get_session, init_db
from compass.errors import CompassError, NotFoundError
from compass.models import OKR, CausalLink
from compass.schemas import (
    CausalLinkCreate,
    CausalLinkCreated,
    CausalLinkOut,
    DashboardSummaryOut,
    ExceptionMark,
    KPIStatusOut,
    KPIValueCreate,
    KPIValueOut,
    ObjectiveTraceOut,
    OKRCreate,
    OKRDetail,
    ProgressOut,
    ProgressUpdate,
    ReachableOut,
    SyncAllOut,
    SyncOut,
    ThresholdsOut,
    ThresholdsUpdate,
    TraceDownOut,
    TraceUpOut,
    WorkflowProgressOut,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Compass",
    version="0.1.0",
    description=(
        "Traceability and status-rollup API. Trace tasks up to strategy and KPIs down "
        "to tasks, evaluate KPI status, sync key results, and report consultation progress. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Trace", "description": "Task to strategy paths, computed fresh on every request."},
        {"name": "KPIs", "description": "KPI status, values, thresholds, and manual exceptions."},
        {"name": "OKRs", "description": "OKRs and key-result progress, including KPI sync."},
        {"name": "BSC", "description": "Causal links between objectives and the perspective dashboard."},
        {"name": "RACI", "description": "Consultation progress for RACI workflows."},
    ],
)


@app.exception_handler(CompassError)
async def compass_error_handler(request: Request, exc: CompassError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise NotFoundError(label, entity_id)
    return obj


def _tail(last: int | None) -> int:
    return get_settings().trace_tail_default if last is None else last


# ---------------------------------------------------------------------------
# Routes: Trace
# ---------------------------------------------------------------------------


@app.get("/api/trace/task/{task_id}/up", response_model=TraceUpOut,
         tags=["Trace"], summary="Trace a task up to the BSC objectives it serves")
async def trace_task_up(task_id: int, last: int | None = Query(None, ge=0,
                        description="Keep only the last N hops; 0 returns the whole path"),
                        session: Session = Depends(db_session)):
    return services.trace_task_up(session, task_id, _tail(last))


@app.get("/api/trace/kpi/{kpi_id}/down", response_model=TraceDownOut,
         tags=["Trace"], summary="Trace a KPI down to every task that serves it")
async def trace_kpi_down(kpi_id: int, last: int | None = Query(None, ge=0),
                         session: Session = Depends(db_session)):
    return services.trace_kpi_down(session, kpi_id, last or None)


@app.get("/api/trace/objective/{objective_id}", response_model=ObjectiveTraceOut,
         tags=["Trace"], summary="Drivers, served objectives, and KPIs around one objective")
async def trace_objective(objective_id: int, session: Session = Depends(db_session)):
    return services.trace_objective(session, objective_id)


# ---------------------------------------------------------------------------
# Routes: KPIs
# ---------------------------------------------------------------------------


@app.get("/api/kpis/{kpi_id}/status", response_model=KPIStatusOut,
         tags=["KPIs"], summary="Evaluate the current status of a KPI")
async def kpi_status(kpi_id: int, session: Session = Depends(db_session)):
    return services.kpi_status(session, kpi_id)


@app.post("/api/kpis/{kpi_id}/values", response_model=KPIValueOut, status_code=201,
          tags=["KPIs"], summary="Record a KPI value for a new period")
async def record_value(kpi_id: int, body: KPIValueCreate, session: Session = Depends(db_session)):
    row = services.record_kpi_value(session, kpi_id, body.period, body.value, body.target_value)
    session.commit()
    return services.kpi_value_dict(row)


@app.put("/api/kpis/{kpi_id}/thresholds", response_model=ThresholdsOut,
         tags=["KPIs"], summary="Validate and store a new threshold version")
async def update_thresholds(kpi_id: int, body: ThresholdsUpdate, session: Session = Depends(db_session)):
    result = services.update_thresholds(session, kpi_id, body.thresholds, body.change_reason)
    session.commit()
    return result


@app.post("/api/kpis/{kpi_id}/values/{period}/exception", response_model=KPIValueOut,
          tags=["KPIs"], summary="Mark a period's value as a manual exception")
async def mark_exception(kpi_id: int, period: str, body: ExceptionMark, session: Session = Depends(db_session)):
    row = services.mark_exception(session, kpi_id, period, body.reason)
    session.commit()
    return services.kpi_value_dict(row)


@app.delete("/api/kpis/{kpi_id}/values/{period}/exception", response_model=KPIValueOut,
            tags=["KPIs"], summary="Clear a manual exception")
async def clear_exception(kpi_id: int, period: str, session: Session = Depends(db_session)):
    row = services.clear_exception(session, kpi_id, period)
    session.commit()
    return services.kpi_value_dict(row)


# ---------------------------------------------------------------------------
# Routes: OKRs
# ---------------------------------------------------------------------------


@app.post("/api/okrs", response_model=OKRDetail, status_code=201,
          tags=["OKRs"], summary="Create an OKR with 1-5 key results")
async def create_okr(body: OKRCreate, session: Session = Depends(db_session)):
    okr = services.create_okr(
        session, body.initiative_id, body.quarter, body.objective,
        [kr.model_dump() for kr in body.key_results],
    )
    session.commit()
    return services.okr_detail(session, okr)


@app.post("/api/okrs/sync-all-kpi-kr", response_model=SyncAllOut,
          tags=["OKRs"], summary="Sync every kpi_based key result from its KPI")
async def sync_all(session: Session = Depends(db_session)):
    result = services.sync_all_kpi_key_results(session)
    session.commit()
    return result


@app.get("/api/okrs/{okr_id}", response_model=OKRDetail,
         tags=["OKRs"], summary="Get an OKR with its key results and average progress")
async def get_okr(okr_id: int, session: Session = Depends(db_session)):
    return services.okr_detail(session, _get_or_404(session, OKR, okr_id, "OKR"))


@app.put("/api/key-results/{kr_id}/progress", response_model=ProgressOut,
         tags=["OKRs"], summary="Set the current value of a custom key result")
async def update_progress(kr_id: int, body: ProgressUpdate, session: Session = Depends(db_session)):
    result = services.update_custom_progress(session, kr_id, body.current_value)
    session.commit()
    return result


@app.post("/api/key-results/{kr_id}/sync-kpi", response_model=SyncOut,
          tags=["OKRs"], summary="Pull the linked KPI's latest value into a key result")
async def sync_kr(kr_id: int, session: Session = Depends(db_session)):
    result = services.sync_key_result(session, kr_id)
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Routes: BSC
# ---------------------------------------------------------------------------


@app.get("/api/bsc/causal-links", response_model=list[CausalLinkOut],
         tags=["BSC"], summary="List causal links")
async def list_links(session: Session = Depends(db_session)):
    return services.list_causal_links(session)


@app.post("/api/bsc/causal-links", response_model=CausalLinkCreated, status_code=201,
          tags=["BSC"], summary="Create a causal link; cycles are allowed but reported")
async def create_link(body: CausalLinkCreate, session: Session = Depends(db_session)):
    link, warnings = services.create_causal_link(
        session, body.from_objective_id, body.to_objective_id, body.description,
    )
    session.commit()
    return {**services.causal_link_dict(link), "warnings": warnings}


@app.delete("/api/bsc/causal-links/{link_id}", tags=["BSC"], summary="Delete a causal link")
async def delete_link(link_id: int, session: Session = Depends(db_session)):
    _get_or_404(session, CausalLink, link_id, "Causal link")
    services.delete_causal_link(session, link_id)
    session.commit()
    return {"ok": True}


@app.get("/api/bsc/objectives/{objective_id}/reachable", response_model=ReachableOut,
         tags=["BSC"], summary="Objectives reachable along causal links")
async def reachable(objective_id: int, direction: str = Query("forward", pattern="^(forward|backward)$"),
                    session: Session = Depends(db_session)):
    return services.reachable_objectives(session, objective_id, direction)


@app.get("/api/bsc/dashboard/summary", response_model=DashboardSummaryOut,
         tags=["BSC"], summary="Status rollup per perspective")
async def dashboard_summary(session: Session = Depends(db_session)):
    return services.perspective_summary(session)


# ---------------------------------------------------------------------------
# Routes: RACI
# ---------------------------------------------------------------------------


@app.get("/api/raci/workflows/{workflow_id}/consultation-progress", response_model=WorkflowProgressOut,
         tags=["RACI"], summary="Per-assignee consultation status against the step SLA")
async def consultation_progress(workflow_id: int, session: Session = Depends(db_session)):
    return services.workflow_progress(session, workflow_id)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    settings = get_settings()
    uvicorn.run("compass.app:app", host=settings.api_host, port=settings.api_port, reload=True)


if __name__ == "__main__":
    main()
