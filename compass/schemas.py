"""Pydantic request/response schemas for the Compass API."""
from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

_PERIOD_RE = re.compile(r"^\d{4}-(Q[1-4]|(0[1-9]|1[0-2]))$")
_QUARTER_RE = re.compile(r"^\d{4}-Q[1-4]$")


# ---------------------------------------------------------------------------
# Trace
# ---------------------------------------------------------------------------


class TraceNode(BaseModel):
    type: str
    level: str
    id: int
    name: str
    url: str
    perspective: str | None = None


class TraceUpOut(BaseModel):
    task_id: int
    path_up: list[TraceNode]
    path_down: list[TraceNode]
    truncated: bool
    traceable: bool
    warnings: list[str] = []
    total_nodes: int
    last: int | None = None


class TraceDownOut(BaseModel):
    kpi_id: int
    path_down: list[TraceNode]
    truncated: bool
    traceable: bool
    warnings: list[str] = []
    total_nodes: int
    last: int | None = None


class ObjectiveTraceOut(BaseModel):
    objective: TraceNode
    drivers: list[TraceNode]
    serves: list[TraceNode]
    kpis: list[TraceNode]
    truncated: bool


# ---------------------------------------------------------------------------
# KPIs
# ---------------------------------------------------------------------------


class KPIStatusOut(BaseModel):
    kpi_id: int
    name: str
    status: str
    reason: str
    achievement: float | None = None
    period: str | None = None
    value: float | None = None


class KPIValueCreate(BaseModel):
    period: str
    value: float
    target_value: float | None = None

    @field_validator("period")
    @classmethod
    def period_format(cls, v: str) -> str:
        v = v.strip()
        if not _PERIOD_RE.match(v):
            raise ValueError("period must look like YYYY-MM or YYYY-Qn")
        return v


class KPIValueOut(BaseModel):
    id: int
    kpi_id: int
    period: str
    value: float
    target_value: float | None = None
    is_manual_exception: bool
    exception_reason: str | None = None
    exception_marked_at: str | None = None
    version_used: int | None = None


class ExceptionMark(BaseModel):
    reason: str

    @field_validator("reason")
    @classmethod
    def reason_required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reason must not be blank")
        return v.strip()


class ThresholdsUpdate(BaseModel):
    thresholds: dict[str, Any]
    change_reason: str = ""


class ThresholdsOut(BaseModel):
    kpi_id: int
    version: int
    thresholds: dict[str, Any]
    warnings: list[str] = []


# ---------------------------------------------------------------------------
# OKRs
# ---------------------------------------------------------------------------


class KeyResultCreate(BaseModel):
    description: str
    kr_type: Literal["custom", "kpi_based"] = "custom"
    kpi_id: int | None = None
    kpi_baseline_value: float | None = None
    kpi_target_value: float | None = None
    target_value: float | None = None
    unit: str | None = None


class OKRCreate(BaseModel):
    initiative_id: int
    quarter: str
    objective: str
    key_results: list[KeyResultCreate] = Field(min_length=1, max_length=5)

    @field_validator("quarter")
    @classmethod
    def quarter_format(cls, v: str) -> str:
        if not _QUARTER_RE.match(v):
            raise ValueError("quarter must look like YYYY-Qn")
        return v


class KeyResultOut(BaseModel):
    id: int
    okr_id: int
    description: str
    kr_type: str
    kpi_id: int | None = None
    kpi_baseline_value: float | None = None
    kpi_target_value: float | None = None
    target_value: float | None = None
    unit: str | None = None
    current_value: float | None = None
    progress_percentage: float = 0.0
    status: str
    synced_at: str | None = None
    synced_period: str | None = None
    stale: bool = False


class OKRDetail(BaseModel):
    id: int
    initiative_id: int
    quarter: str
    objective: str
    progress: float
    key_results: list[KeyResultOut]


class ProgressUpdate(BaseModel):
    current_value: float


class ProgressOut(BaseModel):
    kr_id: int
    progress: float
    status: str
    okr_avg_progress: float


class SyncOut(BaseModel):
    kr_id: int
    kpi_id: int
    kpi_baseline_value: float | None = None
    kpi_target_value: float | None = None
    current_value: float
    progress_percentage: float
    status: str
    period: str | None = None
    used_baseline: bool


class SyncAllOut(BaseModel):
    synced_count: int
    skipped_count: int
    details: list[dict[str, Any]]


# ---------------------------------------------------------------------------
# BSC
# ---------------------------------------------------------------------------


class CausalLinkCreate(BaseModel):
    from_objective_id: int
    to_objective_id: int
    description: str = ""

    @model_validator(mode="after")
    def no_self_loop(self) -> CausalLinkCreate:
        if self.from_objective_id == self.to_objective_id:
            raise ValueError("a causal link cannot point an objective at itself")
        return self


class CausalLinkOut(BaseModel):
    id: int
    from_objective_id: int
    to_objective_id: int
    description: str = ""


class CausalLinkCreated(CausalLinkOut):
    warnings: list[str] = []


class ReachableOut(BaseModel):
    objective_id: int
    direction: str
    objectives: list[TraceNode]
    truncated: bool
    warnings: list[str] = []


class RollupOut(BaseModel):
    total: int
    green: int
    yellow: int
    red: int
    no_data: int
    exception: int
    considered: int
    health: str | None = None


class PerspectiveOut(RollupOut):
    perspective: str
    achievement_rate: float


class DashboardSummaryOut(BaseModel):
    perspectives: list[PerspectiveOut]
    summary: RollupOut
    unevaluable: int = 0


# ---------------------------------------------------------------------------
# RACI
# ---------------------------------------------------------------------------


class ConsultationOut(BaseModel):
    comment: str | None = None
    created_at: str | None = None


class AssigneeProgress(BaseModel):
    user_id: str
    status: str
    days_elapsed: int
    is_overdue: bool
    consultation: ConsultationOut | None = None


class WorkflowInfo(BaseModel):
    id: int
    template_name: str
    current_step: str
    status: str
    sla_days: int | None = None
    step_started_at: str | None = None


class WorkflowProgressOut(BaseModel):
    workflow: WorkflowInfo
    progress: list[AssigneeProgress]
    stats: dict[str, int]
