"""Consultation progress for RACI workflows: per-assignee status against the step SLA."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from compass.utils import as_utc, isoformat, utcnow

COMPLETED = "completed"
OVERDUE = "overdue"
IN_PROGRESS = "in_progress"
PENDING = "pending"

CONSULT = "consult"

_EPOCH = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True)
class ConsultationEntry:
    user_id: str
    action_type: str
    comment: str = ""
    created_at: datetime | None = None


@dataclass(frozen=True)
class WorkflowSnapshot:
    id: int
    step_started_at: datetime
    sla_days: int | None
    assignees: tuple[str, ...]
    records: tuple[ConsultationEntry, ...] = ()
    template_name: str = ""
    current_step: str = ""
    status: str = ""


@dataclass
class WorkflowProgress:
    workflow: WorkflowSnapshot
    per_assignee: list[dict[str, Any]] = field(default_factory=list)
    stats: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        wf = self.workflow
        return {
            "workflow": {
                "id": wf.id, "template_name": wf.template_name,
                "current_step": wf.current_step, "status": wf.status,
                "sla_days": wf.sla_days, "step_started_at": isoformat(wf.step_started_at),
            },
            "progress": self.per_assignee,
            "stats": self.stats,
        }


def _latest_consult(records: list[ConsultationEntry]) -> ConsultationEntry | None:
    consults = [r for r in records if r.action_type == CONSULT]
    if not consults:
        return None
    return max(consults, key=lambda r: as_utc(r.created_at) if r.created_at else _EPOCH)


def compute_progress(workflow: WorkflowSnapshot, now: datetime | None = None) -> WorkflowProgress:
    now = as_utc(now) if now else utcnow()
    elapsed = now - as_utc(workflow.step_started_at)
    days_elapsed = max(0, elapsed.days)
    sla_exceeded = workflow.sla_days is not None and elapsed > timedelta(days=workflow.sla_days)

    by_user: dict[str, list[ConsultationEntry]] = {}
    for record in workflow.records:
        by_user.setdefault(record.user_id, []).append(record)

    per_assignee: list[dict[str, Any]] = []
    for user_id in workflow.assignees:
        records = by_user.get(user_id, [])
        consult = _latest_consult(records)
        if consult is not None:
            status = COMPLETED
        elif records:
            status = IN_PROGRESS
        elif sla_exceeded:
            status = OVERDUE
        else:
            status = PENDING
        per_assignee.append({
            "user_id": user_id,
            "status": status,
            "days_elapsed": 0 if status == COMPLETED else days_elapsed,
            "is_overdue": status == OVERDUE,
            "consultation": {
                "comment": consult.comment,
                "created_at": isoformat(consult.created_at),
            } if consult else None,
        })

    stats = {"total": len(per_assignee)}
    for key in (COMPLETED, IN_PROGRESS, OVERDUE, PENDING):
        stats[key] = sum(1 for p in per_assignee if p["status"] == key)
    return WorkflowProgress(workflow=workflow, per_assignee=per_assignee, stats=stats)
