from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Float, ForeignKey, Integer, String, Table, Text,
    UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


PERSPECTIVES = ("financial", "customer", "internal_process", "learning_growth")


# Relation sets: ownership-free join tables, resolved by id rather than object graph.
initiative_kpis = Table(
    "initiative_kpis",
    Base.metadata,
    Column("initiative_id", Integer, ForeignKey("initiatives.id", ondelete="CASCADE"), primary_key=True),
    Column("kpi_id", Integer, ForeignKey("kpis.id", ondelete="CASCADE"), primary_key=True),
)

initiative_objectives = Table(
    "initiative_objectives",
    Base.metadata,
    Column("initiative_id", Integer, ForeignKey("initiatives.id", ondelete="CASCADE"), primary_key=True),
    Column("objective_id", Integer, ForeignKey("bsc_objectives.id", ondelete="CASCADE"), primary_key=True),
)


class BSCObjective(Base):
    __tablename__ = "bsc_objectives"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    perspective: Mapped[str] = mapped_column(String(30), nullable=False)  # one of PERSPECTIVES
    description: Mapped[str] = mapped_column(Text, default="")


class CausalLink(Base):
    __tablename__ = "bsc_causal_links"
    __table_args__ = (
        UniqueConstraint("from_objective_id", "to_objective_id", name="uq_causal_link_pair"),
        CheckConstraint("from_objective_id != to_objective_id", name="ck_causal_link_no_self_loop"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_objective_id: Mapped[int] = mapped_column(Integer, ForeignKey("bsc_objectives.id"), nullable=False)
    to_objective_id: Mapped[int] = mapped_column(Integer, ForeignKey("bsc_objectives.id"), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class KPI(Base):
    __tablename__ = "kpis"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), default="")
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    perspective: Mapped[str | None] = mapped_column(String(30), nullable=True)
    objective_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("bsc_objectives.id"), nullable=True)
    target_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    thresholds_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    values: Mapped[list[KPIValue]] = relationship(
        "KPIValue", back_populates="kpi", cascade="all, delete-orphan", order_by="KPIValue.period",
    )
    versions: Mapped[list[KPIVersion]] = relationship(
        "KPIVersion", back_populates="kpi", cascade="all, delete-orphan", order_by="KPIVersion.version",
    )


class KPIVersion(Base):
    __tablename__ = "kpi_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kpi_id: Mapped[int] = mapped_column(Integer, ForeignKey("kpis.id"), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    thresholds_json: Mapped[str] = mapped_column(Text, default="{}")
    change_reason: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    kpi: Mapped[KPI] = relationship("KPI", back_populates="versions")


class KPIValue(Base):
    __tablename__ = "kpi_values"
    __table_args__ = (UniqueConstraint("kpi_id", "period", name="uq_kpi_value_period"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kpi_id: Mapped[int] = mapped_column(Integer, ForeignKey("kpis.id"), nullable=False)
    period: Mapped[str] = mapped_column(String(10), nullable=False)  # "2024-01" | "2024-Q1"
    value: Mapped[float] = mapped_column(Float, nullable=False)
    target_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    is_manual_exception: Mapped[bool] = mapped_column(Boolean, default=False)
    exception_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    exception_marked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    version_used: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    kpi: Mapped[KPI] = relationship("KPI", back_populates="values")


class Initiative(Base):
    __tablename__ = "initiatives"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    status: Mapped[str] = mapped_column(String(30), default="planning")

    kpis: Mapped[list[KPI]] = relationship("KPI", secondary=initiative_kpis)
    objectives: Mapped[list[BSCObjective]] = relationship("BSCObjective", secondary=initiative_objectives)
    okrs: Mapped[list[OKR]] = relationship("OKR", back_populates="initiative", cascade="all, delete-orphan")


class OKR(Base):
    __tablename__ = "okrs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    initiative_id: Mapped[int] = mapped_column(Integer, ForeignKey("initiatives.id"), nullable=False)
    quarter: Mapped[str] = mapped_column(String(10), nullable=False)  # "2024-Q1"
    objective: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    initiative: Mapped[Initiative] = relationship("Initiative", back_populates="okrs")
    key_results: Mapped[list[KeyResult]] = relationship(
        "KeyResult", back_populates="okr", cascade="all, delete-orphan", order_by="KeyResult.id",
    )


class KeyResult(Base):
    __tablename__ = "key_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    okr_id: Mapped[int] = mapped_column(Integer, ForeignKey("okrs.id"), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    kr_type: Mapped[str] = mapped_column(String(20), default="custom")  # custom | kpi_based
    # kpi_based shape
    kpi_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("kpis.id"), nullable=True)
    kpi_baseline_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    kpi_target_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    # custom shape
    target_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    unit: Mapped[str | None] = mapped_column(String(30), nullable=True)
    # snapshot, as of last sync or manual update
    current_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    progress_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    status: Mapped[str] = mapped_column(String(20), default="not_started")
    synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # period of the KPI value the snapshot was taken from; None when synced from baseline
    synced_period: Mapped[str | None] = mapped_column(String(7), nullable=True)

    okr: Mapped[OKR] = relationship("OKR", back_populates="key_results")


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="todo")
    kr_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("key_results.id"), nullable=True)
    kpi_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("kpis.id"), nullable=True)


class RaciWorkflow(Base):
    __tablename__ = "raci_workflows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    template_name: Mapped[str] = mapped_column(String(200), default="")
    status: Mapped[str] = mapped_column(String(30), default="consultation")
    current_step: Mapped[str] = mapped_column(String(100), default="")
    step_started_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    sla_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    assignees: Mapped[list[WorkflowAssignee]] = relationship(
        "WorkflowAssignee", back_populates="workflow", cascade="all, delete-orphan", order_by="WorkflowAssignee.id",
    )
    records: Mapped[list[ConsultationRecord]] = relationship(
        "ConsultationRecord", back_populates="workflow", cascade="all, delete-orphan",
    )


class WorkflowAssignee(Base):
    __tablename__ = "workflow_assignees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[int] = mapped_column(Integer, ForeignKey("raci_workflows.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    role: Mapped[str] = mapped_column(String(1), default="C")  # R | A | C | I

    workflow: Mapped[RaciWorkflow] = relationship("RaciWorkflow", back_populates="assignees")


class ConsultationRecord(Base):
    __tablename__ = "consultation_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_id: Mapped[int] = mapped_column(Integer, ForeignKey("raci_workflows.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action_type: Mapped[str] = mapped_column(String(20), default="consult")  # consult | view | comment
    comment: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    workflow: Mapped[RaciWorkflow] = relationship("RaciWorkflow", back_populates="records")
