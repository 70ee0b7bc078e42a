"""Error taxonomy shared by the engine and its surfaces."""
from __future__ import annotations

from dataclasses import dataclass


class CompassError(Exception):
    """Base class; carries the HTTP status and a stable error code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(CompassError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, label: str, entity_id: object):
        super().__init__(f"{label} {entity_id} not found")
        self.label = label
        self.entity_id = entity_id


class InvalidStateError(CompassError):
    status_code = 400
    code = "INVALID_STATE"


class NotKpiBasedError(InvalidStateError):
    code = "NOT_KPI_BASED"

    def __init__(self, kr_id: object):
        super().__init__(f"Key result {kr_id} is not kpi_based; update it manually instead")
        self.kr_id = kr_id


class ConflictError(CompassError):
    status_code = 409
    code = "CONFLICT"


@dataclass(frozen=True)
class CycleDetectedWarning:
    """A causal cycle met during traversal. Reported, never raised."""

    from_id: int
    to_id: int

    def describe(self) -> str:
        return f"causal cycle: objective {self.from_id} leads back to {self.to_id}"
