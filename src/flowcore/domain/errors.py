# src/flowcore/domain/errors.py
from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Optional


@dataclass
class FlowCoreError(Exception):
    """
    Base domain error.

    The API layer maps these to HTTP responses consistently.
    """
    message: str
    code: str = "FLOWCORE_ERROR"
    details: Optional[dict[str, Any]] = None

    def __str__(self) -> str:
        return self.message


class GraphErrorKind(StrEnum):
    CYCLE = "CYCLE_DETECTED"
    DANGLING_DEPENDENCY = "DANGLING_DEPENDENCY"
    ORPHAN_NODE = "ORPHAN_NODE"
    OVERLAPPING_LOOP_BODIES = "OVERLAPPING_LOOP_BODIES"
    INVALID_STRUCTURE = "INVALID_STRUCTURE"
    INVALID_LOOP = "INVALID_LOOP"


@dataclass
class GraphError(FlowCoreError):
    """
    Structural problem with a workflow plan or one of its loops.

    Raised at mutation/acceptance time only; the plan it was raised for is
    left unchanged. `code` mirrors `kind`.
    """
    kind: GraphErrorKind = GraphErrorKind.INVALID_STRUCTURE

    def __post_init__(self) -> None:
        self.code = self.kind.value


@dataclass
class ValidationError(FlowCoreError):
    code: str = "VALIDATION_ERROR"


@dataclass
class NotFoundError(FlowCoreError):
    code: str = "NOT_FOUND"


@dataclass
class InvalidTransitionError(FlowCoreError):
    code: str = "INVALID_TRANSITION"


@dataclass
class PlanGenerationError(FlowCoreError):
    code: str = "PLAN_GENERATION_ERROR"


@dataclass
class StaleEventError(FlowCoreError):
    """Runner event for a superseded job generation or an undispatched task."""
    code: str = "STALE_EVENT"
