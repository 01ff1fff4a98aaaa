"""
Domain layer for flowcore.

- states: node/job/plan/loop enums
- models: Pydantic models for plans, jobs, checkpoints, events and API payloads
- graph: plan validation, structural queries and validated mutations
- errors: domain-level exceptions
"""

from .states import (
    JobStatus,
    LoopCondition,
    LoopFailurePolicy,
    NodeKind,
    PlanStatus,
    TaskStatus,
)
from .models import (
    ErrorResponse,
    Job,
    JobCreate,
    JobEvent,
    JobListResponse,
    JobSnapshot,
    LoopConfig,
    ManualJobCreate,
    TaskAdd,
    TaskCompletion,
    TaskEdge,
    TaskFailure,
    TaskNode,
    TaskSpec,
    TaskUpdate,
    WorkflowPlan,
)
from .errors import (
    FlowCoreError,
    GraphError,
    GraphErrorKind,
    InvalidTransitionError,
    NotFoundError,
    PlanGenerationError,
    StaleEventError,
    ValidationError,
)

__all__ = [
    "JobStatus",
    "LoopCondition",
    "LoopFailurePolicy",
    "NodeKind",
    "PlanStatus",
    "TaskStatus",
    "ErrorResponse",
    "Job",
    "JobCreate",
    "JobEvent",
    "JobListResponse",
    "JobSnapshot",
    "LoopConfig",
    "ManualJobCreate",
    "TaskAdd",
    "TaskCompletion",
    "TaskEdge",
    "TaskFailure",
    "TaskNode",
    "TaskSpec",
    "TaskUpdate",
    "WorkflowPlan",
    "FlowCoreError",
    "GraphError",
    "GraphErrorKind",
    "InvalidTransitionError",
    "NotFoundError",
    "PlanGenerationError",
    "StaleEventError",
    "ValidationError",
]
