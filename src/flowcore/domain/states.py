# src/flowcore/domain/states.py
from __future__ import annotations

from enum import StrEnum


class NodeKind(StrEnum):
    START = "start"
    TASK = "task"
    END = "end"
    DECISION = "decision"


class TaskStatus(StrEnum):
    """
    Status of a single node in a workflow plan.

    Suggested semantics:
      - PENDING: not yet dispatched; runnable once every dependency is satisfied
      - RUNNING: dispatched to the task runner, result not yet observed
      - COMPLETED: finished successfully
      - FAILED: the task runner reported a failure
      - SKIPPED: failed inside an exhausted loop whose policy is "continue";
        counts as satisfied for its dependents
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Statuses that release dependents.
SATISFIED_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.SKIPPED})


class PlanStatus(StrEnum):
    DRAFT = "draft"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(StrEnum):
    PENDING = "pending"
    PLANNING = "planning"
    READY = "ready"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class LoopCondition(StrEnum):
    UNTIL_SUCCESS = "until-success"
    MAX_ATTEMPTS = "max-attempts"
    TIME_LIMIT = "time-limit"


class LoopFailurePolicy(StrEnum):
    CONTINUE = "continue"
    STOP = "stop"
