from __future__ import annotations

import time
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .states import (
    JobStatus,
    LoopCondition,
    LoopFailurePolicy,
    NodeKind,
    PlanStatus,
    TaskStatus,
)


NodeId = Annotated[str, Field(min_length=1, max_length=256)]


def now_ms() -> int:
    return int(time.time() * 1000)


class TaskNode(BaseModel):
    """
    A unit of work in a workflow plan.

    `description` doubles as the instructions handed to the task runner.
    """
    model_config = ConfigDict(extra="forbid")

    id: NodeId
    kind: NodeKind = NodeKind.TASK
    title: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[NodeId] = Field(default_factory=list)
    duration_estimate: Optional[Annotated[float, Field(ge=0)]] = None  # minutes, advisory
    loop_membership: Optional[str] = None

    @field_validator("dependencies")
    @classmethod
    def _validate_dependencies(cls, deps: list[str], info) -> list[str]:
        if len(deps) != len(set(deps)):
            raise ValueError("dependencies must not contain duplicates")
        return deps


class TaskEdge(BaseModel):
    """
    Directed edge source -> target. Derived from dependency sets; "loop" edges
    are the presentation-only back edges of accepted loops.
    """
    model_config = ConfigDict(extra="forbid")

    id: str
    source: str
    target: str
    type: Literal["default", "loop"] = "default"


class LoopConfig(BaseModel):
    """
    Retry contract over the linear chain start_task_id .. end_task_id.

    current_attempt is None while the loop is only a suggestion; it is set
    (starting at 0) when the user accepts it.
    """
    model_config = ConfigDict(extra="forbid")

    id: Annotated[str, Field(min_length=1, max_length=512)]
    start_task_id: NodeId
    end_task_id: NodeId
    condition: LoopCondition = LoopCondition.UNTIL_SUCCESS
    max_attempts: Optional[Annotated[int, Field(gt=0)]] = None
    time_limit: Optional[Annotated[float, Field(gt=0)]] = None  # minutes
    current_attempt: Optional[Annotated[int, Field(ge=0)]] = None
    on_failure: LoopFailurePolicy = LoopFailurePolicy.CONTINUE
    started_at: Optional[int] = None  # epoch ms of first activation

    @model_validator(mode="after")
    def _validate_condition_params(self):
        if self.condition == LoopCondition.MAX_ATTEMPTS and self.max_attempts is None:
            raise ValueError("max_attempts is required for max-attempts loops")
        if self.condition == LoopCondition.TIME_LIMIT and self.time_limit is None:
            raise ValueError("time_limit is required for time-limit loops")
        return self

    @property
    def accepted(self) -> bool:
        return self.current_attempt is not None

    @property
    def pair(self) -> tuple[str, str]:
        return (self.start_task_id, self.end_task_id)


class WorkflowPlan(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str = "Workflow"
    description: str = ""
    nodes: list[TaskNode] = Field(default_factory=list)
    edges: list[TaskEdge] = Field(default_factory=list)
    loops: list[LoopConfig] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.DRAFT
    estimated_duration: float = 0.0
    dismissed_loops: list[tuple[str, str]] = Field(default_factory=list)
    created_at: int = Field(default_factory=now_ms)

    def node(self, node_id: str) -> Optional[TaskNode]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def loop(self, loop_id: str) -> Optional[LoopConfig]:
        for lp in self.loops:
            if lp.id == loop_id:
                return lp
        return None

    def task_nodes(self) -> list[TaskNode]:
        return [n for n in self.nodes if n.kind == NodeKind.TASK]


class Job(BaseModel):
    """
    The unit of user-visible work. A job owns its workflow plan exclusively.
    """
    model_config = ConfigDict(extra="forbid")

    id: str
    requirements: str = ""
    status: JobStatus = JobStatus.PENDING
    progress: Annotated[int, Field(ge=0, le=100)] = 0
    current_task_description: str = ""
    logs: list[str] = Field(default_factory=list)
    workflow_plan: Optional[WorkflowPlan] = None
    work_dir: Optional[str] = None
    generation: int = 0
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)


class JobSnapshot(BaseModel):
    """
    Checkpoint payload: everything needed to rebuild a job after a restart.
    """
    model_config = ConfigDict(extra="forbid")

    job_id: str
    status: JobStatus
    progress: int
    current_task_description: str = ""
    logs: list[str] = Field(default_factory=list)
    workflow_plan: Optional[WorkflowPlan] = None
    generation: int = 0
    requirements: str = ""
    work_dir: Optional[str] = None
    created_at: int
    saved_at: int

    @classmethod
    def of(cls, job: Job, saved_at: int) -> "JobSnapshot":
        return cls(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            current_task_description=job.current_task_description,
            logs=list(job.logs),
            workflow_plan=job.workflow_plan.model_copy(deep=True) if job.workflow_plan else None,
            generation=job.generation,
            requirements=job.requirements,
            work_dir=job.work_dir,
            created_at=job.created_at,
            saved_at=saved_at,
        )

    def to_job(self) -> Job:
        return Job(
            id=self.job_id,
            requirements=self.requirements,
            status=self.status,
            progress=self.progress,
            current_task_description=self.current_task_description,
            logs=list(self.logs),
            workflow_plan=self.workflow_plan.model_copy(deep=True) if self.workflow_plan else None,
            work_dir=self.work_dir,
            generation=self.generation,
            created_at=self.created_at,
            updated_at=self.saved_at,
        )


class JobEvent(BaseModel):
    """
    Change notification for read-only subscribers (dashboards, log views).
    """
    model_config = ConfigDict(extra="forbid")

    job_id: str
    status: JobStatus
    progress: int
    current_task_description: str
    logs_delta: list[str] = Field(default_factory=list)
    generation: int
    emitted_at: int = Field(default_factory=now_ms)


# -------------------------
# API input/output models
# -------------------------


class JobCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    requirements: Annotated[str, Field(min_length=1)]
    work_dir: Optional[str] = None


class TaskSpec(BaseModel):
    """
    Minimal task description used to build plans (planner, manual jobs).
    """
    model_config = ConfigDict(extra="forbid")

    id: Optional[NodeId] = None
    title: Annotated[str, Field(min_length=1)]
    description: str = ""
    dependencies: Optional[list[NodeId]] = None
    duration_estimate: Optional[Annotated[float, Field(ge=0)]] = None


class ManualJobCreate(BaseModel):
    """
    Create a job from an authored plan. Either a full `plan` or a list of
    `tasks` (chained sequentially unless they name their dependencies).
    """
    model_config = ConfigDict(extra="forbid")

    requirements: str = ""
    work_dir: Optional[str] = None
    plan: Optional[WorkflowPlan] = None
    tasks: list[TaskSpec] = Field(default_factory=list)


class TaskUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = None
    description: Optional[str] = None
    duration_estimate: Optional[Annotated[float, Field(ge=0)]] = None
    dependencies: Optional[list[NodeId]] = None


class TaskAdd(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: NodeId
    title: Annotated[str, Field(min_length=1)]
    description: str = ""
    kind: Literal["task", "decision"] = "task"
    dependencies: list[NodeId] = Field(min_length=1)
    duration_estimate: Optional[Annotated[float, Field(ge=0)]] = None


class TaskCompletion(BaseModel):
    model_config = ConfigDict(extra="forbid")

    generation: int


class TaskFailure(BaseModel):
    model_config = ConfigDict(extra="forbid")

    generation: int
    error: str = ""


class JobListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    jobs: list[Job]
    total: int


class ErrorResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    error: str
    code: str
    details: dict = Field(default_factory=dict)
