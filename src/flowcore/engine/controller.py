# src/flowcore/engine/controller.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence

from flowcore.domain import graph
from flowcore.domain.errors import (
    GraphError,
    InvalidTransitionError,
    NotFoundError,
    PlanGenerationError,
    StaleEventError,
    ValidationError,
)
from flowcore.domain.models import (
    Job,
    JobEvent,
    JobSnapshot,
    LoopConfig,
    TaskNode,
    TaskSpec,
    WorkflowPlan,
    now_ms,
)
from flowcore.domain.states import JobStatus, NodeKind, PlanStatus, TaskStatus
from flowcore.engine.events import EventBus
from flowcore.engine.loop_detector import LoopDetector
from flowcore.engine.planner import PlanGenerator
from flowcore.engine.retry_policy import RetryAction, RetryPolicy
from flowcore.engine.runner import TaskDispatch, TaskRunner
from flowcore.engine.scheduler import DependencyScheduler
from flowcore.logging import get_logger
from flowcore.storage.repo import CheckpointStore

_LOG = get_logger(__name__)


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PLANNING}),
    JobStatus.PLANNING: frozenset({JobStatus.READY, JobStatus.FAILED}),
    JobStatus.READY: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset({JobStatus.RUNNING}),
}

PLAN_EDITABLE = frozenset({JobStatus.READY, JobStatus.FAILED})
LOOPS_EDITABLE = frozenset({JobStatus.READY, JobStatus.RUNNING, JobStatus.PAUSED, JobStatus.FAILED})
ACTIVE = frozenset({JobStatus.RUNNING, JobStatus.PAUSED})


def _new_job_id() -> str:
    return f"job-{uuid.uuid4().hex[:12]}"


@dataclass
class _JobRuntime:
    """A job plus the state that never leaves the process."""
    job: Job
    lock: threading.RLock = field(default_factory=threading.RLock)
    in_flight: set[str] = field(default_factory=set)


class JobController:
    """
    Owns every job and its plan.

    Each job has its own lock; public operations and runner callbacks hold it
    for the whole read-modify-write, so a job is never observed mid-update.
    Runner events carry the job generation they were dispatched under and
    are dropped once the generation moved on (stop, failure, resume).
    """

    def __init__(
        self,
        *,
        runner: TaskRunner,
        store: CheckpointStore,
        planner: Optional[PlanGenerator] = None,
        events: Optional[EventBus] = None,
        detector: Optional[LoopDetector] = None,
        scheduler: Optional[DependencyScheduler] = None,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._runner = runner
        self._store = store
        self._planner = planner
        self._events = events or EventBus()
        self._detector = detector or LoopDetector()
        self._scheduler = scheduler or DependencyScheduler()
        self._policy = policy or RetryPolicy()
        self._clock = clock

        self._registry_lock = threading.Lock()
        self._jobs: dict[str, _JobRuntime] = {}

        runner.bind(self)

    @property
    def events(self) -> EventBus:
        return self._events

    # -------------------------
    # Queries
    # -------------------------

    def get(self, job_id: str) -> Job:
        rt = self._runtime(job_id)
        with rt.lock:
            return rt.job.model_copy(deep=True)

    def list_jobs(self) -> list[Job]:
        with self._registry_lock:
            runtimes = list(self._jobs.values())
        jobs = []
        for rt in runtimes:
            with rt.lock:
                jobs.append(rt.job.model_copy(deep=True))
        jobs.sort(key=lambda j: j.created_at)
        return jobs

    def parallel_groups(self, job_id: str) -> list[list[str]]:
        rt = self._runtime(job_id)
        with rt.lock:
            return self._scheduler.parallel_groups(self._require_plan(rt))

    # -------------------------
    # Creation and planning
    # -------------------------

    def submit(self, requirements: str, work_dir: Optional[str] = None) -> Job:
        if not requirements.strip():
            raise ValidationError("requirements must not be empty")
        job = Job(id=_new_job_id(), requirements=requirements, work_dir=work_dir)
        rt = self._register(job)
        with rt.lock:
            self._record(rt, ["Job submitted"])
            self._save(rt)
            self._emit(rt, ["Job submitted"])
            return rt.job.model_copy(deep=True)

    async def run_planning(self, job_id: str) -> Job:
        """
        pending -> planning -> ready | failed.

        The generator is awaited without holding the job lock; a plan that
        arrives after cancel_planning or discard is dropped.
        """
        rt = self._runtime(job_id)
        with rt.lock:
            self._transition(
                rt,
                JobStatus.PLANNING,
                logs=["Generating workflow plan..."],
                current="Generating workflow plan...",
            )
            requirements = rt.job.requirements

        try:
            if self._planner is None:
                raise PlanGenerationError("No plan generator configured")
            plan = await self._planner.generate_plan(requirements)
            plan = graph.normalize(plan)
            graph.validate(plan)
        except (PlanGenerationError, GraphError) as e:
            with rt.lock:
                if rt.job.status != JobStatus.PLANNING or not self._is_registered(rt):
                    _LOG.info("Planning for job %s ended after cancellation: %s", job_id, e)
                    return rt.job.model_copy(deep=True)
                self._transition(
                    rt,
                    JobStatus.FAILED,
                    logs=[f"Failed to generate workflow plan: {e.message}"],
                    current="Failed to generate workflow plan",
                )
                return rt.job.model_copy(deep=True)
        except Exception as e:
            with rt.lock:
                if rt.job.status == JobStatus.PLANNING and self._is_registered(rt):
                    self._transition(
                        rt,
                        JobStatus.FAILED,
                        logs=[f"Failed to generate workflow plan: {e}"],
                        current="Failed to generate workflow plan",
                    )
            raise

        with rt.lock:
            if rt.job.status != JobStatus.PLANNING or not self._is_registered(rt):
                _LOG.info("Discarding plan %s for job %s: planning was cancelled", plan.id, job_id)
                return rt.job.model_copy(deep=True)
            rt.job.workflow_plan = plan
            rt.job.progress = 0
            self._transition(
                rt,
                JobStatus.READY,
                logs=[f"Workflow plan generated with {len(plan.task_nodes())} tasks"],
                current="Waiting for approval",
            )
            return rt.job.model_copy(deep=True)

    def cancel_planning(self, job_id: str) -> Job:
        rt = self._runtime(job_id)
        with rt.lock:
            self._require_status(rt, {JobStatus.PLANNING}, "cancel_planning")
            self._transition(
                rt,
                JobStatus.FAILED,
                logs=["Plan generation cancelled"],
                current="Plan generation cancelled",
            )
            return rt.job.model_copy(deep=True)

    def create_job_with_plan(
        self,
        requirements: str,
        plan: WorkflowPlan,
        work_dir: Optional[str] = None,
    ) -> Job:
        """Creates a job whose plan is supplied directly; it starts out ready."""
        plan = graph.normalize(plan)
        graph.validate(plan)
        plan.status = PlanStatus.DRAFT

        job = Job(
            id=_new_job_id(),
            requirements=requirements,
            status=JobStatus.READY,
            workflow_plan=plan,
            work_dir=work_dir,
            current_task_description="Waiting for approval",
        )
        rt = self._register(job)
        with rt.lock:
            logs = [f"Workflow plan created manually with {len(plan.task_nodes())} tasks"]
            self._record(rt, logs)
            self._save(rt)
            self._emit(rt, logs)
            return rt.job.model_copy(deep=True)

    def create_manual_job(
        self,
        requirements: str = "",
        tasks: Sequence[TaskSpec] = (),
        *,
        parallel: bool = False,
        work_dir: Optional[str] = None,
    ) -> Job:
        specs = list(tasks) or [TaskSpec(title="Task 1", description="Describe this task")]
        build = graph.build_parallel_plan if parallel else graph.build_sequential_plan
        plan = build(
            specs,
            name="Manual Workflow",
            description=requirements or "Manually authored workflow",
        )
        return self.create_job_with_plan(requirements or "Manual workflow", plan, work_dir=work_dir)

    # -------------------------
    # Lifecycle
    # -------------------------

    def approve(self, job_id: str) -> Job:
        rt = self._runtime(job_id)
        with rt.lock:
            self._require_status(rt, {JobStatus.READY}, "approve")
            plan = self._require_plan(rt)
            plan.status = PlanStatus.RUNNING
            self._transition(
                rt,
                JobStatus.RUNNING,
                logs=["Workflow approved", "Starting execution..."],
                current="Starting execution...",
            )
            self._advance(rt)
            return rt.job.model_copy(deep=True)

    def reject(self, job_id: str) -> Job:
        rt = self._runtime(job_id)
        with rt.lock:
            self._require_status(rt, {JobStatus.READY}, "reject")
            self._transition(
                rt,
                JobStatus.FAILED,
                logs=["Workflow plan rejected by user"],
                current="Workflow plan rejected",
            )
            return rt.job.model_copy(deep=True)

    def pause(self, job_id: str) -> Job:
        rt = self._runtime(job_id)
        with rt.lock:
            self._require_status(rt, {JobStatus.RUNNING}, "pause")
            for task_id in sorted(rt.in_flight):
                self._runner.suspend(job_id, task_id)
            self._transition(
                rt,
                JobStatus.PAUSED,
                logs=["Execution paused"],
                current="Execution paused",
            )
            return rt.job.model_copy(deep=True)

    def resume(self, job_id: str) -> Job:
        rt = self._runtime(job_id)
        with rt.lock:
            self._require_status(rt, {JobStatus.PAUSED}, "resume")
            for task_id in sorted(rt.in_flight):
                self._runner.continue_(job_id, task_id)
            self._transition(
                rt,
                JobStatus.RUNNING,
                logs=["Execution resumed"],
                current="Execution resumed",
            )
            self._advance(rt)
            return rt.job.model_copy(deep=True)

    def stop(self, job_id: str) -> Job:
        """
        running | paused -> failed, with every node reset for a full restart.
        """
        rt = self._runtime(job_id)
        with rt.lock:
            self._require_status(rt, ACTIVE, "stop")
            plan = self._require_plan(rt)
            self._abort_in_flight(rt)
            rt.job.generation += 1

            for node in plan.nodes:
                if node.kind != NodeKind.START:
                    node.status = TaskStatus.PENDING
            for loop in plan.loops:
                if loop.accepted:
                    loop.current_attempt = 0
                    loop.started_at = None
            plan.status = PlanStatus.FAILED
            rt.job.progress = 0

            self._transition(
                rt,
                JobStatus.FAILED,
                logs=["Execution stopped by user; all tasks reset"],
                current="Execution stopped",
            )
            return rt.job.model_copy(deep=True)

    def resume_from_failure(self, job_id: str) -> Job:
        """
        failed -> running. Completed and skipped nodes are kept; everything
        else is reset to pending and scheduling resumes.
        """
        rt = self._runtime(job_id)
        with rt.lock:
            self._require_status(rt, {JobStatus.FAILED}, "resume_from_failure")
            plan = rt.job.workflow_plan
            if plan is None:
                raise InvalidTransitionError(
                    "Cannot resume a job without a stored plan",
                    details={"job_id": job_id, "status": rt.job.status.value},
                )

            rt.job.generation += 1
            rt.in_flight.clear()
            failed_ids = {n.id for n in plan.nodes if n.status == TaskStatus.FAILED}
            for node in plan.nodes:
                if node.status in (TaskStatus.FAILED, TaskStatus.PENDING, TaskStatus.RUNNING):
                    node.status = TaskStatus.PENDING
            for loop in plan.loops:
                if not loop.accepted:
                    continue
                try:
                    body = graph.loop_body(plan, loop)
                except GraphError:
                    continue
                if failed_ids.intersection(body):
                    loop.current_attempt = 0
                    loop.started_at = None

            plan.status = PlanStatus.RUNNING
            rt.job.progress = self._scheduler.progress(plan)
            self._transition(
                rt,
                JobStatus.RUNNING,
                logs=["Resuming from failure"],
                current="Resuming from failure",
            )
            self._advance(rt)
            return rt.job.model_copy(deep=True)

    def discard(self, job_id: str) -> None:
        rt = self._runtime(job_id)
        with rt.lock:
            if rt.job.status in ACTIVE:
                raise InvalidTransitionError(
                    "Cannot discard an active job; stop it first",
                    details={"job_id": job_id, "status": rt.job.status.value},
                )
            if rt.job.status == JobStatus.PLANNING:
                # the in-flight generator sees a non-planning status and drops its plan
                rt.job.status = JobStatus.FAILED
                rt.job.current_task_description = "Plan generation cancelled"
            with self._registry_lock:
                self._jobs.pop(job_id, None)
            self._store.delete_checkpoint(job_id)
            self._events.forget(job_id)
            _LOG.info("Job %s discarded", job_id)

    # -------------------------
    # Runner callbacks
    # -------------------------

    def on_task_completed(self, job_id: str, task_id: str, generation: int) -> bool:
        rt = self._runtime_for_event(job_id, task_id)
        if rt is None:
            return False
        with rt.lock:
            if not self._accept_event(rt, task_id, generation):
                return False

            plan = self._require_plan(rt)
            rt.in_flight.discard(task_id)
            self._scheduler.on_task_completed(plan, task_id)

            node = plan.node(task_id)
            logs = [f"Task completed: {node.title if node else task_id}"]
            for loop in plan.loops:
                if loop.accepted and loop.end_task_id == task_id and loop.current_attempt:
                    logs.append(f"Loop {loop.id} succeeded after {loop.current_attempt} retries")

            rt.job.progress = max(rt.job.progress, self._scheduler.progress(plan))
            self._record(rt, logs)
            self._emit(rt, logs)
            self._advance(rt)
            return True

    def on_task_failed(self, job_id: str, task_id: str, generation: int, error: str = "") -> bool:
        rt = self._runtime_for_event(job_id, task_id)
        if rt is None:
            return False
        with rt.lock:
            if not self._accept_event(rt, task_id, generation):
                return False

            plan = self._require_plan(rt)
            rt.in_flight.discard(task_id)
            node = plan.node(task_id)
            title = node.title if node else task_id
            if node is not None:
                node.status = TaskStatus.FAILED

            failure = f"Task failed: {title}"
            if error:
                failure = f"{failure}: {error}"
            _LOG.warning("Job %s: %s", job_id, failure)

            decision = self._policy.decide(plan, task_id, self._clock())
            self._policy.apply(plan, decision)

            if decision.action == RetryAction.FAIL:
                reason = decision.reason if decision.loop_id else f"Workflow failed: task {title} failed"
                self._record(rt, [failure])
                self._emit(rt, [failure])
                self._fail_job(rt, reason)
                return True

            logs = [failure, decision.reason]
            if decision.action == RetryAction.RETRY:
                rt.job.current_task_description = f"Retrying loop {decision.loop_id}"
            self._record(rt, logs)
            self._emit(rt, logs)
            self._advance(rt)
            return True

    # -------------------------
    # Loops
    # -------------------------

    def pending_loop_suggestions(self, job_id: str) -> list[LoopConfig]:
        """
        Runs the detector over the plan, records new candidates as unaccepted
        loops and returns every unaccepted loop of the plan. Outside the
        loop-editable states candidates are returned but not recorded.
        """
        rt = self._runtime(job_id)
        with rt.lock:
            plan = rt.job.workflow_plan
            if plan is None:
                return []

            candidates = self._detector.detect(
                plan.task_nodes(),
                existing_loops=plan.loops,
                dismissed=plan.dismissed_loops,
            )
            added = []
            for candidate in candidates:
                try:
                    graph.loop_body(plan, candidate)
                except GraphError as e:
                    _LOG.debug("Ignoring loop suggestion %s: %s", candidate.id, e)
                    continue
                added.append(candidate)

            unaccepted = [lp for lp in plan.loops if not lp.accepted]
            if rt.job.status not in LOOPS_EDITABLE:
                return [lp.model_copy(deep=True) for lp in unaccepted + added]

            if added:
                plan.loops.extend(added)
                self._set_plan(rt, plan, [f"Loop suggested: {lp.id}" for lp in added])
            return [lp.model_copy(deep=True) for lp in plan.loops if not lp.accepted]

    def accept_loop(self, job_id: str, loop: LoopConfig) -> LoopConfig:
        """Validates and activates a loop; body nodes get its loop_membership."""
        rt = self._runtime(job_id)
        with rt.lock:
            self._require_status(rt, LOOPS_EDITABLE, "accept_loop")
            plan = self._require_plan(rt)

            activated = loop.model_copy(
                deep=True,
                update={
                    "current_attempt": loop.current_attempt or 0,
                    "started_at": None,
                },
            )
            # a suggestion for the same pair under another id is superseded
            candidate = plan
            for existing in plan.loops:
                if existing.id != activated.id and existing.pair == activated.pair and not existing.accepted:
                    candidate = graph.remove_loop(candidate, existing.id)
            candidate = graph.add_loop(candidate, activated)

            start_node = candidate.node(activated.start_task_id)
            if (
                rt.job.status in ACTIVE
                and start_node is not None
                and start_node.status != TaskStatus.PENDING
            ):
                activated_in_plan = candidate.loop(activated.id)
                if activated_in_plan is not None:
                    activated_in_plan.started_at = self._clock()

            self._set_plan(
                rt,
                candidate,
                [
                    f"Loop accepted: {activated.start_task_id} -> {activated.end_task_id} "
                    f"({activated.condition.value})"
                ],
            )
            result = candidate.loop(activated.id)
            if result is None:
                raise NotFoundError(f"Loop not found: {activated.id}", details={"loop_id": activated.id})
            return result.model_copy(deep=True)

    def reject_loop(self, job_id: str, loop_id: str) -> Job:
        rt = self._runtime(job_id)
        with rt.lock:
            self._require_status(rt, LOOPS_EDITABLE, "reject_loop")
            plan = self._require_plan(rt)
            loop = plan.loop(loop_id)
            if loop is None:
                raise NotFoundError(f"Loop not found: {loop_id}", details={"loop_id": loop_id})

            candidate = graph.remove_loop(plan, loop_id)
            if loop.pair not in candidate.dismissed_loops:
                candidate.dismissed_loops.append(loop.pair)
            self._set_plan(rt, candidate, [f"Loop removed: {loop_id}"])
            return rt.job.model_copy(deep=True)

    # -------------------------
    # Plan editing
    # -------------------------

    def add_task(self, job_id: str, node: TaskNode) -> Job:
        return self._edit_plan(
            job_id,
            "add_task",
            lambda plan: graph.add_task(plan, node),
            f"Task added: {node.title or node.id}",
        )

    def update_task(
        self,
        job_id: str,
        task_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
        duration_estimate: Optional[float] = None,
        dependencies: Optional[Sequence[str]] = None,
    ) -> Job:
        return self._edit_plan(
            job_id,
            "update_task",
            lambda plan: graph.update_task(
                plan,
                task_id,
                title=title,
                description=description,
                duration_estimate=duration_estimate,
                dependencies=dependencies,
            ),
            f"Task updated: {task_id}",
        )

    def set_dependencies(self, job_id: str, task_id: str, dependencies: Sequence[str]) -> Job:
        return self._edit_plan(
            job_id,
            "set_dependencies",
            lambda plan: graph.set_dependencies(plan, task_id, dependencies),
            f"Dependencies updated: {task_id}",
        )

    def delete_task(self, job_id: str, task_id: str) -> Job:
        return self._edit_plan(
            job_id,
            "delete_task",
            lambda plan: graph.delete_task(plan, task_id),
            f"Task deleted: {task_id}",
        )

    # -------------------------
    # Persistence
    # -------------------------

    def checkpoint(self, job_id: str) -> JobSnapshot:
        """Snapshots one job into the store. Idempotent."""
        rt = self._runtime(job_id)
        with rt.lock:
            snapshot = JobSnapshot.of(rt.job, saved_at=self._clock())
            self._store.save_checkpoint(job_id, snapshot)
            return snapshot

    def checkpoint_all(self) -> int:
        with self._registry_lock:
            job_ids = list(self._jobs)
        saved = 0
        for job_id in job_ids:
            try:
                self.checkpoint(job_id)
                saved += 1
            except NotFoundError:
                continue
            except Exception:
                _LOG.exception("Checkpoint failed for job %s (continuing).", job_id)
        return saved

    def restore(self) -> int:
        """
        Loads every stored checkpoint. Jobs saved running/paused come back
        ready (their in-flight work did not survive); jobs saved before
        planning finished come back failed.
        """
        restored = 0
        for snapshot in self._store.list_checkpoints():
            job = snapshot.to_job()
            with self._registry_lock:
                if job.id in self._jobs:
                    continue

            note: Optional[str] = None
            if job.status in ACTIVE:
                plan = job.workflow_plan
                if plan is not None:
                    for node in plan.nodes:
                        if node.status == TaskStatus.RUNNING:
                            node.status = TaskStatus.PENDING
                    plan.status = PlanStatus.DRAFT
                job.status = JobStatus.READY
                job.current_task_description = "Restored after restart; waiting for approval"
                note = "Restored after restart; approve to continue"
            elif job.status in (JobStatus.PENDING, JobStatus.PLANNING):
                job.status = JobStatus.FAILED
                job.current_task_description = "Planning interrupted"
                note = "Planning was interrupted by a restart"

            rt = self._register(job)
            with rt.lock:
                if note is not None:
                    self._record(rt, [note])
                    self._save(rt)
                self._emit(rt, [note] if note else [])
            restored += 1

        if restored:
            _LOG.info("Restored %d job(s) from checkpoints", restored)
        return restored

    # -------------------------
    # Internals
    # -------------------------

    def _register(self, job: Job) -> _JobRuntime:
        rt = _JobRuntime(job=job)
        with self._registry_lock:
            self._jobs[job.id] = rt
        return rt

    def _runtime(self, job_id: str) -> _JobRuntime:
        with self._registry_lock:
            rt = self._jobs.get(job_id)
        if rt is None:
            raise NotFoundError(f"Job not found: {job_id}", details={"job_id": job_id})
        return rt

    def _is_registered(self, rt: _JobRuntime) -> bool:
        with self._registry_lock:
            return self._jobs.get(rt.job.id) is rt

    def _runtime_for_event(self, job_id: str, task_id: str) -> Optional[_JobRuntime]:
        try:
            return self._runtime(job_id)
        except NotFoundError:
            _LOG.debug("Dropping event for unknown job %s (task %s)", job_id, task_id)
            return None

    def _accept_event(self, rt: _JobRuntime, task_id: str, generation: int) -> bool:
        try:
            self._check_event(rt, task_id, generation)
        except StaleEventError as e:
            _LOG.debug("Dropping stale event: %s %s", e, e.details)
            return False
        return True

    def _check_event(self, rt: _JobRuntime, task_id: str, generation: int) -> None:
        details = {
            "job_id": rt.job.id,
            "task_id": task_id,
            "generation": generation,
            "current_generation": rt.job.generation,
        }
        if generation != rt.job.generation:
            raise StaleEventError("Event from a superseded job generation", details=details)
        if task_id not in rt.in_flight:
            raise StaleEventError("Event for a task that is not in flight", details=details)

    def _require_status(self, rt: _JobRuntime, allowed: Iterable[JobStatus], operation: str) -> None:
        allowed = frozenset(allowed)
        if rt.job.status not in allowed:
            raise InvalidTransitionError(
                f"Cannot {operation} a job that is {rt.job.status.value}",
                details={
                    "job_id": rt.job.id,
                    "status": rt.job.status.value,
                    "allowed": sorted(s.value for s in allowed),
                },
            )

    def _require_plan(self, rt: _JobRuntime) -> WorkflowPlan:
        if rt.job.workflow_plan is None:
            raise InvalidTransitionError(
                "Job has no workflow plan yet",
                details={"job_id": rt.job.id, "status": rt.job.status.value},
            )
        return rt.job.workflow_plan

    def _transition(
        self,
        rt: _JobRuntime,
        to: JobStatus,
        *,
        logs: Sequence[str] = (),
        current: Optional[str] = None,
    ) -> None:
        job = rt.job
        if to not in ALLOWED_TRANSITIONS[job.status]:
            raise InvalidTransitionError(
                f"Illegal transition: {job.status.value} -> {to.value}",
                details={"job_id": job.id, "status": job.status.value, "to": to.value},
            )
        previous = job.status
        job.status = to
        if current is not None:
            job.current_task_description = current
        self._record(rt, logs)
        _LOG.info("Job %s: %s -> %s", job.id, previous.value, to.value)
        self._save(rt)
        self._emit(rt, logs)

    def _record(self, rt: _JobRuntime, logs: Sequence[str]) -> None:
        rt.job.logs.extend(logs)
        rt.job.updated_at = self._clock()

    def _emit(self, rt: _JobRuntime, logs: Sequence[str]) -> None:
        job = rt.job
        self._events.emit(
            JobEvent(
                job_id=job.id,
                status=job.status,
                progress=job.progress,
                current_task_description=job.current_task_description,
                logs_delta=list(logs),
                generation=job.generation,
                emitted_at=self._clock(),
            )
        )

    def _save(self, rt: _JobRuntime) -> None:
        try:
            self._store.save_checkpoint(rt.job.id, JobSnapshot.of(rt.job, saved_at=self._clock()))
        except Exception:
            _LOG.exception("Checkpoint failed for job %s (continuing).", rt.job.id)

    def _set_plan(self, rt: _JobRuntime, plan: WorkflowPlan, logs: Sequence[str]) -> None:
        rt.job.workflow_plan = plan
        self._record(rt, logs)
        self._save(rt)
        self._emit(rt, logs)

    def _edit_plan(
        self,
        job_id: str,
        operation: str,
        mutate: Callable[[WorkflowPlan], WorkflowPlan],
        log: str,
    ) -> Job:
        rt = self._runtime(job_id)
        with rt.lock:
            self._require_status(rt, PLAN_EDITABLE, operation)
            plan = self._require_plan(rt)
            self._set_plan(rt, mutate(plan), [log])
            return rt.job.model_copy(deep=True)

    def _abort_in_flight(self, rt: _JobRuntime) -> None:
        plan = rt.job.workflow_plan
        for task_id in sorted(rt.in_flight):
            self._runner.abort(rt.job.id, task_id)
            node = plan.node(task_id) if plan else None
            if node is not None and node.status == TaskStatus.RUNNING:
                node.status = TaskStatus.PENDING
        rt.in_flight.clear()

    def _fail_job(self, rt: _JobRuntime, reason: str) -> None:
        self._abort_in_flight(rt)
        rt.job.generation += 1
        plan = rt.job.workflow_plan
        if plan is not None:
            plan.status = PlanStatus.FAILED
        self._transition(rt, JobStatus.FAILED, logs=[reason], current="Workflow failed")

    def _advance(self, rt: _JobRuntime) -> None:
        """
        Dispatches everything that became ready, then checks for completion.
        Does nothing unless the job is running.
        """
        job = rt.job
        plan = job.workflow_plan
        if job.status != JobStatus.RUNNING or plan is None:
            return

        while True:
            dispatch = self._scheduler.tick(plan, rt.in_flight)
            if not dispatch:
                break
            self._scheduler.mark_dispatched(plan, dispatch, rt.in_flight, self._clock())
            if dispatch.to_start:
                self._start_tasks(rt, plan, dispatch.to_start)
                if job.status != JobStatus.RUNNING:
                    return
            if not dispatch.passthrough:
                break

        if rt.in_flight:
            return

        if self._scheduler.is_complete(plan):
            end = graph.end_node(plan)
            if end is not None:
                end.status = TaskStatus.COMPLETED
            plan.status = PlanStatus.COMPLETED
            job.progress = 100
            self._transition(
                rt,
                JobStatus.COMPLETED,
                logs=["All tasks completed"],
                current="All tasks completed",
            )
        elif not graph.ready_set(plan):
            self._fail_job(rt, "Workflow cannot make progress: no task is ready to run")

    def _start_tasks(self, rt: _JobRuntime, plan: WorkflowPlan, task_ids: frozenset[str]) -> None:
        job = rt.job
        ordered = [n for n in plan.nodes if n.id in task_ids]
        job.current_task_description = "Executing: " + ", ".join(n.title or n.id for n in ordered)
        logs = [f"Starting task: {n.title or n.id}" for n in ordered]
        self._record(rt, logs)
        self._emit(rt, logs)

        for node in ordered:
            dispatch = TaskDispatch(
                job_id=job.id,
                task_id=node.id,
                generation=job.generation,
                instructions=node.description or node.title,
                title=node.title,
                work_dir=job.work_dir,
            )
            try:
                self._runner.start(dispatch)
            except Exception as e:
                _LOG.warning("Runner could not start task %s of job %s: %r", node.id, job.id, e)
                self._fail_job(rt, f"Task runner error while starting {node.title or node.id}: {e}")
                return

