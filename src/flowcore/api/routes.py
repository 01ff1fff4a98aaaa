# src/flowcore/api/routes.py
from __future__ import annotations

import pydantic
from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi.responses import JSONResponse

from flowcore.domain.errors import (
    FlowCoreError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from flowcore.domain.models import (
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
    TaskFailure,
    TaskNode,
    TaskUpdate,
)
from flowcore.domain.states import NodeKind
from flowcore.engine.controller import JobController
from flowcore.engine.events import EventBus
from flowcore.logging import get_logger

from .deps import get_controller, get_events

_LOG = get_logger(__name__)
router = APIRouter()


def _status_for(err: FlowCoreError) -> int:
    if isinstance(err, NotFoundError):
        return 404
    if isinstance(err, InvalidTransitionError):
        return 409
    return 400


def _error_response(err: FlowCoreError) -> JSONResponse:
    payload = ErrorResponse(
        error=err.message,
        code=err.code,
        details=err.details or {},
    ).model_dump()
    return JSONResponse(status_code=_status_for(err), content=payload)


@router.get("/healthz")
def healthz() -> dict:
    return {"ok": True}


# -------------------------
# Jobs
# -------------------------


@router.post("/jobs", response_model=Job, status_code=201)
def submit_job(
    payload: JobCreate,
    background: BackgroundTasks,
    controller: JobController = Depends(get_controller),
):
    """
    Submit requirements. Planning runs after the response is sent; poll the
    job until it is ready, then approve it.
    """
    try:
        job = controller.submit(payload.requirements, work_dir=payload.work_dir)
    except FlowCoreError as e:
        return _error_response(e)
    background.add_task(controller.run_planning, job.id)
    return job


@router.post("/jobs/manual", response_model=Job, status_code=201)
def create_manual_job(
    payload: ManualJobCreate,
    controller: JobController = Depends(get_controller),
):
    """Create a ready job from an authored plan or a list of task specs."""
    try:
        if payload.plan is not None:
            return controller.create_job_with_plan(
                payload.requirements or payload.plan.name,
                payload.plan,
                work_dir=payload.work_dir,
            )
        return controller.create_manual_job(
            payload.requirements,
            payload.tasks,
            work_dir=payload.work_dir,
        )
    except FlowCoreError as e:
        return _error_response(e)


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(controller: JobController = Depends(get_controller)):
    jobs = controller.list_jobs()
    return JobListResponse(jobs=jobs, total=len(jobs))


@router.get("/jobs/{job_id}", response_model=Job)
def get_job(job_id: str, controller: JobController = Depends(get_controller)):
    try:
        return controller.get(job_id)
    except FlowCoreError as e:
        return _error_response(e)


@router.delete("/jobs/{job_id}")
def discard_job(job_id: str, controller: JobController = Depends(get_controller)):
    try:
        controller.discard(job_id)
        return {"id": job_id, "deleted": True}
    except FlowCoreError as e:
        return _error_response(e)


# -------------------------
# Lifecycle
# -------------------------


@router.post("/jobs/{job_id}/approve", response_model=Job)
def approve_job(job_id: str, controller: JobController = Depends(get_controller)):
    try:
        return controller.approve(job_id)
    except FlowCoreError as e:
        return _error_response(e)


@router.post("/jobs/{job_id}/reject", response_model=Job)
def reject_job(job_id: str, controller: JobController = Depends(get_controller)):
    try:
        return controller.reject(job_id)
    except FlowCoreError as e:
        return _error_response(e)


@router.post("/jobs/{job_id}/pause", response_model=Job)
def pause_job(job_id: str, controller: JobController = Depends(get_controller)):
    try:
        return controller.pause(job_id)
    except FlowCoreError as e:
        return _error_response(e)


@router.post("/jobs/{job_id}/resume", response_model=Job)
def resume_job(job_id: str, controller: JobController = Depends(get_controller)):
    try:
        return controller.resume(job_id)
    except FlowCoreError as e:
        return _error_response(e)


@router.post("/jobs/{job_id}/stop", response_model=Job)
def stop_job(job_id: str, controller: JobController = Depends(get_controller)):
    try:
        return controller.stop(job_id)
    except FlowCoreError as e:
        return _error_response(e)


@router.post("/jobs/{job_id}/resume-from-failure", response_model=Job)
def resume_job_from_failure(job_id: str, controller: JobController = Depends(get_controller)):
    try:
        return controller.resume_from_failure(job_id)
    except FlowCoreError as e:
        return _error_response(e)


@router.post("/jobs/{job_id}/cancel-planning", response_model=Job)
def cancel_planning(job_id: str, controller: JobController = Depends(get_controller)):
    try:
        return controller.cancel_planning(job_id)
    except FlowCoreError as e:
        return _error_response(e)


@router.post("/jobs/{job_id}/checkpoint", response_model=JobSnapshot)
def checkpoint_job(job_id: str, controller: JobController = Depends(get_controller)):
    try:
        return controller.checkpoint(job_id)
    except FlowCoreError as e:
        return _error_response(e)


# -------------------------
# Views
# -------------------------


@router.get("/jobs/{job_id}/events", response_model=list[JobEvent])
def job_events(
    job_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    controller: JobController = Depends(get_controller),
    events: EventBus = Depends(get_events),
):
    try:
        controller.get(job_id)
    except FlowCoreError as e:
        return _error_response(e)
    return events.recent(job_id, limit=limit)


@router.get("/jobs/{job_id}/parallel-groups")
def parallel_groups(job_id: str, controller: JobController = Depends(get_controller)):
    try:
        return {"groups": controller.parallel_groups(job_id)}
    except FlowCoreError as e:
        return _error_response(e)


# -------------------------
# Loops
# -------------------------


@router.get("/jobs/{job_id}/loops/suggestions", response_model=list[LoopConfig])
def loop_suggestions(job_id: str, controller: JobController = Depends(get_controller)):
    try:
        return controller.pending_loop_suggestions(job_id)
    except FlowCoreError as e:
        return _error_response(e)


@router.post("/jobs/{job_id}/loops", response_model=LoopConfig, status_code=201)
def accept_loop(
    job_id: str,
    loop: LoopConfig,
    controller: JobController = Depends(get_controller),
):
    """
    Accept a suggested loop (or add one by hand). The loop body must be a
    linear chain of tasks and must not overlap another accepted loop.
    """
    try:
        return controller.accept_loop(job_id, loop)
    except FlowCoreError as e:
        return _error_response(e)


@router.delete("/jobs/{job_id}/loops/{loop_id}", response_model=Job)
def reject_loop(job_id: str, loop_id: str, controller: JobController = Depends(get_controller)):
    try:
        return controller.reject_loop(job_id, loop_id)
    except FlowCoreError as e:
        return _error_response(e)


# -------------------------
# Plan editing
# -------------------------


@router.post("/jobs/{job_id}/plan/tasks", response_model=Job, status_code=201)
def add_plan_task(
    job_id: str,
    payload: TaskAdd,
    controller: JobController = Depends(get_controller),
):
    try:
        node = TaskNode(
            id=payload.id,
            kind=NodeKind(payload.kind),
            title=payload.title,
            description=payload.description or payload.title,
            dependencies=payload.dependencies,
            duration_estimate=payload.duration_estimate,
        )
    except pydantic.ValidationError as e:
        errors = [{"loc": list(x["loc"]), "msg": x["msg"]} for x in e.errors()]
        err = ValidationError("Invalid task", details={"errors": errors})
        return _error_response(err)
    try:
        return controller.add_task(job_id, node)
    except FlowCoreError as e:
        return _error_response(e)


@router.patch("/jobs/{job_id}/plan/tasks/{task_id}", response_model=Job)
def update_plan_task(
    job_id: str,
    task_id: str,
    payload: TaskUpdate,
    controller: JobController = Depends(get_controller),
):
    try:
        return controller.update_task(
            job_id,
            task_id,
            title=payload.title,
            description=payload.description,
            duration_estimate=payload.duration_estimate,
            dependencies=payload.dependencies,
        )
    except FlowCoreError as e:
        return _error_response(e)


@router.delete("/jobs/{job_id}/plan/tasks/{task_id}", response_model=Job)
def delete_plan_task(job_id: str, task_id: str, controller: JobController = Depends(get_controller)):
    try:
        return controller.delete_task(job_id, task_id)
    except FlowCoreError as e:
        return _error_response(e)


# -------------------------
# Runner callbacks (out-of-process runners)
# -------------------------


def _callback_response(accepted: bool) -> JSONResponse:
    return JSONResponse(status_code=200 if accepted else 202, content={"accepted": accepted})


@router.post("/jobs/{job_id}/tasks/{task_id}/complete")
def task_completed(
    job_id: str,
    task_id: str,
    payload: TaskCompletion,
    controller: JobController = Depends(get_controller),
):
    try:
        controller.get(job_id)
    except FlowCoreError as e:
        return _error_response(e)
    return _callback_response(controller.on_task_completed(job_id, task_id, payload.generation))


@router.post("/jobs/{job_id}/tasks/{task_id}/fail")
def task_failed(
    job_id: str,
    task_id: str,
    payload: TaskFailure,
    controller: JobController = Depends(get_controller),
):
    try:
        controller.get(job_id)
    except FlowCoreError as e:
        return _error_response(e)
    _LOG.info("Runner reported failure for %s/%s", job_id, task_id)
    return _callback_response(
        controller.on_task_failed(job_id, task_id, payload.generation, payload.error)
    )
