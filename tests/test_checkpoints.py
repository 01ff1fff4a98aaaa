# tests/test_checkpoints.py
import pytest

from flowcore.domain.models import TaskSpec
from flowcore.domain.states import JobStatus
from flowcore.engine.checkpoints import CheckpointTimer
from flowcore.engine.controller import JobController


class FailingStore:
    def save_checkpoint(self, job_id, snapshot):
        raise OSError("disk full")

    def list_checkpoints(self):
        return []

    def delete_checkpoint(self, job_id):
        pass


def test_tick_snapshots_every_job(controller, store, runner):
    job = controller.create_manual_job("a", [TaskSpec(title="a")])
    controller.approve(job.id)
    store.delete_checkpoint(job.id)

    assert CheckpointTimer(controller, interval_s=60).tick() == 1
    assert store.load_checkpoint(job.id).status == JobStatus.RUNNING


def test_stop_runs_final_pass(controller, store):
    timer = CheckpointTimer(controller, interval_s=60)
    timer.start()
    assert timer.running

    job = controller.create_manual_job("a", [TaskSpec(title="a")])
    store.delete_checkpoint(job.id)
    timer.stop(timeout_s=2.0)

    assert not timer.running
    assert store.load_checkpoint(job.id).job_id == job.id


def test_failing_store_does_not_break_the_timer(runner):
    controller = JobController(runner=runner, store=FailingStore())
    job = controller.create_manual_job("a", [TaskSpec(title="a")])

    assert CheckpointTimer(controller, interval_s=60).tick() == 0
    assert controller.get(job.id).status == JobStatus.READY


def test_interval_must_be_positive(controller):
    with pytest.raises(ValueError):
        CheckpointTimer(controller, interval_s=0)
