# tests/test_runner.py
import threading
import time

import pytest

from flowcore.engine.runner import ShellTaskRunner, TaskDispatch


class RecordingSink:
    def __init__(self) -> None:
        self.results: list[tuple] = []
        self.done = threading.Event()

    def on_task_completed(self, job_id, task_id, generation):
        self.results.append(("completed", task_id, generation, ""))
        self.done.set()
        return True

    def on_task_failed(self, job_id, task_id, generation, error=""):
        self.results.append(("failed", task_id, generation, error))
        self.done.set()
        return True


@pytest.fixture()
def sink():
    return RecordingSink()


def _dispatch(instructions, task_id="task1", generation=0, work_dir=None):
    return TaskDispatch(
        job_id="job-1",
        task_id=task_id,
        generation=generation,
        instructions=instructions,
        work_dir=work_dir,
    )


def test_successful_command_reports_completion(sink, tmp_path):
    runner = ShellTaskRunner()
    runner.bind(sink)
    try:
        runner.start(_dispatch("touch marker", generation=4, work_dir=str(tmp_path)))
        assert sink.done.wait(5)
    finally:
        runner.shutdown()

    assert sink.results == [("completed", "task1", 4, "")]
    assert (tmp_path / "marker").exists()


def test_failing_command_reports_exit_status_and_output(sink):
    runner = ShellTaskRunner()
    runner.bind(sink)
    try:
        runner.start(_dispatch("echo broken; exit 2"))
        assert sink.done.wait(5)
    finally:
        runner.shutdown()

    [(kind, _, _, error)] = sink.results
    assert kind == "failed"
    assert error == "exit status 2: broken"


def test_template_quotes_instructions():
    runner = ShellTaskRunner("agent --prompt {instructions}")
    try:
        assert runner.build_command(_dispatch("fix the 'tests'")) == "agent --prompt 'fix the '\"'\"'tests'\"'\"''"
        assert ShellTaskRunner().build_command(_dispatch("echo hi")) == "echo hi"
    finally:
        runner.shutdown()


def test_aborted_task_reports_nothing(sink):
    runner = ShellTaskRunner()
    runner.bind(sink)
    runner.start(_dispatch("sleep 30"))
    try:
        time.sleep(0.2)
        runner.abort("job-1", "task1")
        assert not sink.done.wait(0.5)
    finally:
        runner.shutdown()

    assert sink.results == []


def test_start_before_bind_raises():
    runner = ShellTaskRunner()
    try:
        with pytest.raises(RuntimeError):
            runner.start(_dispatch("true"))
    finally:
        runner.shutdown()


def _wait_until(fn, timeout_s=5.0, poll_s=0.05):
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if fn():
            return True
        time.sleep(poll_s)
    return False


def test_aborted_task_leaves_no_state_and_can_restart(sink):
    runner = ShellTaskRunner()
    runner.bind(sink)
    try:
        runner.start(_dispatch("sleep 30"))
        time.sleep(0.2)
        runner.abort("job-1", "task1")
        assert _wait_until(lambda: not runner._runs)

        runner.start(_dispatch("true", generation=1))
        assert sink.done.wait(5)
    finally:
        runner.shutdown()

    assert sink.results == [("completed", "task1", 1, "")]
    assert _wait_until(lambda: not runner._runs)


def test_task_suspended_while_queued_waits_for_continue(sink, tmp_path):
    runner = ShellTaskRunner(max_workers=1)
    runner.bind(sink)
    try:
        runner.start(_dispatch("sleep 30", task_id="busy"))
        runner.start(_dispatch("touch marker", task_id="queued", work_dir=str(tmp_path)))
        runner.suspend("job-1", "queued")
        runner.abort("job-1", "busy")

        assert not sink.done.wait(0.5)
        assert not (tmp_path / "marker").exists()

        runner.continue_("job-1", "queued")
        assert sink.done.wait(5)
    finally:
        runner.shutdown()

    assert sink.results == [("completed", "queued", 0, "")]
    assert (tmp_path / "marker").exists()
