# src/flowcore/engine/runner.py
from __future__ import annotations

import os
import shlex
import signal
import subprocess
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from flowcore.logging import get_logger

_LOG = get_logger(__name__)

_OUTPUT_TAIL_CHARS = 2000


@dataclass(frozen=True)
class TaskDispatch:
    """Everything a task runner needs to execute one task of one job generation."""
    job_id: str
    task_id: str
    generation: int
    instructions: str
    title: str = ""
    work_dir: Optional[str] = None


class TaskEventSink(Protocol):
    def on_task_completed(self, job_id: str, task_id: str, generation: int) -> bool: ...

    def on_task_failed(self, job_id: str, task_id: str, generation: int, error: str = "") -> bool: ...


class TaskRunner(Protocol):
    """
    Executes tasks on behalf of the controller.

    start() is fire-and-forget: results are reported later through the bound
    sink, tagged with the dispatch generation.
    """

    def bind(self, sink: TaskEventSink) -> None: ...

    def start(self, dispatch: TaskDispatch) -> None: ...

    def suspend(self, job_id: str, task_id: str) -> None: ...

    def continue_(self, job_id: str, task_id: str) -> None: ...

    def abort(self, job_id: str, task_id: str) -> None: ...


@dataclass
class _Run:
    """One dispatch from submission until its process exits."""
    dispatch: TaskDispatch
    proc: Optional[subprocess.Popen[str]] = None
    suspended: bool = False
    aborted: bool = False


class ShellTaskRunner:
    """
    Runs each task as a shell command on a thread pool.

    The command comes from a template; "{instructions}" is replaced with the
    task's instructions, shell-quoted unless the template is exactly
    "{instructions}" (the instructions are then the command itself).
    Exit status 0 reports completion, anything else reports failure.

    Suspend/continue/abort signal the task's whole process group. A task
    suspended while still queued is held before its command starts.
    """

    def __init__(
        self,
        command_template: str = "{instructions}",
        *,
        max_workers: int = 4,
        default_work_dir: Optional[Path] = None,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        self._template = command_template
        self._default_work_dir = default_work_dir
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="flowcore-runner",
        )
        self._sink: Optional[TaskEventSink] = None
        self._cond = threading.Condition()
        self._runs: dict[tuple[str, str], _Run] = {}

    def bind(self, sink: TaskEventSink) -> None:
        self._sink = sink

    def build_command(self, dispatch: TaskDispatch) -> str:
        if self._template.strip() == "{instructions}":
            return dispatch.instructions
        return self._template.replace("{instructions}", shlex.quote(dispatch.instructions))

    def start(self, dispatch: TaskDispatch) -> None:
        if self._sink is None:
            raise RuntimeError("ShellTaskRunner.start called before bind()")
        run = _Run(dispatch)
        with self._cond:
            self._runs[(dispatch.job_id, dispatch.task_id)] = run
        fut = self._executor.submit(self._run, run)
        fut.add_done_callback(self._on_run_done(dispatch))

    def suspend(self, job_id: str, task_id: str) -> None:
        with self._cond:
            run = self._runs.get((job_id, task_id))
            if run is None:
                return
            run.suspended = True
            _signal(run.proc, signal.SIGSTOP)

    def continue_(self, job_id: str, task_id: str) -> None:
        with self._cond:
            run = self._runs.get((job_id, task_id))
            if run is None:
                return
            run.suspended = False
            _signal(run.proc, signal.SIGCONT)
            self._cond.notify_all()

    def abort(self, job_id: str, task_id: str) -> None:
        with self._cond:
            run = self._runs.get((job_id, task_id))
            if run is None:
                return
            run.aborted = True
            run.suspended = False
            # a stopped process cannot handle SIGTERM until continued
            _signal(run.proc, signal.SIGCONT)
            _signal(run.proc, signal.SIGTERM)
            self._cond.notify_all()

    def shutdown(self) -> None:
        with self._cond:
            keys = list(self._runs)
        for key in keys:
            self.abort(*key)
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _run(self, run: _Run) -> None:
        dispatch = run.dispatch
        key = (dispatch.job_id, dispatch.task_id)
        try:
            output, returncode = self._execute(run)
        finally:
            with self._cond:
                if self._runs.get(key) is run:
                    del self._runs[key]

        if run.aborted:
            _LOG.info("Task %s/%s aborted.", dispatch.job_id, dispatch.task_id)
            return

        sink = self._sink
        if sink is None:
            raise RuntimeError("ShellTaskRunner has no event sink bound")
        if returncode == 0:
            sink.on_task_completed(dispatch.job_id, dispatch.task_id, dispatch.generation)
        else:
            tail = output.strip()[-_OUTPUT_TAIL_CHARS:]
            error = f"exit status {returncode}"
            if tail:
                error = f"{error}: {tail}"
            sink.on_task_failed(dispatch.job_id, dispatch.task_id, dispatch.generation, error)

    def _execute(self, run: _Run) -> tuple[str, Optional[int]]:
        dispatch = run.dispatch
        with self._cond:
            while run.suspended and not run.aborted:
                self._cond.wait()
            if run.aborted:
                return "", None

        cmd = self.build_command(dispatch)
        cwd = dispatch.work_dir or (str(self._default_work_dir) if self._default_work_dir else None)
        _LOG.info("Running task %s/%s: %s", dispatch.job_id, dispatch.task_id, cmd)

        proc = subprocess.Popen(
            cmd,
            shell=True,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            start_new_session=True,
        )
        with self._cond:
            run.proc = proc
            # suspend or abort may have arrived while the process was starting
            if run.aborted:
                _signal(proc, signal.SIGTERM)
            elif run.suspended:
                _signal(proc, signal.SIGSTOP)
        output, _ = proc.communicate()
        return output or "", proc.returncode

    def _on_run_done(self, dispatch: TaskDispatch):
        def _cb(fut: Future[None]) -> None:
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is None:
                return
            _LOG.warning("Task %s/%s could not run: %r", dispatch.job_id, dispatch.task_id, exc)
            if self._sink is not None:
                self._sink.on_task_failed(
                    dispatch.job_id, dispatch.task_id, dispatch.generation, f"runner error: {exc}"
                )

        return _cb


def _signal(proc: Optional[subprocess.Popen[str]], sig: signal.Signals) -> None:
    if proc is None or proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
