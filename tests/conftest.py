# tests/conftest.py
import importlib
import itertools
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import pytest
from fastapi.testclient import TestClient

from flowcore.engine.controller import JobController
from flowcore.engine.events import EventBus
from flowcore.engine.planner import RuleBasedPlanGenerator
from flowcore.engine.runner import TaskDispatch
from flowcore.storage import InMemoryCheckpointStore

_counter = itertools.count(1)

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"

DEFAULT_ENV = {
    "FLOWCORE_CHECKPOINT_INTERVAL_S": "60",
    "FLOWCORE_LOOP_MAX_ATTEMPTS": "3",
    "FLOWCORE_RUNNER_COMMAND": "{instructions}",
    "FLOWCORE_RUNNER_WORKERS": "2",
    "FLOWCORE_LOG_LEVEL": "warning",
}


# -------------------------
# Engine fixtures
# -------------------------


class FakeRunner:
    """Records runner calls; tests report results by hand."""

    def __init__(self) -> None:
        self.sink = None
        self.started: list[TaskDispatch] = []
        self.suspended: list[str] = []
        self.continued: list[str] = []
        self.aborted: list[str] = []

    def bind(self, sink) -> None:
        self.sink = sink

    def start(self, dispatch: TaskDispatch) -> None:
        self.started.append(dispatch)

    def suspend(self, job_id: str, task_id: str) -> None:
        self.suspended.append(task_id)

    def continue_(self, job_id: str, task_id: str) -> None:
        self.continued.append(task_id)

    def abort(self, job_id: str, task_id: str) -> None:
        self.aborted.append(task_id)

    @property
    def started_ids(self) -> list[str]:
        return [d.task_id for d in self.started]

    def last(self, task_id: str) -> TaskDispatch:
        for d in reversed(self.started):
            if d.task_id == task_id:
                return d
        raise AssertionError(f"{task_id} was never started")

    def complete(self, task_id: str, *, generation: Optional[int] = None) -> bool:
        d = self.last(task_id)
        gen = d.generation if generation is None else generation
        return self.sink.on_task_completed(d.job_id, task_id, gen)

    def fail(self, task_id: str, error: str = "boom", *, generation: Optional[int] = None) -> bool:
        d = self.last(task_id)
        gen = d.generation if generation is None else generation
        return self.sink.on_task_failed(d.job_id, task_id, gen, error)


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance_minutes(self, minutes: float) -> None:
        self.now += int(minutes * 60_000)


@pytest.fixture()
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
def controller(runner, store, events, clock) -> JobController:
    return JobController(
        runner=runner,
        store=store,
        planner=RuleBasedPlanGenerator(),
        events=events,
        clock=clock,
    )


# -------------------------
# API fixtures
# -------------------------


def _apply_env(monkeypatch: pytest.MonkeyPatch, db_path: Path, overrides: Optional[dict[str, str]] = None) -> None:
    monkeypatch.setenv("FLOWCORE_DB_PATH", str(db_path))
    monkeypatch.setenv("FLOWCORE_MIGRATIONS_DIR", str(MIGRATIONS_DIR))
    for k, v in DEFAULT_ENV.items():
        monkeypatch.setenv(k, v)
    if overrides:
        for k, v in overrides.items():
            monkeypatch.setenv(k, v)


@contextmanager
def _client_ctx(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, *, overrides: Optional[dict[str, str]] = None,
                db_path: Optional[Path] = None) -> Iterator[TestClient]:
    if db_path is None:
        n = next(_counter)
        db_path = tmp_path / f"flowcore_{n}.db"

    _apply_env(monkeypatch, db_path, overrides)

    # Import after env is set; reload to avoid cross-test state
    app_mod = importlib.import_module("flowcore.api.app")
    importlib.reload(app_mod)

    with TestClient(app_mod.app) as client:
        yield client


@pytest.fixture()
def client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    """
    Default integration test client: shell runner, fresh sqlite db per test.
    """
    with _client_ctx(monkeypatch, tmp_path) as c:
        yield c


@pytest.fixture()
def client_factory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """
    Factory for tests that need custom settings or a pre-populated DB.

    Usage:
      with client_factory(overrides={"FLOWCORE_RUNNER_COMMAND": "false"}) as client:
          ...

      with client_factory(db_path=some_existing_db_path) as client:
          ...
    """

    def _make(*, overrides: Optional[dict[str, str]] = None, db_path: Optional[Path] = None):
        return _client_ctx(monkeypatch, tmp_path, overrides=overrides, db_path=db_path)

    return _make
