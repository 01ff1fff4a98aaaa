# src/flowcore/api/app.py
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from flowcore.config import Settings, load_settings
from flowcore.engine.checkpoints import CheckpointTimer
from flowcore.engine.controller import JobController
from flowcore.engine.events import EventBus
from flowcore.engine.loop_detector import DEFAULT_RULES, LoopDetector, load_rules
from flowcore.engine.planner import RuleBasedPlanGenerator
from flowcore.engine.runner import ShellTaskRunner
from flowcore.logging import configure_logging, get_logger
from flowcore.storage import SQLiteCheckpointStore, SQLiteDB, apply_migrations

from .routes import router

_LOG = get_logger(__name__)


def _build_detector(settings: Settings) -> LoopDetector:
    rules = list(DEFAULT_RULES)
    if settings.loop_rules_file is not None:
        rules.extend(load_rules(settings.loop_rules_file))
    return LoopDetector(rules, default_max_attempts=settings.loop_max_attempts)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Builds the engine on startup and stops its threads on shutdown:
    settings, logging, migrations, checkpoint store, runner, planner,
    controller (restored from checkpoints) and the checkpoint timer.
    """
    settings = load_settings()
    configure_logging(settings.log_level)

    db = SQLiteDB(settings.db_path)
    conn = db.connect()
    try:
        apply_migrations(conn, settings.migrations_dir)
    finally:
        conn.close()

    events = EventBus()
    detector = _build_detector(settings)
    runner = ShellTaskRunner(
        settings.runner_command,
        max_workers=settings.runner_workers,
        default_work_dir=settings.work_dir,
    )
    controller = JobController(
        runner=runner,
        store=SQLiteCheckpointStore(db),
        planner=RuleBasedPlanGenerator(detector),
        events=events,
        detector=detector,
    )
    controller.restore()

    timer = CheckpointTimer(controller, settings.checkpoint_interval_s)
    timer.start()

    app.state.settings = settings
    app.state.events = events
    app.state.controller = controller
    app.state.runner = runner
    app.state.timer = timer

    _LOG.info("Startup complete.")

    try:
        yield
    finally:
        timer.stop(timeout_s=5.0)
        runner.shutdown()
        _LOG.info("Shutdown complete.")


app = FastAPI(
    title="flowcore",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(router)
