# src/flowcore/api/deps.py
from __future__ import annotations

from fastapi import Request

from flowcore.engine.controller import JobController
from flowcore.engine.events import EventBus


def get_controller(request: Request) -> JobController:
    """
    Per-request access to the controller built during startup.
    """
    return request.app.state.controller  # type: ignore[attr-defined]


def get_events(request: Request) -> EventBus:
    return request.app.state.events  # type: ignore[attr-defined]
