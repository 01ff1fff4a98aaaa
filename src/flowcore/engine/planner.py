# src/flowcore/engine/planner.py
"""
Plan generation from free-text requirements.

The controller only depends on the PlanGenerator protocol. The bundled
RuleBasedPlanGenerator turns a numbered or bulleted list (or, failing that,
paragraphs) into a sequential plan, or a parallel one when the requirements
carry a "[parallel]" marker, and attaches loop suggestions for explicit loop
markers and retry phrasing.
"""
from __future__ import annotations

import re
from typing import Optional, Protocol

from flowcore.domain import graph
from flowcore.domain.errors import GraphError, PlanGenerationError
from flowcore.domain.models import LoopConfig, TaskSpec, WorkflowPlan
from flowcore.domain.states import LoopCondition
from flowcore.engine.loop_detector import LOOP_CLOSE_MARKERS, LOOP_OPEN_MARKERS, LoopDetector
from flowcore.logging import get_logger

_LOG = get_logger(__name__)

PARALLEL_MARKER = "[parallel]"
DEFAULT_TASK_DURATION = 5.0
TITLE_MAX_CHARS = 50

_ITEM_RE = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s+(.*)$")
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")


class PlanGenerator(Protocol):
    async def generate_plan(self, requirements: str) -> WorkflowPlan: ...


def split_prompts(requirements: str) -> list[str]:
    """
    Splits requirements into one prompt per task.

    List items win when present; unmarked lines following an item continue
    it. Otherwise every paragraph is one prompt.
    """
    lines = [
        line for line in requirements.splitlines()
        if line.strip().lower() != PARALLEL_MARKER
    ]

    items: list[str] = []
    for line in lines:
        m = _ITEM_RE.match(line)
        if m:
            items.append(m.group(1).strip())
        elif items and line.strip():
            items[-1] = f"{items[-1]} {line.strip()}"
    if items:
        return [item for item in items if item]

    text = "\n".join(lines)
    return [
        " ".join(p.split())
        for p in _PARAGRAPH_SPLIT_RE.split(text)
        if p.strip()
    ]


def strip_markers(prompt: str) -> str:
    for marker in (*LOOP_OPEN_MARKERS, *LOOP_CLOSE_MARKERS):
        prompt = prompt.replace(marker, "")
    return " ".join(prompt.split())


def make_title(text: str) -> str:
    if len(text) <= TITLE_MAX_CHARS:
        return text
    return text[:TITLE_MAX_CHARS].rstrip() + "..."


class RuleBasedPlanGenerator:
    def __init__(
        self,
        detector: Optional[LoopDetector] = None,
        *,
        default_duration: float = DEFAULT_TASK_DURATION,
    ) -> None:
        self._detector = detector or LoopDetector()
        self._default_duration = default_duration

    async def generate_plan(self, requirements: str) -> WorkflowPlan:
        prompts = split_prompts(requirements)
        cleaned = [strip_markers(p) for p in prompts]
        if not any(cleaned):
            raise PlanGenerationError("Requirements do not describe any task")

        specs: list[TaskSpec] = []
        for i, text in enumerate(cleaned, start=1):
            if not text:
                continue
            specs.append(TaskSpec(id=f"task{i}", title=make_title(text), description=text))

        parallel = PARALLEL_MARKER in requirements.lower()
        try:
            if parallel:
                plan = graph.build_parallel_plan(
                    specs,
                    name="Parallel Workflow",
                    description=requirements.strip(),
                    default_duration=self._default_duration,
                )
            else:
                plan = graph.build_sequential_plan(
                    specs,
                    name="Generated Workflow",
                    description=requirements.strip(),
                    default_duration=self._default_duration,
                    loops=self._suggested_loops(prompts, cleaned),
                )
        except GraphError as e:
            raise PlanGenerationError(
                f"Generated plan is invalid: {e.message}",
                details={"kind": e.kind.value, **(e.details or {})},
            ) from e

        _LOG.info(
            "Generated %s plan %s with %d task(s) and %d loop suggestion(s)",
            "parallel" if parallel else "sequential",
            plan.id,
            len(specs),
            len(plan.loops),
        )
        return plan

    def _suggested_loops(self, prompts: list[str], cleaned: list[str]) -> list[LoopConfig]:
        loops: list[LoopConfig] = []
        seen: set[tuple[str, str]] = set()
        for span in self._detector.detect_from_prompts(prompts):
            if span.end_index <= span.start_index:
                continue
            if not cleaned[span.start_index] or not cleaned[span.end_index]:
                continue
            pair = (f"task{span.start_index + 1}", f"task{span.end_index + 1}")
            if pair in seen:
                continue
            seen.add(pair)
            loops.append(
                LoopConfig(
                    id=f"loop-{pair[0]}-{pair[1]}",
                    start_task_id=pair[0],
                    end_task_id=pair[1],
                    condition=span.condition,
                    max_attempts=(
                        self._detector.default_max_attempts
                        if span.condition == LoopCondition.MAX_ATTEMPTS
                        else None
                    ),
                )
            )
        return loops
