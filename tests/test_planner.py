# tests/test_planner.py
import asyncio

import pytest

from flowcore.domain.errors import PlanGenerationError
from flowcore.domain.states import LoopCondition, PlanStatus
from flowcore.engine.loop_detector import LoopDetector
from flowcore.engine.planner import RuleBasedPlanGenerator, make_title, split_prompts


def _generate(requirements, **kwargs):
    return asyncio.run(RuleBasedPlanGenerator(**kwargs).generate_plan(requirements))


def test_numbered_list_becomes_sequential_plan():
    plan = _generate("1. Install deps\n2. Build the app\n3. Publish")

    assert [n.id for n in plan.nodes] == ["start", "task1", "task2", "task3", "end"]
    assert [n.title for n in plan.task_nodes()] == ["Install deps", "Build the app", "Publish"]
    assert plan.node("task2").dependencies == ["task1"]
    assert plan.status == PlanStatus.DRAFT
    assert plan.estimated_duration == 15
    assert plan.loops == []


def test_paragraphs_are_used_without_list_items():
    assert split_prompts("Set up CI.\n\nWrite the\nrelease notes.") == [
        "Set up CI.",
        "Write the release notes.",
    ]


def test_continuation_lines_join_previous_item():
    assert split_prompts("- build\n  with coverage\n- ship") == ["build with coverage", "ship"]


def test_parallel_marker_builds_fan_out():
    plan = _generate("[parallel]\n- lint\n- unit tests\n- docs")

    assert plan.node("end").dependencies == ["task1", "task2", "task3"]
    assert all(n.dependencies == ["start"] for n in plan.task_nodes())
    assert plan.loops == []


def test_retry_phrasing_yields_loop_suggestion():
    plan = _generate(
        "1. Upload artifacts\n2. Retry upload on errors",
        detector=LoopDetector(default_max_attempts=4),
    )

    [loop] = plan.loops
    assert loop.pair == ("task1", "task2")
    assert loop.condition == LoopCondition.MAX_ATTEMPTS
    assert loop.max_attempts == 4
    assert loop.current_attempt is None


def test_loop_markers_are_stripped_from_titles():
    plan = _generate("1. [LOOP] Run tests\n2. Fix errors [/LOOP]\n3. Deploy")

    assert [n.title for n in plan.task_nodes()] == ["Run tests", "Fix errors", "Deploy"]
    assert [lp.pair for lp in plan.loops] == [("task1", "task2")]


def test_long_prompt_title_is_truncated():
    text = "x" * 80
    assert make_title(text) == "x" * 50 + "..."
    plan = _generate(f"1. {text}")
    assert plan.node("task1").description == text


@pytest.mark.parametrize("requirements", ["", "   \n\n  ", "[parallel]", "- [LOOP]"])
def test_requirements_without_tasks_fail(requirements):
    with pytest.raises(PlanGenerationError):
        _generate(requirements)
