# tests/test_loop_detector.py
import json

import pytest

from flowcore.domain import graph
from flowcore.domain.models import LoopConfig, TaskNode, TaskSpec
from flowcore.domain.states import LoopCondition
from flowcore.engine.loop_detector import DEFAULT_RULES, LoopDetector, LoopRule, load_rules


def _tasks(*pairs: tuple[str, str]) -> list[TaskNode]:
    plan = graph.build_sequential_plan([TaskSpec(title=t, description=d) for t, d in pairs])
    return plan.task_nodes()


def test_run_tests_then_fix_errors_suggests_until_success():
    tasks = _tasks(("Run tests", "npm test"), ("Fix errors", "Fix test errors"))

    candidates = LoopDetector().detect(tasks)

    assert len(candidates) == 1
    loop = candidates[0]
    assert loop.pair == ("task1", "task2")
    assert loop.condition == LoopCondition.UNTIL_SUCCESS
    assert loop.current_attempt is None
    assert loop.id == "loop-task1-task2"


def test_title_only_pair_is_detected():
    plan = graph.build_sequential_plan([TaskSpec(title="Run tests"), TaskSpec(title="Fix errors")])

    candidates = LoopDetector().detect(plan.task_nodes())

    assert [c.pair for c in candidates] == [("task1", "task2")]


def test_korean_cues_are_detected():
    tasks = _tasks(("테스트 실행", "테스트를 실행한다"), ("에러 수정", "실패한 테스트를 수정한다"))

    candidates = LoopDetector().detect(tasks)

    assert len(candidates) == 1
    assert candidates[0].condition == LoopCondition.UNTIL_SUCCESS


def test_retry_cue_suggests_max_attempts_with_default_budget():
    tasks = _tasks(("Upload artifacts", "push build output"), ("Retry upload", "retry on network errors"))

    candidates = LoopDetector(default_max_attempts=5).detect(tasks)

    assert len(candidates) == 1
    assert candidates[0].condition == LoopCondition.MAX_ATTEMPTS
    assert candidates[0].max_attempts == 5


def test_following_fix_task_extends_loop_body():
    tasks = _tasks(
        ("Run tests", "run the suite"),
        ("Debug failures", "debug failing cases"),
        ("Patch code", "patch the failing modules"),
        ("Deploy", "ship it"),
    )

    candidates = LoopDetector().detect(tasks)

    assert [c.pair for c in candidates] == [("task1", "task3")]


def test_triple_is_tried_when_pair_does_not_match():
    tasks = _tasks(
        ("Build", "compile the app"),
        ("Check", "build fails sometimes"),
        ("Resolve", "resolve issues"),
    )

    detector = LoopDetector(rules=[LoopRule.compile(r"compile.*fails.*resolve", "until-success")])
    candidates = detector.detect(tasks)

    assert [c.pair for c in candidates] == [("task1", "task3")]


def test_scan_skips_consumed_span():
    tasks = _tasks(
        ("Run tests", "npm test"),
        ("Fix errors", "fix failing tests"),
        ("Run tests again", "npm test"),
        ("Fix remaining errors", "fix"),
    )

    candidates = LoopDetector().detect(tasks)

    assert [c.pair for c in candidates] == [("task1", "task2"), ("task3", "task4")]


def test_no_suggestion_without_cues():
    tasks = _tasks(("Write docs", "README"), ("Publish", "upload to site"))
    assert LoopDetector().detect(tasks) == []


def test_suggestion_is_idempotent_once_loop_accepted():
    tasks = _tasks(("Run tests", "npm test"), ("Fix errors", "Fix test errors"))
    detector = LoopDetector()

    first = detector.detect(tasks)
    accepted = first[0].model_copy(update={"current_attempt": 0})

    assert detector.detect(tasks, existing_loops=[accepted]) == []
    assert detector.detect(tasks, existing_loops=[accepted]) == []


def test_dismissed_pairs_are_not_suggested_again():
    tasks = _tasks(("Run tests", "npm test"), ("Fix errors", "Fix test errors"))
    assert LoopDetector().detect(tasks, dismissed=[("task1", "task2")]) == []


def test_loop_id_gets_suffix_when_taken():
    tasks = _tasks(("Run tests", "npm test"), ("Fix errors", "Fix test errors"))
    taken = LoopConfig(id="loop-task1-task2", start_task_id="task2", end_task_id="task2")

    candidates = LoopDetector().detect(tasks, existing_loops=[taken])

    assert [c.id for c in candidates] == ["loop-task1-task2-2"]


def test_detect_from_prompts_with_markers():
    prompts = ["[LOOP] Run tests", "Fix errors", "Fix lint [/LOOP]", "Deploy"]

    spans = LoopDetector().detect_from_prompts(prompts)

    assert (0, 2) in [(s.start_index, s.end_index) for s in spans]
    assert spans[0].condition == LoopCondition.UNTIL_SUCCESS


def test_detect_from_prompts_default_span_without_end_marker():
    prompts = ["반복: build", "check", "patch", "deploy", "announce"]

    spans = LoopDetector().detect_from_prompts(prompts)

    assert (spans[0].start_index, spans[0].end_index) == (0, 2)


def test_load_rules_from_json(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps([{"pattern": "wiederhol", "condition": "max-attempts"}]), encoding="utf-8")

    rules = load_rules(path)
    detector = LoopDetector([*DEFAULT_RULES, *rules])
    tasks = _tasks(("Hochladen", "Dateien hochladen"), ("Wiederholen", "bei Fehler wiederholen"))

    assert [c.condition for c in detector.detect(tasks)] == [LoopCondition.MAX_ATTEMPTS]


@pytest.mark.parametrize(
    "content",
    [
        '{"pattern": "x"}',
        '[{"pattern": "x"}]',
        '[{"pattern": "(", "condition": "until-success"}]',
        '[{"pattern": "x", "condition": "forever"}]',
    ],
)
def test_load_rules_rejects_bad_files(tmp_path, content):
    path = tmp_path / "rules.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ValueError):
        load_rules(path)


def test_detect_from_prompts_pair_rule_spans_pair_and_trailing_fix():
    detector = LoopDetector()

    pair = detector.detect_from_prompts(["Run tests", "Fix errors", "Deploy"])
    extended = detector.detect_from_prompts(["Run tests", "Debug failures", "Patch code", "Deploy"])

    assert [(s.start_index, s.end_index) for s in pair] == [(0, 1)]
    assert (0, 2) in [(s.start_index, s.end_index) for s in extended]
