# src/flowcore/engine/loop_detector.py
"""
Heuristic retry-loop suggestions.

The detector scans an ordered task sequence for retry intent ("run tests",
then "fix errors") and proposes unaccepted LoopConfigs. Patterns live in a
rules table so locales can be added without touching scheduling code. The
detector never mutates a plan; accepting a suggestion is the controller's job.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence

from flowcore.domain.models import LoopConfig, TaskNode
from flowcore.domain.states import LoopCondition, LoopFailurePolicy
from flowcore.logging import get_logger

_LOG = get_logger(__name__)


@dataclass(frozen=True)
class LoopRule:
    pattern: re.Pattern[str]
    condition: LoopCondition

    @classmethod
    def compile(cls, pattern: str, condition: str) -> "LoopRule":
        return cls(pattern=re.compile(pattern, re.IGNORECASE), condition=LoopCondition(condition))


# Priority order: the first matching rule wins.
DEFAULT_RULES: tuple[LoopRule, ...] = (
    # Korean
    LoopRule.compile(r"실행.*실패.*수정", "until-success"),
    LoopRule.compile(r"테스트.*에러.*수정", "until-success"),
    LoopRule.compile(r"테스트.*수정", "until-success"),
    LoopRule.compile(r"빌드.*실패.*해결", "until-success"),
    LoopRule.compile(r"통과할\s*때까지", "until-success"),
    LoopRule.compile(r"성공할\s*때까지", "until-success"),
    LoopRule.compile(r"반복", "max-attempts"),
    LoopRule.compile(r"재시도", "max-attempts"),
    # English
    LoopRule.compile(r"run.*fail.*fix", "until-success"),
    LoopRule.compile(r"test.*error.*fix", "until-success"),
    LoopRule.compile(r"build.*fail.*resolve", "until-success"),
    LoopRule.compile(r"\b(run|test)\w*\b.*\b(fix|resolve|debug)", "until-success"),
    LoopRule.compile(r"until.*pass", "until-success"),
    LoopRule.compile(r"until.*success", "until-success"),
    LoopRule.compile(r"retry", "max-attempts"),
    LoopRule.compile(r"repeat", "max-attempts"),
)

# Lexical class of tasks that close a loop body.
FIX_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (r"fix", r"resolve", r"수정", r"해결", r"debug", r"patch")
)

LOOP_OPEN_MARKERS = ("[LOOP]", "반복:")
LOOP_CLOSE_MARKERS = ("[/LOOP]", "반복 끝")


def load_rules(path: Path) -> list[LoopRule]:
    """
    Loads extra rules from a JSON file:

      [{"pattern": "wiederholen", "condition": "max-attempts"}, ...]
    """
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"Loop rules file must contain a JSON list: {path}")

    rules: list[LoopRule] = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict) or "pattern" not in item or "condition" not in item:
            raise ValueError(f"Loop rule #{i} must be an object with 'pattern' and 'condition'")
        try:
            rules.append(LoopRule.compile(str(item["pattern"]), str(item["condition"])))
        except (re.error, ValueError) as e:
            raise ValueError(f"Invalid loop rule #{i}: {e}") from e
    _LOG.info("Loaded %d loop rule(s) from %s", len(rules), path)
    return rules


@dataclass(frozen=True)
class PromptLoopSpan:
    start_index: int
    end_index: int
    condition: LoopCondition


def _task_text(*tasks: TaskNode) -> str:
    return " ".join(f"{t.title} {t.description}" for t in tasks)


class LoopDetector:
    def __init__(
        self,
        rules: Sequence[LoopRule] = DEFAULT_RULES,
        *,
        fix_patterns: Sequence[re.Pattern[str]] = FIX_PATTERNS,
        default_max_attempts: int = 3,
    ) -> None:
        if default_max_attempts <= 0:
            raise ValueError("default_max_attempts must be > 0")
        self._rules = tuple(rules)
        self._fix_patterns = tuple(fix_patterns)
        self._default_max_attempts = default_max_attempts

    @property
    def rules(self) -> tuple[LoopRule, ...]:
        return self._rules

    @property
    def default_max_attempts(self) -> int:
        return self._default_max_attempts

    def match(self, text: str) -> Optional[LoopRule]:
        for rule in self._rules:
            if rule.pattern.search(text):
                return rule
        return None

    def is_fix_task(self, task: TaskNode) -> bool:
        return self._is_fix_text(_task_text(task))

    def _is_fix_text(self, text: str) -> bool:
        return any(p.search(text) for p in self._fix_patterns)

    def detect(
        self,
        tasks: Sequence[TaskNode],
        existing_loops: Iterable[LoopConfig] = (),
        dismissed: Iterable[tuple[str, str]] = (),
    ) -> list[LoopConfig]:
        """
        Returns unaccepted loop candidates for an ordered task sequence.

        Pairs are tried first; a matched pair is extended by the next task if
        it is a fix task. Without a pair match the triple is tried. The scan
        resumes after the consumed span, so candidates never overlap.
        Candidates whose (start, end) pair already exists in existing_loops or
        was dismissed are dropped.
        """
        existing = list(existing_loops)
        known_pairs = {lp.pair for lp in existing} | {tuple(p) for p in dismissed}
        taken_ids = {lp.id for lp in existing}

        candidates: list[LoopConfig] = []
        i = 0
        while i < len(tasks) - 1:
            current, nxt = tasks[i], tasks[i + 1]
            end_index = i + 1

            rule = self.match(_task_text(current, nxt))
            if rule is not None:
                if i + 2 < len(tasks) and self.is_fix_task(tasks[i + 2]):
                    end_index = i + 2
            elif i + 2 < len(tasks):
                rule = self.match(_task_text(current, nxt, tasks[i + 2]))
                end_index = i + 2

            if rule is None:
                i += 1
                continue

            end_task = tasks[end_index]
            pair = (current.id, end_task.id)
            if pair not in known_pairs:
                loop_id = self._loop_id(current.id, end_task.id, taken_ids)
                taken_ids.add(loop_id)
                known_pairs.add(pair)
                candidates.append(
                    LoopConfig(
                        id=loop_id,
                        start_task_id=current.id,
                        end_task_id=end_task.id,
                        condition=rule.condition,
                        max_attempts=(
                            self._default_max_attempts
                            if rule.condition == LoopCondition.MAX_ATTEMPTS
                            else None
                        ),
                        on_failure=LoopFailurePolicy.CONTINUE,
                    )
                )
            i = end_index + 1

        return candidates

    def detect_from_prompts(self, prompts: Sequence[str]) -> list[PromptLoopSpan]:
        """
        Loop spans in a raw prompt list.

        Explicit markers ("[LOOP]" ... "[/LOOP]") open a span that closes at the
        matching marker, or two prompts later when none appears. Prompts without
        a marker fall back to the pair rules.
        """
        spans: list[PromptLoopSpan] = []
        for i, prompt in enumerate(prompts):
            if any(m in prompt for m in LOOP_OPEN_MARKERS):
                end_index = i
                for j in range(i + 1, len(prompts)):
                    if any(m in prompts[j] for m in LOOP_CLOSE_MARKERS) or j == i + 2:
                        end_index = j
                        break
                spans.append(PromptLoopSpan(i, end_index, LoopCondition.UNTIL_SUCCESS))
                continue

            if i < len(prompts) - 1:
                rule = self.match(f"{prompt} {prompts[i + 1]}")
                if rule is not None:
                    end_index = i + 1
                    if i + 2 < len(prompts) and self._is_fix_text(prompts[i + 2]):
                        end_index = i + 2
                    spans.append(PromptLoopSpan(i, end_index, rule.condition))
        return spans

    @staticmethod
    def _loop_id(start_id: str, end_id: str, taken: set[str]) -> str:
        base = f"loop-{start_id}-{end_id}"
        if base not in taken:
            return base
        n = 2
        while f"{base}-{n}" in taken:
            n += 1
        return f"{base}-{n}"
