# src/flowcore/engine/retry_policy.py
from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Optional

from flowcore.domain import graph
from flowcore.domain.models import LoopConfig, WorkflowPlan
from flowcore.domain.states import LoopCondition, LoopFailurePolicy, TaskStatus
from flowcore.logging import get_logger

_LOG = get_logger(__name__)


class RetryAction(StrEnum):
    RETRY = "retry"  # reset the loop body and run it again
    SKIP = "skip"    # loop exhausted, policy "continue": mark the task skipped
    FAIL = "fail"    # no loop, or loop exhausted with policy "stop"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    task_id: str
    loop_id: Optional[str] = None
    reset_ids: tuple[str, ...] = ()
    reason: str = ""


class RetryPolicy:
    """
    Decides what a task failure means given the plan's accepted loops.

    Per loop: Idle -> Retrying -> (Retrying | Exhausted).
    - until-success: always retry
    - max-attempts: retry while current_attempt < max_attempts
    - time-limit: retry while less than time_limit minutes passed since the
      loop was first activated
    Exhausted loops apply on_failure: "continue" skips the task, "stop" fails
    the job. A failure outside any accepted loop fails the job.
    """

    def decide(self, plan: WorkflowPlan, task_id: str, now_ms: int) -> RetryDecision:
        enclosing = graph.loops_containing(plan, task_id)
        if not enclosing:
            return RetryDecision(
                action=RetryAction.FAIL,
                task_id=task_id,
                reason=f"Task {task_id} failed outside any retry loop",
            )

        loop, body = enclosing[0]
        if self._can_retry(loop, now_ms):
            return RetryDecision(
                action=RetryAction.RETRY,
                task_id=task_id,
                loop_id=loop.id,
                reset_ids=tuple(body),
                reason=f"Retrying loop {loop.id} (attempt {(loop.current_attempt or 0) + 1})",
            )

        if loop.on_failure == LoopFailurePolicy.CONTINUE:
            return RetryDecision(
                action=RetryAction.SKIP,
                task_id=task_id,
                loop_id=loop.id,
                reason=f"Loop {loop.id} exhausted; skipping task {task_id} and continuing",
            )
        return RetryDecision(
            action=RetryAction.FAIL,
            task_id=task_id,
            loop_id=loop.id,
            reason=f"Loop {loop.id} exhausted; stopping on failure of task {task_id}",
        )

    def apply(self, plan: WorkflowPlan, decision: RetryDecision) -> None:
        """
        Applies a decision to the plan in place. The caller holds the job lock.
        Only the loop body is reset; nodes outside it are never touched.
        """
        node = plan.node(decision.task_id)
        if decision.action == RetryAction.RETRY:
            loop = plan.loop(decision.loop_id) if decision.loop_id else None
            for node_id in decision.reset_ids:
                body_node = plan.node(node_id)
                if body_node is not None:
                    body_node.status = TaskStatus.PENDING
            if loop is not None:
                loop.current_attempt = (loop.current_attempt or 0) + 1
            _LOG.info("%s: reset %s", decision.reason, list(decision.reset_ids))
        elif decision.action == RetryAction.SKIP:
            if node is not None:
                node.status = TaskStatus.SKIPPED
            _LOG.info(decision.reason)
        else:
            if node is not None:
                node.status = TaskStatus.FAILED

    def _can_retry(self, loop: LoopConfig, now_ms: int) -> bool:
        attempt = loop.current_attempt or 0
        if loop.condition == LoopCondition.UNTIL_SUCCESS:
            return True
        if loop.condition == LoopCondition.MAX_ATTEMPTS:
            return attempt < (loop.max_attempts or 0)
        if loop.condition == LoopCondition.TIME_LIMIT:
            started = loop.started_at if loop.started_at is not None else now_ms
            return (now_ms - started) < (loop.time_limit or 0) * 60_000
        return False
