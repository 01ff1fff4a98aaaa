# src/flowcore/engine/scheduler.py
from __future__ import annotations

from dataclasses import dataclass, field

from flowcore.domain import graph
from flowcore.domain.models import WorkflowPlan
from flowcore.domain.states import SATISFIED_STATUSES, NodeKind, TaskStatus
from flowcore.logging import get_logger

_LOG = get_logger(__name__)


@dataclass(frozen=True)
class Dispatch:
    """
    One scheduling batch.

    to_start: task nodes to hand to the task runner; they may run concurrently.
    passthrough: start/decision nodes that carry no work and complete at once.
    """
    to_start: frozenset[str] = field(default_factory=frozenset)
    passthrough: frozenset[str] = field(default_factory=frozenset)

    def __bool__(self) -> bool:
        return bool(self.to_start or self.passthrough)


class DependencyScheduler:
    """
    Computes what may run next for a running job.

    Stateless: the caller owns the in-flight set (ids dispatched whose result
    has not been observed yet) and must hold the job lock around every call.

    Semantics:
    - A node is eligible once it is PENDING and every dependency is COMPLETED
      (or SKIPPED by an exhausted "continue" loop).
    - Eligible nodes are removed from eligibility the instant they are marked
      dispatched, before any runner callback can arrive.
    - The job is complete once the end node's dependencies are all satisfied.
    """

    def tick(self, plan: WorkflowPlan, in_flight: set[str]) -> Dispatch:
        index = graph.node_index(plan)
        to_start: set[str] = set()
        passthrough: set[str] = set()
        for node_id in graph.ready_set(plan):
            if node_id in in_flight:
                continue
            kind = index[node_id].kind
            if kind == NodeKind.TASK:
                to_start.add(node_id)
            elif kind in (NodeKind.START, NodeKind.DECISION):
                passthrough.add(node_id)
        return Dispatch(to_start=frozenset(to_start), passthrough=frozenset(passthrough))

    def mark_dispatched(
        self,
        plan: WorkflowPlan,
        dispatch: Dispatch,
        in_flight: set[str],
        now_ms: int,
    ) -> None:
        for node_id in dispatch.passthrough:
            node = plan.node(node_id)
            if node is not None:
                node.status = TaskStatus.COMPLETED

        for node_id in dispatch.to_start:
            node = plan.node(node_id)
            if node is None:
                continue
            node.status = TaskStatus.RUNNING
            in_flight.add(node_id)

        if dispatch:
            _LOG.debug(
                "Dispatched plan %s: start=%s passthrough=%s",
                plan.id,
                sorted(dispatch.to_start),
                sorted(dispatch.passthrough),
            )

        # time-limit windows open when a loop's first task is first dispatched
        for loop in plan.loops:
            if loop.accepted and loop.started_at is None and loop.start_task_id in dispatch.to_start:
                loop.started_at = now_ms

    def on_task_completed(self, plan: WorkflowPlan, task_id: str) -> None:
        node = plan.node(task_id)
        if node is None:
            return
        node.status = TaskStatus.COMPLETED

    def progress(self, plan: WorkflowPlan) -> int:
        tasks = plan.task_nodes()
        if not tasks:
            return 0
        done = sum(1 for n in tasks if n.status == TaskStatus.COMPLETED)
        return round(done * 100 / len(tasks))

    def is_complete(self, plan: WorkflowPlan) -> bool:
        end = graph.end_node(plan)
        if end is None:
            return False
        index = graph.node_index(plan)
        return all(
            dep in index and index[dep].status in SATISFIED_STATUSES
            for dep in end.dependencies
        )

    def parallel_groups(self, plan: WorkflowPlan) -> list[list[str]]:
        return graph.parallel_groups(plan)
