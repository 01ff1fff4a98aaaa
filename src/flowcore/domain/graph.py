# src/flowcore/domain/graph.py
"""
Graph model for workflow plans.

Dependency sets are the source of truth for ordering; edges are derived from
them (plus presentation-only back edges for accepted loops). Every function
here is pure: mutations return a new, validated plan and leave their input
untouched, so a rejected mutation never corrupts the caller's plan.
"""
from __future__ import annotations

import uuid
from collections import defaultdict, deque
from typing import Callable, Iterable, Optional, Sequence

from .errors import GraphError, GraphErrorKind, NotFoundError
from .models import LoopConfig, TaskEdge, TaskNode, TaskSpec, WorkflowPlan
from .states import SATISFIED_STATUSES, NodeKind, TaskStatus

START_ID = "start"
END_ID = "end"


# -------------------------
# Structural queries
# -------------------------


def node_index(plan: WorkflowPlan) -> dict[str, TaskNode]:
    return {n.id: n for n in plan.nodes}


def dependents_map(plan: WorkflowPlan) -> dict[str, list[str]]:
    """Forward adjacency: node id -> ids of nodes depending on it, in node order."""
    out: dict[str, list[str]] = defaultdict(list)
    for n in plan.nodes:
        for dep in n.dependencies:
            out[dep].append(n.id)
    return out


def successors(plan: WorkflowPlan, node_id: str) -> list[str]:
    return list(dependents_map(plan).get(node_id, []))


def predecessors(plan: WorkflowPlan, node_id: str) -> list[str]:
    node = plan.node(node_id)
    return list(node.dependencies) if node else []


def leaf_tasks(plan: WorkflowPlan) -> list[str]:
    """Non-end nodes nothing depends on."""
    dependents = dependents_map(plan)
    return [
        n.id
        for n in plan.nodes
        if n.kind != NodeKind.END and not dependents.get(n.id)
    ]


def start_node(plan: WorkflowPlan) -> Optional[TaskNode]:
    for n in plan.nodes:
        if n.kind == NodeKind.START:
            return n
    return None


def end_node(plan: WorkflowPlan) -> Optional[TaskNode]:
    for n in plan.nodes:
        if n.kind == NodeKind.END:
            return n
    return None


def topological_order(plan: WorkflowPlan) -> list[str]:
    """
    Kahn's algorithm over dependency sets. Loop annotations are not edges.
    Raises GraphError(CYCLE) if the dependency graph is cyclic.
    """
    ids = [n.id for n in plan.nodes]
    id_set = set(ids)

    dependents: dict[str, list[str]] = defaultdict(list)
    indegree: dict[str, int] = {nid: 0 for nid in ids}

    for n in plan.nodes:
        for dep in n.dependencies:
            if dep in id_set:
                dependents[dep].append(n.id)
                indegree[n.id] += 1

    q = deque([nid for nid in ids if indegree[nid] == 0])
    order: list[str] = []

    while q:
        nid = q.popleft()
        order.append(nid)
        for child in dependents.get(nid, []):
            indegree[child] -= 1
            if indegree[child] == 0:
                q.append(child)

    if len(order) != len(ids):
        cyclic = sorted(nid for nid in ids if indegree[nid] > 0)
        raise GraphError(
            "Plan contains a dependency cycle",
            kind=GraphErrorKind.CYCLE,
            details={"nodes": cyclic},
        )
    return order


def ready_set(plan: WorkflowPlan) -> set[str]:
    """Pending nodes whose every dependency is satisfied."""
    index = node_index(plan)
    ready: set[str] = set()
    for n in plan.nodes:
        if n.status != TaskStatus.PENDING:
            continue
        if all(
            dep in index and index[dep].status in SATISFIED_STATUSES
            for dep in n.dependencies
        ):
            ready.add(n.id)
    return ready


def parallel_groups(plan: WorkflowPlan) -> list[list[str]]:
    """
    Task nodes grouped by identical dependency sets. Only groups that can
    actually run side by side (two or more members) are returned.
    """
    groups: dict[frozenset[str], list[str]] = {}
    for n in plan.task_nodes():
        groups.setdefault(frozenset(n.dependencies), []).append(n.id)
    return [members for members in groups.values() if len(members) > 1]


def loop_body(plan: WorkflowPlan, loop: LoopConfig) -> list[str]:
    """
    Walks forward from the loop's start task to its end task.

    The body must be a simple path of task nodes: every node before the end
    has exactly one dependent, and every node after the start depends only on
    its predecessor in the path.
    """
    index = node_index(plan)
    for endpoint in (loop.start_task_id, loop.end_task_id):
        node = index.get(endpoint)
        if node is None:
            raise GraphError(
                f"Loop {loop.id} references unknown task {endpoint}",
                kind=GraphErrorKind.INVALID_LOOP,
                details={"loop_id": loop.id, "task_id": endpoint},
            )
        if node.kind != NodeKind.TASK:
            raise GraphError(
                f"Loop {loop.id} endpoint {endpoint} is not a task node",
                kind=GraphErrorKind.INVALID_LOOP,
                details={"loop_id": loop.id, "task_id": endpoint},
            )

    dependents = dependents_map(plan)
    body = [loop.start_task_id]
    current = loop.start_task_id

    while current != loop.end_task_id:
        nxt = dependents.get(current, [])
        if len(nxt) != 1:
            raise GraphError(
                f"Loop {loop.id} body is not a simple path at {current}",
                kind=GraphErrorKind.INVALID_LOOP,
                details={"loop_id": loop.id, "task_id": current, "dependents": list(nxt)},
            )
        node = index[nxt[0]]
        if node.kind != NodeKind.TASK or node.dependencies != [current]:
            raise GraphError(
                f"Loop {loop.id} does not reach {loop.end_task_id} through a linear task chain",
                kind=GraphErrorKind.INVALID_LOOP,
                details={"loop_id": loop.id, "task_id": node.id},
            )
        body.append(node.id)
        current = node.id

    return body


def loops_containing(plan: WorkflowPlan, task_id: str) -> list[tuple[LoopConfig, list[str]]]:
    """Accepted loops whose body contains task_id, smallest body first."""
    found: list[tuple[LoopConfig, list[str]]] = []
    for loop in plan.loops:
        if not loop.accepted:
            continue
        try:
            body = loop_body(plan, loop)
        except GraphError:
            continue
        if task_id in body:
            found.append((loop, body))
    found.sort(key=lambda item: len(item[1]))
    return found


def loop_for_task(plan: WorkflowPlan, task_id: str) -> Optional[LoopConfig]:
    found = loops_containing(plan, task_id)
    return found[0][0] if found else None


def derive_edges(plan: WorkflowPlan) -> list[TaskEdge]:
    edges: list[TaskEdge] = []
    for n in plan.nodes:
        for dep in n.dependencies:
            edges.append(TaskEdge(id=f"{dep}-{n.id}", source=dep, target=n.id))
    for loop in plan.loops:
        if loop.accepted:
            edges.append(
                TaskEdge(
                    id=f"loop-back-{loop.id}",
                    source=loop.end_task_id,
                    target=loop.start_task_id,
                    type="loop",
                )
            )
    return edges


def estimated_duration(plan: WorkflowPlan) -> float:
    return float(sum(n.duration_estimate or 0 for n in plan.task_nodes()))


def normalize(plan: WorkflowPlan) -> WorkflowPlan:
    """Returns a copy with derived edges and duration recomputed."""
    out = plan.model_copy(deep=True)
    out.edges = derive_edges(out)
    out.estimated_duration = estimated_duration(out)
    return out


# -------------------------
# Validation
# -------------------------


def validate(plan: WorkflowPlan) -> None:
    """
    Raises GraphError if the plan is not a runnable workflow:

    - INVALID_STRUCTURE: duplicate ids, not exactly one start/end, no task nodes,
      start with dependencies, end with dependents, dead-end nodes
    - DANGLING_DEPENDENCY: dependency on a missing node
    - CYCLE_DETECTED: self-dependency or dependency cycle
    - ORPHAN_NODE: node without dependencies or unreachable from start
    - INVALID_LOOP / OVERLAPPING_LOOP_BODIES: see validate_loops
    """
    ids = [n.id for n in plan.nodes]
    if len(ids) != len(set(ids)):
        dupes = sorted({nid for nid in ids if ids.count(nid) > 1})
        raise GraphError(
            "Plan contains duplicate node ids",
            kind=GraphErrorKind.INVALID_STRUCTURE,
            details={"duplicates": dupes},
        )

    starts = [n for n in plan.nodes if n.kind == NodeKind.START]
    ends = [n for n in plan.nodes if n.kind == NodeKind.END]
    if len(starts) != 1:
        raise GraphError(
            f"Plan must have exactly one start node, found {len(starts)}",
            kind=GraphErrorKind.INVALID_STRUCTURE,
        )
    if len(ends) != 1:
        raise GraphError(
            f"Plan must have exactly one end node, found {len(ends)}",
            kind=GraphErrorKind.INVALID_STRUCTURE,
        )
    if not plan.task_nodes():
        raise GraphError(
            "Plan has no task nodes",
            kind=GraphErrorKind.INVALID_STRUCTURE,
        )
    start = starts[0]
    end = ends[0]
    if start.dependencies:
        raise GraphError(
            "Start node cannot have dependencies",
            kind=GraphErrorKind.INVALID_STRUCTURE,
            details={"id": start.id},
        )

    index = node_index(plan)
    for n in plan.nodes:
        missing = [d for d in n.dependencies if d not in index]
        if missing:
            raise GraphError(
                f"Node {n.id} depends on missing node(s)",
                kind=GraphErrorKind.DANGLING_DEPENDENCY,
                details={"id": n.id, "missing": sorted(missing)},
            )
        if n.id in n.dependencies:
            raise GraphError(
                f"Node {n.id} depends on itself",
                kind=GraphErrorKind.CYCLE,
                details={"nodes": [n.id]},
            )
        if n.kind != NodeKind.START and not n.dependencies:
            raise GraphError(
                f"Node {n.id} has no dependencies and is unreachable from start",
                kind=GraphErrorKind.ORPHAN_NODE,
                details={"id": n.id},
            )

    topological_order(plan)

    dependents = dependents_map(plan)
    reachable = {start.id}
    q = deque([start.id])
    while q:
        nid = q.popleft()
        for child in dependents.get(nid, []):
            if child not in reachable:
                reachable.add(child)
                q.append(child)
    unreachable = [nid for nid in ids if nid not in reachable]
    if unreachable:
        raise GraphError(
            "Plan has nodes unreachable from start",
            kind=GraphErrorKind.ORPHAN_NODE,
            details={"nodes": unreachable},
        )

    if dependents.get(end.id):
        raise GraphError(
            "End node cannot have dependents",
            kind=GraphErrorKind.INVALID_STRUCTURE,
            details={"dependents": dependents[end.id]},
        )
    dead_ends = leaf_tasks(plan)
    if dead_ends:
        raise GraphError(
            "Every node must lead to the end node",
            kind=GraphErrorKind.INVALID_STRUCTURE,
            details={"nodes": dead_ends},
        )

    validate_loops(plan)


def validate_loops(plan: WorkflowPlan) -> None:
    """
    Suggested loops only need to reference existing nodes. Accepted loops must
    have a linear body, distinct endpoint pairs and bodies disjoint from every
    other accepted loop.
    """
    index = node_index(plan)
    loop_ids = [lp.id for lp in plan.loops]
    if len(loop_ids) != len(set(loop_ids)):
        raise GraphError(
            "Plan contains duplicate loop ids",
            kind=GraphErrorKind.INVALID_LOOP,
        )

    claimed: dict[str, str] = {}
    pairs: dict[tuple[str, str], str] = {}
    for loop in plan.loops:
        if not loop.accepted:
            for endpoint in loop.pair:
                if endpoint not in index:
                    raise GraphError(
                        f"Loop {loop.id} references unknown task {endpoint}",
                        kind=GraphErrorKind.INVALID_LOOP,
                        details={"loop_id": loop.id, "task_id": endpoint},
                    )
            continue

        if loop.pair in pairs:
            raise GraphError(
                f"Loops {pairs[loop.pair]} and {loop.id} share the same endpoints",
                kind=GraphErrorKind.OVERLAPPING_LOOP_BODIES,
                details={"loops": [pairs[loop.pair], loop.id]},
            )
        pairs[loop.pair] = loop.id

        for task_id in loop_body(plan, loop):
            other = claimed.get(task_id)
            if other is not None:
                raise GraphError(
                    f"Loops {other} and {loop.id} overlap at {task_id}",
                    kind=GraphErrorKind.OVERLAPPING_LOOP_BODIES,
                    details={"loops": [other, loop.id], "task_id": task_id},
                )
            claimed[task_id] = loop.id


# -------------------------
# Mutations
# -------------------------


def _commit(candidate: WorkflowPlan) -> WorkflowPlan:
    candidate = normalize(candidate)
    validate(candidate)
    return candidate


def _attach_leaves_to_end(plan: WorkflowPlan) -> None:
    end = end_node(plan)
    if end is None:
        return
    for leaf in leaf_tasks(plan):
        if leaf != end.id and leaf not in end.dependencies:
            end.dependencies.append(leaf)


def _sync_loop_membership(plan: WorkflowPlan) -> None:
    membership: dict[str, str] = {}
    for loop in plan.loops:
        if not loop.accepted:
            continue
        try:
            body = loop_body(plan, loop)
        except GraphError:
            continue
        for task_id in body:
            membership.setdefault(task_id, loop.id)
    for n in plan.nodes:
        n.loop_membership = membership.get(n.id)


def add_task(plan: WorkflowPlan, node: TaskNode) -> WorkflowPlan:
    """
    Adds a node. A node nothing depends on is wired into the end node so the
    plan keeps a single sink.
    """
    if plan.node(node.id) is not None:
        raise GraphError(
            f"Node already exists: {node.id}",
            kind=GraphErrorKind.INVALID_STRUCTURE,
            details={"id": node.id},
        )
    if node.kind in (NodeKind.START, NodeKind.END):
        raise GraphError(
            "Only task and decision nodes can be added",
            kind=GraphErrorKind.INVALID_STRUCTURE,
            details={"id": node.id, "kind": node.kind.value},
        )

    candidate = plan.model_copy(deep=True)
    new_node = node.model_copy(deep=True, update={"status": TaskStatus.PENDING, "loop_membership": None})

    end = end_node(candidate)
    insert_at = candidate.nodes.index(end) if end is not None else len(candidate.nodes)
    candidate.nodes.insert(insert_at, new_node)

    _attach_leaves_to_end(candidate)
    _sync_loop_membership(candidate)
    return _commit(candidate)


def update_task(
    plan: WorkflowPlan,
    task_id: str,
    *,
    title: Optional[str] = None,
    description: Optional[str] = None,
    duration_estimate: Optional[float] = None,
    dependencies: Optional[Sequence[str]] = None,
) -> WorkflowPlan:
    candidate = plan.model_copy(deep=True)
    node = candidate.node(task_id)
    if node is None:
        raise NotFoundError(f"Node not found: {task_id}", details={"id": task_id})

    if title is not None:
        node.title = title
    if description is not None:
        node.description = description
    if duration_estimate is not None:
        node.duration_estimate = duration_estimate
    if dependencies is not None:
        deps = list(dependencies)
        if len(deps) != len(set(deps)):
            raise GraphError(
                "dependencies must not contain duplicates",
                kind=GraphErrorKind.INVALID_STRUCTURE,
                details={"id": task_id},
            )
        node.dependencies = deps
        _attach_leaves_to_end(candidate)

    _sync_loop_membership(candidate)
    return _commit(candidate)


def set_dependencies(plan: WorkflowPlan, task_id: str, dependencies: Sequence[str]) -> WorkflowPlan:
    return update_task(plan, task_id, dependencies=dependencies)


def delete_task(plan: WorkflowPlan, task_id: str) -> WorkflowPlan:
    """
    Removes a node. Its dependents inherit its dependencies, and loops whose
    body touches it are dropped.
    """
    node = plan.node(task_id)
    if node is None:
        raise NotFoundError(f"Node not found: {task_id}", details={"id": task_id})
    if node.kind in (NodeKind.START, NodeKind.END):
        raise GraphError(
            f"Cannot delete the {node.kind.value} node",
            kind=GraphErrorKind.INVALID_STRUCTURE,
            details={"id": task_id},
        )

    doomed_loops = set()
    for loop in plan.loops:
        if task_id in loop.pair:
            doomed_loops.add(loop.id)
            continue
        try:
            if task_id in loop_body(plan, loop):
                doomed_loops.add(loop.id)
        except GraphError:
            continue

    candidate = plan.model_copy(deep=True)
    candidate.nodes = [n for n in candidate.nodes if n.id != task_id]
    for n in candidate.nodes:
        if task_id in n.dependencies:
            merged: list[str] = []
            for dep in n.dependencies:
                replacement = node.dependencies if dep == task_id else [dep]
                for r in replacement:
                    if r not in merged:
                        merged.append(r)
            n.dependencies = merged
    candidate.loops = [lp for lp in candidate.loops if lp.id not in doomed_loops]

    _attach_leaves_to_end(candidate)
    _sync_loop_membership(candidate)
    return _commit(candidate)


def add_loop(plan: WorkflowPlan, loop: LoopConfig) -> WorkflowPlan:
    """Adds a loop, or replaces the loop with the same id."""
    candidate = plan.model_copy(deep=True)
    new_loop = loop.model_copy(deep=True)
    for i, existing in enumerate(candidate.loops):
        if existing.id == new_loop.id:
            candidate.loops[i] = new_loop
            break
    else:
        candidate.loops.append(new_loop)

    if new_loop.accepted:
        loop_body(candidate, new_loop)
    _sync_loop_membership(candidate)
    return _commit(candidate)


def remove_loop(plan: WorkflowPlan, loop_id: str) -> WorkflowPlan:
    candidate = plan.model_copy(deep=True)
    candidate.loops = [lp for lp in candidate.loops if lp.id != loop_id]
    _sync_loop_membership(candidate)
    return _commit(candidate)


# -------------------------
# Builders
# -------------------------


def _new_plan_id() -> str:
    return f"workflow-{uuid.uuid4().hex[:12]}"


def _task_nodes_from_specs(
    tasks: Sequence[TaskSpec],
    default_deps: Callable[[str], list[str]],
    default_duration: Optional[float],
) -> list[TaskNode]:
    nodes: list[TaskNode] = []
    prev_id = START_ID
    for i, spec in enumerate(tasks, start=1):
        node_id = spec.id or f"task{i}"
        if node_id in (START_ID, END_ID):
            raise GraphError(
                f"Task id {node_id!r} is reserved",
                kind=GraphErrorKind.INVALID_STRUCTURE,
                details={"id": node_id},
            )
        deps = list(spec.dependencies) if spec.dependencies is not None else default_deps(prev_id)
        nodes.append(
            TaskNode(
                id=node_id,
                kind=NodeKind.TASK,
                title=spec.title,
                description=spec.description or spec.title,
                dependencies=deps,
                duration_estimate=(
                    spec.duration_estimate if spec.duration_estimate is not None else default_duration
                ),
            )
        )
        prev_id = node_id
    return nodes


def _assemble(
    task_nodes: list[TaskNode],
    *,
    plan_id: Optional[str],
    name: str,
    description: str,
    loops: Iterable[LoopConfig] = (),
) -> WorkflowPlan:
    plan = WorkflowPlan(
        id=plan_id or _new_plan_id(),
        name=name,
        description=description,
        nodes=[
            TaskNode(id=START_ID, kind=NodeKind.START, title="Start", description="Workflow start"),
            *task_nodes,
            TaskNode(id=END_ID, kind=NodeKind.END, title="Complete", description="All tasks completed"),
        ],
        loops=list(loops),
    )
    _attach_leaves_to_end(plan)
    _sync_loop_membership(plan)
    return _commit(plan)


def build_sequential_plan(
    tasks: Sequence[TaskSpec],
    *,
    plan_id: Optional[str] = None,
    name: str = "Sequential Workflow",
    description: str = "",
    default_duration: Optional[float] = None,
    loops: Iterable[LoopConfig] = (),
) -> WorkflowPlan:
    """start -> t1 -> t2 -> ... -> end, unless a spec names its own dependencies."""
    nodes = _task_nodes_from_specs(tasks, lambda prev: [prev], default_duration)
    return _assemble(nodes, plan_id=plan_id, name=name, description=description, loops=loops)


def build_parallel_plan(
    tasks: Sequence[TaskSpec],
    *,
    plan_id: Optional[str] = None,
    name: str = "Parallel Workflow",
    description: str = "",
    default_duration: Optional[float] = None,
) -> WorkflowPlan:
    """Every task depends on start only; end joins all of them."""
    nodes = _task_nodes_from_specs(tasks, lambda prev: [START_ID], default_duration)
    return _assemble(nodes, plan_id=plan_id, name=name, description=description)
