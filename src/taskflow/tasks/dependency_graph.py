# src/taskflow/tasks/dependency_graph.py

from __future__ import annotations

"""
Dependency graph service.

Edges read "task depends on prerequisite". The edge set must stay acyclic:
before an edge is persisted we search, from the prerequisite, along existing
"depends on" edges for the dependent. If it is reachable, the new edge would
close a cycle and is rejected. The search runs inside the store's write
transaction, so it always sees the latest committed edges.

All traversal state (visited sets, work stacks) is local to a call.
"""

import logging
from collections.abc import Callable

from ..core.ports import Clock, TaskRepo
from ..errors import InvalidArgument, NotFound, WouldCreateCycle
from .task_models import (
    BlockedTask,
    DependencyChain,
    DependencyNode,
    Task,
    TaskDependency,
)

logger = logging.getLogger(__name__)


def would_create_cycle(
        dependent_id: int,
        prerequisite_id: int,
        prerequisites_of: Callable[[int], list[int]],
) -> bool:
    """
    True if `dependent_id` is reachable from `prerequisite_id` along existing edges.

    Iterative DFS with a visited set: terminates on any graph, and diamond-shaped
    graphs are walked once per node instead of once per path.
    """
    if dependent_id == prerequisite_id:
        return True

    visited: set[int] = set()
    stack = [prerequisite_id]
    while stack:
        node = stack.pop()
        if node == dependent_id:
            return True
        if node in visited:
            continue
        visited.add(node)
        stack.extend(n for n in prerequisites_of(node) if n not in visited)
    return False


class DependencyGraphService:
    def __init__(self, task_store: TaskRepo, clock: Clock) -> None:
        self._store = task_store
        self._clock = clock

    # ---- mutations ----

    def add_dependency(self, dependent_id: int, prerequisite_id: int) -> TaskDependency:
        """
        Persist "dependent depends on prerequisite".

        Raises:
        - InvalidArgument: self-dependency
        - NotFound: either task is unknown
        - AlreadyExists: the exact ordered edge exists
        - WouldCreateCycle: prerequisite already depends (transitively) on dependent
        """
        dependent_id = int(dependent_id)
        prerequisite_id = int(prerequisite_id)

        if dependent_id == prerequisite_id:
            raise InvalidArgument("A task cannot depend on itself")

        known = self._store.get_tasks([dependent_id, prerequisite_id])
        missing = [t for t in (dependent_id, prerequisite_id) if t not in known]
        if missing:
            raise NotFound(f"task(s) not found: {', '.join(str(m) for m in missing)}")

        def validate(prerequisites_of: Callable[[int], list[int]]) -> None:
            if would_create_cycle(dependent_id, prerequisite_id, prerequisites_of):
                raise WouldCreateCycle(dependent_id, prerequisite_id)

        try:
            edge = self._store.add_dependency(
                dependent_id,
                prerequisite_id,
                validate=validate,
                now=self._clock.now(),
            )
        except WouldCreateCycle:
            logger.info("Rejected dependency %s -> %s: would create a cycle", dependent_id, prerequisite_id)
            raise

        logger.info("Dependency added: task %s depends on task %s", dependent_id, prerequisite_id)
        return edge

    def remove_dependency(self, dependent_id: int, prerequisite_id: int) -> None:
        if not self._store.remove_dependency(int(dependent_id), int(prerequisite_id)):
            raise NotFound(f"Dependency not found: task {dependent_id} -> task {prerequisite_id}")
        logger.info("Dependency removed: task %s no longer depends on task %s", dependent_id, prerequisite_id)

    # ---- queries ----

    def unresolved_prerequisites(self, task_id: int) -> list[Task]:
        """Direct prerequisites of task_id whose status is not done."""
        edges = self._store.list_unresolved_edges(task_id=int(task_id), include_archived=True)
        prereq_ids = [p for _, p in edges]
        tasks = self._store.get_tasks(prereq_ids)
        return [tasks[p] for p in prereq_ids if p in tasks]

    def is_blocked(self, task_id: int) -> bool:
        return bool(self._store.list_unresolved_edges(task_id=int(task_id), include_archived=True))

    def list_blocked(self) -> list[BlockedTask]:
        """Every non-archived task with at least one unresolved prerequisite."""
        edges = self._store.list_unresolved_edges()
        if not edges:
            return []

        tasks = self._store.get_tasks({t for t, _ in edges} | {p for _, p in edges})
        grouped: dict[int, list[Task]] = {}
        for task_id, prereq_id in edges:
            if task_id in tasks and prereq_id in tasks:
                grouped.setdefault(task_id, []).append(tasks[prereq_id])

        return [BlockedTask(task=tasks[tid], blocked_by=blockers) for tid, blockers in grouped.items()]

    def dependency_chain(self, task_id: int) -> DependencyChain:
        """
        Prerequisite sub-graph rooted at task_id, plus the tasks it directly blocks.

        Each task is expanded once. If it shows up again (diamonds, or an
        inconsistent graph) it is listed with repeated=True and no children.
        """
        root = self._store.get_task(int(task_id))
        if root is None:
            raise NotFound(f"Task not found: {task_id}")

        expanded: set[int] = {root.id}
        depends_on: list[DependencyNode] = []

        root_prereqs = self._store.prerequisite_ids(root.id)
        cache: dict[int, Task] = self._store.get_tasks(root_prereqs)
        cache[root.id] = root
        stack: list[tuple[list[DependencyNode], int]] = [(depends_on, p) for p in reversed(root_prereqs)]

        while stack:
            siblings, tid = stack.pop()
            task = cache.get(tid)
            if task is None:
                continue

            if tid in expanded:
                siblings.append(DependencyNode(task=task, repeated=True))
                continue
            expanded.add(tid)

            node = DependencyNode(task=task)
            siblings.append(node)

            prereqs = self._store.prerequisite_ids(tid)
            unseen = [p for p in prereqs if p not in cache]
            if unseen:
                cache.update(self._store.get_tasks(unseen))
            stack.extend((node.depends_on, p) for p in reversed(prereqs))

        blocks_ids = self._store.dependent_ids(root.id)
        blocks_map = self._store.get_tasks(blocks_ids)
        blocks = [blocks_map[b] for b in blocks_ids if b in blocks_map]

        return DependencyChain(task=root, depends_on=depends_on, blocks=blocks)
