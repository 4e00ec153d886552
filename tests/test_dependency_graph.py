# tests/test_dependency_graph.py

from __future__ import annotations

import random

import pytest

from taskflow.errors import AlreadyExists, InvalidArgument, NotFound, WouldCreateCycle
from taskflow.tasks.dependency_graph import would_create_cycle
from taskflow.tasks.task_models import TaskStatus


def _has_cycle(edges: set[tuple[int, int]]) -> bool:
    graph: dict[int, list[int]] = {}
    for a, b in edges:
        graph.setdefault(a, []).append(b)

    WHITE, GREY, BLACK = 0, 1, 2
    color: dict[int, int] = {}

    def visit(n: int) -> bool:
        color[n] = GREY
        for m in graph.get(n, []):
            c = color.get(m, WHITE)
            if c == GREY:
                return True
            if c == WHITE and visit(m):
                return True
        color[n] = BLACK
        return False

    return any(color.get(n, WHITE) == WHITE and visit(n) for n in list(graph))


def test_would_create_cycle_pure_function() -> None:
    edges = {1: [2], 2: [3], 3: []}

    def prereqs(n: int) -> list[int]:
        return edges.get(n, [])

    assert would_create_cycle(3, 1, prereqs) is True
    assert would_create_cycle(1, 3, prereqs) is False
    assert would_create_cycle(4, 4, prereqs) is True


def test_self_dependency_rejected(state, make_task) -> None:
    a = make_task("A")
    with pytest.raises(InvalidArgument):
        state.graph.add_dependency(a.id, a.id)


def test_unknown_tasks_rejected(state, make_task) -> None:
    a = make_task("A")
    with pytest.raises(NotFound):
        state.graph.add_dependency(a.id, 999)
    with pytest.raises(NotFound):
        state.graph.add_dependency(999, a.id)


def test_duplicate_edge_rejected(state, make_task) -> None:
    a = make_task("A")
    b = make_task("B")
    edge = state.graph.add_dependency(a.id, b.id)
    assert (edge.task_id, edge.depends_on_task_id) == (a.id, b.id)

    with pytest.raises(AlreadyExists):
        state.graph.add_dependency(a.id, b.id)


def test_direct_cycle_rejected(state, make_task) -> None:
    a = make_task("A")
    b = make_task("B")
    state.graph.add_dependency(a.id, b.id)

    with pytest.raises(WouldCreateCycle) as exc:
        state.graph.add_dependency(b.id, a.id)

    assert exc.value.kind == "would_create_cycle"
    assert not state.task_store.has_dependency(b.id, a.id)


def test_transitive_cycle_rejected(state, make_task) -> None:
    a, b, c = make_task("A"), make_task("B"), make_task("C")
    state.graph.add_dependency(a.id, b.id)
    state.graph.add_dependency(b.id, c.id)

    with pytest.raises(WouldCreateCycle):
        state.graph.add_dependency(c.id, a.id)

    # A diamond is fine.
    state.graph.add_dependency(a.id, c.id)


def test_random_insertions_keep_graph_acyclic(state, make_task) -> None:
    rng = random.Random(1234)
    tasks = [make_task(f"T{i}") for i in range(12)]
    rank = {t.id: i for i, t in enumerate(tasks)}
    edges: set[tuple[int, int]] = set()

    # DAG-preserving edges: a higher rank always depends on a lower rank.
    for _ in range(30):
        hi, lo = rng.sample(tasks, 2)
        if rank[hi.id] < rank[lo.id]:
            hi, lo = lo, hi
        if (hi.id, lo.id) in edges:
            continue
        state.graph.add_dependency(hi.id, lo.id)
        edges.add((hi.id, lo.id))

    # Adversarial: reverse an existing path.
    for dependent, prerequisite in list(edges):
        with pytest.raises(WouldCreateCycle):
            state.graph.add_dependency(prerequisite, dependent)

    stored = {(d.task_id, d.depends_on_task_id) for d in state.task_store.list_dependencies()}
    assert stored == edges
    assert not _has_cycle(stored)


def test_is_blocked_flips_when_prerequisite_done(state, make_task) -> None:
    a = make_task("Write report")
    b = make_task("Collect data")
    state.graph.add_dependency(a.id, b.id)

    assert state.graph.is_blocked(a.id) is True
    assert state.graph.is_blocked(b.id) is False
    assert [t.id for t in state.graph.unresolved_prerequisites(a.id)] == [b.id]

    state.lifecycle.request_status_change(b.id, TaskStatus.DONE)

    assert state.graph.is_blocked(a.id) is False
    assert state.graph.unresolved_prerequisites(a.id) == []


def test_list_blocked_groups_blockers(state, make_task) -> None:
    a, b, c, d = make_task("A"), make_task("B"), make_task("C"), make_task("D")
    state.graph.add_dependency(a.id, b.id)
    state.graph.add_dependency(a.id, c.id)
    state.graph.add_dependency(d.id, c.id)
    state.lifecycle.request_status_change(c.id, "done")

    blocked = state.graph.list_blocked()

    assert [bt.task.id for bt in blocked] == [a.id]
    assert [t.id for t in blocked[0].blocked_by] == [b.id]


def test_list_blocked_skips_archived(state, make_task) -> None:
    a, b = make_task("A"), make_task("B")
    state.graph.add_dependency(a.id, b.id)
    state.lifecycle.update_task(a.id, archived=True)

    assert state.graph.list_blocked() == []
    assert state.graph.is_blocked(a.id) is True


def test_dependency_chain_diamond_marks_repeats(state, make_task) -> None:
    # top -> left -> base, top -> right -> base
    top, left, right, base = make_task("top"), make_task("left"), make_task("right"), make_task("base")
    state.graph.add_dependency(top.id, left.id)
    state.graph.add_dependency(top.id, right.id)
    state.graph.add_dependency(left.id, base.id)
    state.graph.add_dependency(right.id, base.id)

    chain = state.graph.dependency_chain(top.id)

    assert chain.task.id == top.id
    assert [n.task.id for n in chain.depends_on] == [left.id, right.id]
    left_node, right_node = chain.depends_on
    assert [n.task.id for n in left_node.depends_on] == [base.id]
    assert left_node.depends_on[0].repeated is False
    assert [n.task.id for n in right_node.depends_on] == [base.id]
    assert right_node.depends_on[0].repeated is True
    assert right_node.depends_on[0].depends_on == []
    assert chain.blocks == []

    base_chain = state.graph.dependency_chain(base.id)
    assert base_chain.depends_on == []
    assert {t.id for t in base_chain.blocks} == {left.id, right.id}


def test_dependency_chain_unknown_task(state) -> None:
    with pytest.raises(NotFound):
        state.graph.dependency_chain(42)


def test_remove_dependency(state, make_task) -> None:
    a, b = make_task("A"), make_task("B")
    state.graph.add_dependency(a.id, b.id)

    state.graph.remove_dependency(a.id, b.id)
    assert state.graph.is_blocked(a.id) is False

    with pytest.raises(NotFound):
        state.graph.remove_dependency(a.id, b.id)

    # Once removed, the reverse edge is allowed.
    state.graph.add_dependency(b.id, a.id)
