"""Tests for task graph operations."""

from plan_orchestrator.core import graph
from plan_orchestrator.db.models import Task


def _task(task_id, depends_on=None, status="pending"):
    return Task(id=task_id, title=task_id.upper(), depends_on=list(depends_on or []), status=status)


def _chain():
    return [_task("a"), _task("b", ["a"]), _task("c", ["b"])]


class TestReadyTasks:
    def test_chain_frontier(self):
        tasks = _chain()
        assert [t.id for t in graph.get_ready_tasks(tasks)] == ["a"]

        tasks[0].status = "done"
        assert [t.id for t in graph.get_ready_tasks(tasks)] == ["b"]

    def test_non_dispatchable_statuses_excluded(self):
        tasks = [
            _task("a", status="in_progress"),
            _task("b", status="blocked"),
            _task("c", status="cancelled"),
            _task("d", status="ready"),
        ]
        assert [t.id for t in graph.get_ready_tasks(tasks)] == ["d"]

    def test_unknown_dependency_never_satisfied(self):
        tasks = [_task("a", ["ghost"])]
        assert graph.get_ready_tasks(tasks) == []


class TestCycles:
    def test_dag_has_no_cycles(self):
        assert graph.detect_cycles(_chain()) == set()

    def test_detects_two_node_cycle(self):
        tasks = [_task("a", ["b"]), _task("b", ["a"]), _task("c")]
        assert graph.detect_cycles(tasks) == {"a", "b"}

    def test_downstream_of_cycle_is_reported(self):
        tasks = [_task("a", ["b"]), _task("b", ["a"]), _task("c", ["a"])]
        assert graph.detect_cycles(tasks) == {"a", "b", "c"}

    def test_unknown_ids_are_not_cycles(self):
        tasks = [_task("a", ["missing"])]
        assert graph.detect_cycles(tasks) == set()

    def test_repair_breaks_cycle(self):
        tasks = [_task("a", ["b"]), _task("b", ["a"]), _task("c", ["a"])]
        tasks[0].blocked_by = ["b", "c"]
        cyclic = graph.repair_cycles(tasks)

        assert cyclic == {"a", "b", "c"}
        assert graph.detect_cycles(tasks) == set()
        assert tasks[0].depends_on == []
        assert tasks[0].blocked_by == []

    def test_repair_noop_on_dag(self):
        tasks = _chain()
        assert graph.repair_cycles(tasks) == set()
        assert tasks[2].depends_on == ["b"]


class TestCriticalPath:
    def test_chain(self):
        assert graph.compute_critical_path(_chain()) == ["a", "b", "c"]

    def test_picks_longest_branch(self):
        tasks = [
            _task("a"),
            _task("b", ["a"]),
            _task("c", ["b"]),
            _task("x"),
            _task("y", ["x"]),
        ]
        assert graph.compute_critical_path(tasks) == ["a", "b", "c"]

    def test_consecutive_pairs_are_edges(self):
        tasks = [
            _task("design"),
            _task("api", ["design"]),
            _task("ui", ["design"]),
            _task("integrate", ["api", "ui"]),
            _task("ship", ["integrate"]),
        ]
        path = graph.compute_critical_path(tasks)
        by_id = {t.id: t for t in tasks}
        assert set(path) <= set(by_id)
        for earlier, later in zip(path, path[1:]):
            assert earlier in by_id[later].depends_on
        assert len(path) == 4

    def test_survives_residual_cycle(self):
        tasks = [_task("a", ["b"]), _task("b", ["a"])]
        path = graph.compute_critical_path(tasks)
        assert 1 <= len(path) <= 2

    def test_empty(self):
        assert graph.compute_critical_path([]) == []


class TestHelpers:
    def test_completion_percentage(self):
        tasks = _chain()
        assert graph.compute_completion_percentage(tasks) == 0
        tasks[0].status = "done"
        assert graph.compute_completion_percentage(tasks) == 33
        assert graph.compute_completion_percentage([]) == 0

    def test_build_dependencies_skips_unknown(self):
        tasks = [_task("a"), _task("b", ["a", "ghost"])]
        deps = graph.build_dependencies(tasks)
        assert [(d.from_id, d.to_id, d.type) for d in deps] == [("a", "b", "blocks")]

    def test_rebuild_blocked_by_is_inverse(self):
        tasks = _chain()
        graph.rebuild_blocked_by(tasks)
        assert tasks[0].blocked_by == ["b"]
        assert tasks[1].blocked_by == ["c"]
        assert tasks[2].blocked_by == []

    def test_find_task_in_subtasks(self):
        parent = _task("parent")
        parent.subtasks = [_task("child")]
        assert graph.find_task([parent], "child").id == "child"
        assert graph.find_task([parent], "nope") is None
        assert [t.id for t in graph.flatten_tasks([parent])] == ["parent", "child"]
