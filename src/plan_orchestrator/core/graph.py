"""Task graph operations: readiness, cycles, critical path, and lookups.

All functions work over a flat list of tasks addressed by id; edges are the
ids listed in each task's ``depends_on``.
"""

from collections import deque

from plan_orchestrator.db.models import Dependency, Task

DISPATCHABLE_STATUSES = ("pending", "ready")


def get_ready_tasks(tasks: list[Task]) -> list[Task]:
    """Get tasks that are pending/ready and have all dependencies done."""
    done_ids = {t.id for t in tasks if t.status == "done"}
    return [
        t for t in tasks
        if t.status in DISPATCHABLE_STATUSES
        and all(dep_id in done_ids for dep_id in t.depends_on)
    ]


def detect_cycles(tasks: list[Task]) -> set[str]:
    """Return the ids of tasks involved in (or downstream of) a dependency cycle.

    Uses Kahn's algorithm: any task that never reaches in-degree zero is not
    part of the topological order. Edges to unknown task ids are ignored.
    """
    known = {t.id for t in tasks}
    in_degree = {t.id: 0 for t in tasks}
    dependents: dict[str, list[str]] = {t.id: [] for t in tasks}

    for task in tasks:
        for dep_id in task.depends_on:
            if dep_id not in known:
                continue
            dependents[dep_id].append(task.id)
            in_degree[task.id] += 1

    queue = deque(task_id for task_id, degree in in_degree.items() if degree == 0)
    ordered: set[str] = set()
    while queue:
        node = queue.popleft()
        ordered.add(node)
        for dependent in dependents[node]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    return known - ordered


def repair_cycles(tasks: list[Task]) -> set[str]:
    """Break cycles by stripping cyclic ids from cyclic tasks' edges."""
    cyclic = detect_cycles(tasks)
    if not cyclic:
        return cyclic
    for task in tasks:
        if task.id in cyclic:
            task.depends_on = [d for d in task.depends_on if d not in cyclic]
            task.blocked_by = [b for b in task.blocked_by if b not in cyclic]
    return cyclic


def compute_critical_path(tasks: list[Task]) -> list[str]:
    """Longest dependency chain by task count, ordered from first to last."""
    by_id = {t.id: t for t in tasks}
    memo: dict[str, list[str]] = {}
    visiting: set[str] = set()

    def longest_path(task_id: str) -> list[str]:
        if task_id in memo:
            return memo[task_id]
        task = by_id.get(task_id)
        if task is None or task_id in visiting:
            return []
        visiting.add(task_id)
        longest: list[str] = []
        for dep_id in task.depends_on:
            path = longest_path(dep_id)
            if len(path) > len(longest):
                longest = path
        visiting.discard(task_id)
        memo[task_id] = longest + [task_id]
        return memo[task_id]

    critical: list[str] = []
    for task in tasks:
        path = longest_path(task.id)
        if len(path) > len(critical):
            critical = path
    return critical


def compute_completion_percentage(tasks: list[Task]) -> int:
    if not tasks:
        return 0
    done = sum(1 for t in tasks if t.status == "done")
    return round(done / len(tasks) * 100)


def build_dependencies(tasks: list[Task]) -> list[Dependency]:
    """Derive 'blocks' edges (dependency -> dependent) from depends_on."""
    known = {t.id for t in tasks}
    return [
        Dependency(from_id=dep_id, to_id=task.id)
        for task in tasks
        for dep_id in task.depends_on
        if dep_id in known
    ]


def rebuild_blocked_by(tasks: list[Task]) -> None:
    """Recompute each task's blocked_by as the inverse of depends_on."""
    dependents: dict[str, list[str]] = {t.id: [] for t in tasks}
    for task in tasks:
        for dep_id in task.depends_on:
            if dep_id in dependents:
                dependents[dep_id].append(task.id)
    for task in tasks:
        task.blocked_by = dependents[task.id]


def flatten_tasks(tasks: list[Task]) -> list[Task]:
    """All tasks including nested subtasks, parents first."""
    result = []
    for task in tasks:
        result.append(task)
        if task.subtasks:
            result.extend(flatten_tasks(task.subtasks))
    return result


def find_task(tasks: list[Task], task_id: str) -> Task | None:
    for task in tasks:
        if task.id == task_id:
            return task
        found = find_task(task.subtasks, task_id)
        if found:
            return found
    return None
