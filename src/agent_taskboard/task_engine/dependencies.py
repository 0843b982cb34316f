"""Dependency references, cycle checks and the status transition table."""

from __future__ import annotations

from collections import deque
from typing import Callable, Iterable, Mapping, Optional

from ..errors import DependencyCycleError, ValidationError
from .model import Task, TaskStatus, is_task_id

# ---------------------------------------------------------------------------
# Valid status transitions
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS},
    # Re-entering IN_PROGRESS is the retry path after a failed verification.
    TaskStatus.IN_PROGRESS: {TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED},
    TaskStatus.COMPLETED: set(),
}


def check_transition(task: Task, target: TaskStatus) -> None:
    valid = VALID_TRANSITIONS.get(task.status, set())
    if target not in valid:
        raise ValidationError(
            f"Cannot transition task {task.name!r} from {task.status.value} to {target.value}",
            field="status",
            current=task.status.value,
            expected=sorted(s.value for s in valid),
        )


def unmet_dependencies(task: Task, lookup: Callable[[str], Optional[Task]]) -> list[str]:
    """Ids of dependencies that are missing or not yet completed."""
    unmet: list[str] = []
    for dep_id in task.dependencies:
        dep = lookup(dep_id)
        if dep is None or not dep.is_completed:
            unmet.append(dep_id)
    return unmet


# ---------------------------------------------------------------------------
# Reference normalization
# ---------------------------------------------------------------------------

def resolve_reference(
    ref: str,
    by_id: Mapping[str, Task],
    by_name: Mapping[str, Task],
) -> Optional[str]:
    """Translate an id-or-name reference to a task id, or ``None``."""
    ref = ref.strip()
    if is_task_id(ref) and ref.lower() in by_id:
        return ref.lower()
    task = by_name.get(ref)
    return task.id if task else None


def normalize_references(
    owner: str,
    refs: Iterable[str],
    by_id: Mapping[str, Task],
    by_name: Mapping[str, Task],
) -> list[str]:
    """Map each reference to an id, dropping duplicates and keeping order.

    Raises :class:`ValidationError` on the first reference that resolves to nothing.
    """
    out: list[str] = []
    for ref in refs:
        dep_id = resolve_reference(ref, by_id, by_name)
        if dep_id is None:
            raise ValidationError(
                f"Task {owner!r} depends on {ref!r}, which matches no task id or name",
                field="dependencies",
                current=ref,
                hint="Reference an existing task or another task in the same batch",
            )
        if dep_id not in out:
            out.append(dep_id)
    return out


# ---------------------------------------------------------------------------
# Cycle detection
# ---------------------------------------------------------------------------

def would_cycle(graph: Mapping[str, Iterable[str]], task_id: str, new_dep_id: str) -> bool:
    """Return True if adding task_id -> new_dep_id creates a cycle.

    Checks whether ``task_id`` is reachable from ``new_dep_id`` by following
    existing dependency edges.
    """
    visited: set[str] = set()
    queue: deque[str] = deque([new_dep_id])
    while queue:
        current = queue.popleft()
        if current == task_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        queue.extend(graph.get(current, ()))
    return False


def check_acyclic(tasks: Iterable[Task]) -> None:
    """Add every task's edges one at a time, rejecting the first that closes a cycle."""
    names = {}
    graph: dict[str, list[str]] = {}
    for task in tasks:
        names[task.id] = task.name
        graph.setdefault(task.id, [])
        for dep_id in task.dependencies:
            if dep_id == task.id:
                raise DependencyCycleError(
                    f"Task {task.name!r} cannot depend on itself",
                    field="dependencies",
                    current=dep_id,
                )
            if would_cycle(graph, task.id, dep_id):
                raise DependencyCycleError(
                    f"Dependency {task.name!r} -> {names.get(dep_id, dep_id)!r} would create a cycle",
                    field="dependencies",
                    current=dep_id,
                    hint="Remove one of the dependencies that point back to this task",
                )
            graph[task.id].append(dep_id)
