"""Task engine: batch planning, dependency management and status transitions.

This is the entry point for all task manipulation. Every operation names its
project; the engine resolves that project (reusing the context bound to the
running call when it matches) and works on that project's
:class:`~agent_taskboard.task_engine.store.TaskStore` only.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional, Union

from loguru import logger

from ..constants import DEFAULT_QUERY_PAGE_SIZE, TASK_NAME_MAX_LENGTH, VERIFICATION_PASS_SCORE
from ..errors import NotFoundError, ValidationError
from ..io_utils import PathLockRegistry
from ..logging_utils import pretty, summarize_tasks
from ..projects.session import ProjectContext, ProjectSession
from .dependencies import (
    check_acyclic,
    check_transition,
    normalize_references,
    unmet_dependencies,
)
from .model import (
    RelatedFile,
    Task,
    TaskInput,
    TaskStatus,
    UpdateMode,
    require_task_id,
)
from .store import TaskStore, _TaskTx

TaskSpec = Union[TaskInput, dict[str, Any]]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class BatchResult:
    mode: UpdateMode
    created: list[Task] = field(default_factory=list)
    updated: list[Task] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    backup_path: Optional[Path] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "mode": self.mode.value,
            "created": [t.to_dict() for t in self.created],
            "updated": [t.to_dict() for t in self.updated],
            "tasks": [t.to_dict() for t in self.tasks],
        }
        if self.backup_path is not None:
            data["backupFile"] = str(self.backup_path)
        return data


@dataclass
class VerificationResult:
    task: Task
    score: int
    completed: bool

    def to_dict(self) -> dict[str, Any]:
        return {"task": self.task.to_dict(), "score": self.score, "completed": self.completed}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class TaskEngine:
    """Manage the lifecycle of tasks across isolated projects.

    Parameters
    ----------
    session:
        Resolves project names and carries the per-call project binding.
    lock_registry:
        Path locks shared with other stores; the process-wide default when omitted.
    """

    def __init__(self, session: ProjectSession, lock_registry: Optional[PathLockRegistry] = None) -> None:
        self.session = session
        self.lock_registry = lock_registry

    # -- internal helpers ---------------------------------------------------

    def _context(self, project: str) -> ProjectContext:
        return self.session.context_for(project)

    def store_for(self, project: str) -> TaskStore:
        context = self._context(project)
        return TaskStore(
            context.tasks_file_path,
            memory_dir=context.memory_dir,
            lock_timeout=self.session.resolver.settings.lock_timeout_seconds,
            lock_registry=self.lock_registry,
        )

    @staticmethod
    def _require(tx: _TaskTx, task_id: str) -> Task:
        task = tx.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id, hint="List the project's tasks to find valid ids")
        return task

    @staticmethod
    def _as_input(spec: TaskSpec) -> TaskInput:
        if isinstance(spec, TaskInput):
            return spec
        if isinstance(spec, dict):
            return TaskInput.from_dict(spec)
        raise ValidationError(f"Unsupported task spec {type(spec).__name__}", field="tasks")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_all_tasks(self, project: str) -> list[Task]:
        return self.store_for(project).read_snapshot()

    def get_task_by_id(self, task_id: str, project: str) -> Task:
        task_id = require_task_id(task_id)
        task = self.store_for(project).get_one(task_id)
        if task is None:
            raise NotFoundError("Task", task_id, hint="List the project's tasks to find valid ids")
        return task

    def list_tasks(self, project: str, status: Optional[Union[str, TaskStatus]] = None) -> list[Task]:
        tasks = self.get_all_tasks(project)
        if status is None:
            return tasks
        wanted = TaskStatus.parse(status)
        return [t for t in tasks if t.status == wanted]

    def query_tasks(
        self,
        project: str,
        query: str,
        is_id: bool = False,
        page: int = 1,
        page_size: int = DEFAULT_QUERY_PAGE_SIZE,
    ) -> dict[str, Any]:
        """Search by keywords (every term must match name or description) or by exact id."""
        if page < 1:
            raise ValidationError("page must be >= 1", field="page", current=page)
        if page_size < 1:
            raise ValidationError("pageSize must be >= 1", field="pageSize", current=page_size)
        tasks = self.get_all_tasks(project)
        if is_id:
            wanted = query.strip().lower()
            matches = [t for t in tasks if t.id == wanted]
        else:
            terms = [term.lower() for term in query.split() if term]
            matches = []
            for t in tasks:
                haystack = f"{t.name}\n{t.description}".lower()
                if all(term in haystack for term in terms):
                    matches.append(t)
        total = len(matches)
        start = (page - 1) * page_size
        return {
            "tasks": matches[start:start + page_size],
            "page": page,
            "pageSize": page_size,
            "total": total,
            "totalPages": math.ceil(total / page_size),
        }

    # ------------------------------------------------------------------
    # Batch planning
    # ------------------------------------------------------------------

    def batch_create_or_update_tasks(
        self,
        tasks: Iterable[TaskSpec],
        mode: Union[str, UpdateMode],
        project: str,
        global_analysis_result: Optional[str] = None,
    ) -> BatchResult:
        """Combine *tasks* with the stored set according to *mode*.

        The read, merge, validation and write run as one critical section;
        any failure leaves the store untouched.
        """
        update_mode = UpdateMode.parse(mode)
        inputs = [self._as_input(spec) for spec in tasks]
        seen: set[str] = set()
        for spec in inputs:
            spec.validate(TASK_NAME_MAX_LENGTH)
            if spec.name in seen:
                raise ValidationError(
                    f"Task name {spec.name!r} appears more than once in the batch",
                    field="name",
                    current=spec.name,
                )
            seen.add(spec.name)

        store = self.store_for(project)
        result = BatchResult(mode=update_mode)
        with store.transaction() as tx:
            existing = tx.list_all()
            if update_mode == UpdateMode.CLEAR_ALL_TASKS:
                base: list[Task] = []
            elif update_mode == UpdateMode.OVERWRITE:
                base = [t for t in existing if t.is_completed]
            else:
                base = existing

            if update_mode != UpdateMode.SELECTIVE:
                taken = {t.name for t in base}
                for spec in inputs:
                    if spec.name in taken:
                        raise ValidationError(
                            f"A task named {spec.name!r} already exists",
                            field="name",
                            current=spec.name,
                            hint="Use selective mode to update an existing task by name",
                        )

            final = list(base)
            by_name = {t.name: t for t in final}
            staged: list[tuple[TaskInput, Task]] = []
            for spec in inputs:
                current = by_name.get(spec.name) if update_mode == UpdateMode.SELECTIVE else None
                if current is not None:
                    self._apply_input(current, spec)
                    result.updated.append(current)
                else:
                    current = Task(name=spec.name)
                    self._apply_input(current, spec)
                    final.append(current)
                    by_name[current.name] = current
                    result.created.append(current)
                if global_analysis_result is not None:
                    current.analysis_result = global_analysis_result
                staged.append((spec, current))

            by_id = {t.id: t for t in final}
            for spec, task in staged:
                task.dependencies = normalize_references(task.name, spec.dependencies, by_id, by_name)
            if update_mode == UpdateMode.OVERWRITE:
                self._prune_dangling(final, by_id)
            check_acyclic(final)

            # Backup only once the batch is known to be accepted.
            if update_mode == UpdateMode.CLEAR_ALL_TASKS and existing:
                result.backup_path = store.write_backup(existing)
            tx.replace_all(final)
            result.tasks = list(final)

        logger.info(
            "Batch {} stored: {} created, {} updated, {} total [{}]",
            update_mode.value,
            len(result.created),
            len(result.updated),
            len(result.tasks),
            summarize_tasks(result.tasks),
        )
        logger.debug("Batch created ids: {}", pretty([t.id for t in result.created]))
        return result

    @staticmethod
    def _apply_input(task: Task, spec: TaskInput) -> None:
        task.name = spec.name
        task.description = spec.description
        task.implementation_guide = spec.implementation_guide
        task.verification_criteria = spec.verification_criteria
        task.notes = spec.notes
        task.related_files = list(spec.related_files)
        if spec.agent is not None:
            task.agent = spec.agent
        task.touch()

    @staticmethod
    def _prune_dangling(tasks: list[Task], by_id: dict[str, Task]) -> None:
        for task in tasks:
            kept = [d for d in task.dependencies if d in by_id]
            if len(kept) != len(task.dependencies):
                dropped = [d for d in task.dependencies if d not in by_id]
                logger.warning("Dropping dangling dependencies {} from task {!r}", dropped, task.name)
                task.dependencies = kept

    # ------------------------------------------------------------------
    # Single-task mutators
    # ------------------------------------------------------------------

    def update_task_status(self, task_id: str, status: Union[str, TaskStatus], project: str) -> Task:
        """Move a task to *status*, enforcing the transition table and dependency guard."""
        task_id = require_task_id(task_id)
        target = TaskStatus.parse(status)
        with self.store_for(project).transaction() as tx:
            task = self._require(tx, task_id)
            check_transition(task, target)
            if target == TaskStatus.IN_PROGRESS and task.status == TaskStatus.PENDING:
                self._check_dependencies(tx, task)
            task.transition(target)
            tx.dirty = True
        logger.info("Task {!r} -> {}", task.name, target.value)
        return task

    def _check_dependencies(self, tx: _TaskTx, task: Task) -> None:
        unmet = unmet_dependencies(task, tx.get)
        if unmet:
            first = tx.get(unmet[0])
            label = f"{first.name!r} ({first.status.value})" if first else repr(unmet[0])
            raise ValidationError(
                f"Task {task.name!r} cannot start: dependency {label} is not completed",
                field="dependencies",
                current=unmet,
                expected="all dependencies completed",
                hint="Complete the listed dependencies first",
            )

    def update_task_summary(self, task_id: str, summary: str, project: str) -> Task:
        task_id = require_task_id(task_id)
        with self.store_for(project).transaction() as tx:
            task = self._require(tx, task_id)
            task.summary = summary
            task.touch()
            tx.dirty = True
        return task

    def update_task_content(
        self,
        task_id: str,
        project: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        notes: Optional[str] = None,
        implementation_guide: Optional[str] = None,
        verification_criteria: Optional[str] = None,
        related_files: Optional[list[RelatedFile]] = None,
        dependencies: Optional[list[str]] = None,
    ) -> Task:
        """Edit a task's content. Completed tasks only accept related-file changes."""
        task_id = require_task_id(task_id)
        changes = {
            "name": name,
            "description": description,
            "notes": notes,
            "implementationGuide": implementation_guide,
            "verificationCriteria": verification_criteria,
            "dependencies": dependencies,
        }
        requested = [key for key, value in changes.items() if value is not None]
        if not requested and related_files is None:
            raise ValidationError("No changes requested", field="content")
        for related in related_files or []:
            related.validate()

        with self.store_for(project).transaction() as tx:
            task = self._require(tx, task_id)
            if task.is_completed and requested:
                raise ValidationError(
                    f"Task {task.name!r} is completed; only related files can change",
                    field=requested[0],
                    current=task.status.value,
                    expected="relatedFiles only",
                )
            if name is not None and name != task.name:
                TaskInput(name=name).validate(TASK_NAME_MAX_LENGTH)
                clash = tx.get_by_name(name)
                if clash is not None:
                    raise ValidationError(
                        f"A task named {name!r} already exists",
                        field="name",
                        current=name,
                    )
                task.name = name
            if description is not None:
                task.description = description
            if notes is not None:
                task.notes = notes
            if implementation_guide is not None:
                task.implementation_guide = implementation_guide
            if verification_criteria is not None:
                task.verification_criteria = verification_criteria
            if related_files is not None:
                task.related_files = list(related_files)
            if dependencies is not None:
                by_id = {t.id: t for t in tx.tasks}
                by_name = {t.name: t for t in tx.tasks}
                task.dependencies = normalize_references(task.name, dependencies, by_id, by_name)
                check_acyclic(tx.tasks)
            task.touch()
            tx.dirty = True
        logger.info("Updated content of task {!r}: {}", task.name, requested or ["relatedFiles"])
        return task

    def delete_task(self, task_id: str, project: str) -> Task:
        task_id = require_task_id(task_id)
        with self.store_for(project).transaction() as tx:
            task = self._require(tx, task_id)
            if task.is_completed:
                raise ValidationError(
                    f"Task {task.name!r} is completed and cannot be deleted",
                    field="status",
                    current=task.status.value,
                )
            dependents = tx.dependents_of(task_id)
            if dependents:
                raise ValidationError(
                    f"Task {task.name!r} is a dependency of {[t.name for t in dependents]}",
                    field="dependencies",
                    current=[t.id for t in dependents],
                    hint="Remove the dependency from those tasks first",
                )
            tx.hard_remove(task_id)
        logger.info("Deleted task {!r}", task.name)
        return task

    def clear_all_tasks(self, project: str) -> dict[str, Any]:
        """Back up then truncate the store. An empty store is left alone."""
        store = self.store_for(project)
        with store.transaction() as tx:
            existing = tx.list_all()
            if not existing:
                return {"cleared": 0, "backupFile": None}
            backup = store.write_backup(existing)
            tx.truncate()
        logger.info("Cleared {} task(s); backup at {}", len(existing), backup)
        return {"cleared": len(existing), "backupFile": str(backup)}

    def list_backups(self, project: str) -> list[Path]:
        return self.store_for(project).list_backups()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def can_execute_task(self, task_id: str, project: str) -> tuple[bool, list[str]]:
        """Return whether the task may start and which dependencies block it."""
        task_id = require_task_id(task_id)
        with self.store_for(project).transaction() as tx:
            task = self._require(tx, task_id)
            if task.is_completed:
                return False, []
            blocked_by = unmet_dependencies(task, tx.get)
        return not blocked_by, blocked_by

    def start_task(self, task_id: str, project: str) -> Task:
        """``PENDING -> IN_PROGRESS``; a task already in progress is returned unchanged."""
        task_id = require_task_id(task_id)
        with self.store_for(project).transaction() as tx:
            task = self._require(tx, task_id)
            if task.status == TaskStatus.IN_PROGRESS:
                return task
            check_transition(task, TaskStatus.IN_PROGRESS)
            self._check_dependencies(tx, task)
            task.transition(TaskStatus.IN_PROGRESS)
            tx.dirty = True
        logger.info("Started task {!r}", task.name)
        return task

    def verify_task(self, task_id: str, score: int, summary: str, project: str) -> VerificationResult:
        """Record a verification.

        A score at or above the pass mark completes the task with *summary* as
        its final summary. A lower score keeps it in progress and stores
        *summary* as the corrective feedback for the next attempt.
        """
        task_id = require_task_id(task_id)
        if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
            raise ValidationError("score must be an integer in [0, 100]", field="score", current=score)
        if not summary or not summary.strip():
            raise ValidationError("summary must not be empty", field="summary", current=summary)

        with self.store_for(project).transaction() as tx:
            task = self._require(tx, task_id)
            if task.status != TaskStatus.IN_PROGRESS:
                raise ValidationError(
                    f"Task {task.name!r} must be in progress to be verified",
                    field="status",
                    current=task.status.value,
                    expected=TaskStatus.IN_PROGRESS.value,
                    hint="Start the task before verifying it",
                )
            completed = score >= VERIFICATION_PASS_SCORE
            target = TaskStatus.COMPLETED if completed else TaskStatus.IN_PROGRESS
            check_transition(task, target)
            task.summary = summary
            task.transition(target)
            tx.dirty = True

        if completed:
            logger.info("Task {!r} verified with score {} and completed", task.name, score)
        else:
            logger.info("Task {!r} scored {}; kept in progress for another attempt", task.name, score)
        return VerificationResult(task=task, score=score, completed=completed)
