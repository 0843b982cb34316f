"""File-based task store with path-keyed locking.

Each project keeps its tasks in one JSON file (``tasks.json``) inside the
project's data directory. All reads and writes go through :meth:`TaskStore.transaction`,
which holds the exclusive lock for that file for the whole read-modify-write.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from loguru import logger

from ..constants import BACKUP_PREFIX, DEFAULT_LOCK_TIMEOUT
from ..errors import InternalError, StoreIOError
from ..io_utils import PathLockRegistry, load_json_strict, path_lock, save_json
from .model import Task, TaskStatus


# ---------------------------------------------------------------------------
# Low-level I/O
# ---------------------------------------------------------------------------

def _load_raw(path: Path) -> list[dict[str, Any]]:
    """Load the raw task list from *path*, returning ``[]`` if missing or empty."""
    data = load_json_strict(path, {"tasks": []})
    if not isinstance(data, dict) or not isinstance(data.get("tasks", []), list):
        raise StoreIOError(f"{path.name}: expected an object with a 'tasks' list", path=str(path))
    return list(data.get("tasks", []))


def _save_raw(path: Path, tasks: list[dict[str, Any]]) -> None:
    save_json(path, {"tasks": tasks})


def _backup_name(now: datetime) -> str:
    return f"{BACKUP_PREFIX}{now.strftime('%Y-%m-%dT%H-%M-%S-%f')}Z.json"


# ---------------------------------------------------------------------------
# TaskStore
# ---------------------------------------------------------------------------

class TaskStore:
    """Locked, file-backed store for one project's :class:`Task` objects.

    Parameters
    ----------
    tasks_file_path:
        The project's ``tasks.json``.
    memory_dir:
        Directory that receives full-content backups before a clear.
    lock_timeout:
        Seconds to wait for the path lock; ``None`` waits forever.
    """

    def __init__(
        self,
        tasks_file_path: Path,
        memory_dir: Optional[Path] = None,
        lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT,
        lock_registry: Optional[PathLockRegistry] = None,
    ) -> None:
        self._store_path = Path(tasks_file_path)
        self._memory_dir = Path(memory_dir) if memory_dir else self._store_path.parent / "memory"
        self._lock_timeout = lock_timeout
        self._lock_registry = lock_registry

    @property
    def path(self) -> Path:
        return self._store_path

    @property
    def memory_dir(self) -> Path:
        return self._memory_dir

    # -- internal helpers ---------------------------------------------------

    def _load(self) -> list[Task]:
        raw = _load_raw(self._store_path)
        try:
            return [Task.from_dict(d) for d in raw]
        except (AttributeError, TypeError, ValueError) as exc:
            raise StoreIOError(
                f"{self._store_path.name}: malformed task record: {exc}",
                path=str(self._store_path),
            ) from exc

    def _save(self, tasks: list[Task]) -> None:
        _save_raw(self._store_path, [t.to_dict() for t in tasks])

    # -- public API ---------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[_TaskTx]:
        """Acquire the lock, load tasks, yield a transaction, and save on exit.

        Nothing is written when the block raises, so a failed call leaves the
        file exactly as it was.

        Usage::

            with store.transaction() as tx:
                task = tx.get(task_id)
                task.transition(TaskStatus.IN_PROGRESS)
                tx.dirty = True
        """
        with path_lock(self._store_path, timeout=self._lock_timeout, registry=self._lock_registry):
            tasks = self._load()
            tx = _TaskTx(tasks)
            yield tx
            if tx.dirty:
                self._save(tx.tasks)

    def read_snapshot(self) -> list[Task]:
        """Return a snapshot read under the lock (no lock held after return)."""
        with path_lock(self._store_path, timeout=self._lock_timeout, registry=self._lock_registry):
            return self._load()

    def get_one(self, task_id: str) -> Optional[Task]:
        with path_lock(self._store_path, timeout=self._lock_timeout, registry=self._lock_registry):
            for t in self._load():
                if t.id == task_id:
                    return t
        return None

    def write_backup(self, tasks: list[Task]) -> Path:
        """Write *tasks* to a new timestamped file in the memory directory.

        Call this inside :meth:`transaction` so the snapshot and whatever
        follows it form one critical section.
        """
        now = datetime.now(timezone.utc)
        target = self._memory_dir / _backup_name(now)
        suffix = 1
        while target.exists():
            target = self._memory_dir / f"{target.stem.split('.')[0]}.{suffix}.json"
            suffix += 1
        _save_raw(target, [t.to_dict() for t in tasks])
        logger.info("Backed up {} task(s) to {}", len(tasks), target)
        return target

    def list_backups(self) -> list[Path]:
        """Backup files, newest first."""
        if not self._memory_dir.is_dir():
            return []
        files = [p for p in self._memory_dir.glob(f"{BACKUP_PREFIX}*.json") if p.is_file()]
        return sorted(files, key=lambda p: (p.stat().st_mtime, p.name), reverse=True)


class _TaskTx:
    """In-memory transaction over a list of tasks.

    Mutations are collected and flushed back to disk when the ``transaction``
    context-manager exits without an error.
    """

    def __init__(self, tasks: list[Task]) -> None:
        self.tasks = tasks
        self.dirty = False
        self._reindex()

    def _reindex(self) -> None:
        self._index: dict[str, int] = {t.id: i for i, t in enumerate(self.tasks)}

    # -- lookups ------------------------------------------------------------

    def get(self, task_id: str) -> Optional[Task]:
        idx = self._index.get(task_id)
        return self.tasks[idx] if idx is not None else None

    def get_by_name(self, name: str) -> Optional[Task]:
        for t in self.tasks:
            if t.name == name:
                return t
        return None

    def list_all(self) -> list[Task]:
        return list(self.tasks)

    def find(self, *, status: Optional[TaskStatus] = None) -> list[Task]:
        if status is None:
            return list(self.tasks)
        return [t for t in self.tasks if t.status == status]

    def dependents_of(self, task_id: str) -> list[Task]:
        return [t for t in self.tasks if task_id in t.dependencies]

    # -- mutations ----------------------------------------------------------

    def add(self, task: Task) -> Task:
        if task.id in self._index:
            raise InternalError(f"Task {task.id} already exists")
        self._index[task.id] = len(self.tasks)
        self.tasks.append(task)
        self.dirty = True
        return task

    def replace_all(self, tasks: list[Task]) -> None:
        self.tasks = list(tasks)
        self._reindex()
        self.dirty = True

    def hard_remove(self, task_id: str) -> bool:
        """Physically remove a task from the store."""
        idx = self._index.pop(task_id, None)
        if idx is None:
            return False
        self.tasks.pop(idx)
        self._reindex()
        self.dirty = True
        return True

    def truncate(self) -> None:
        self.replace_all([])
