"""Path-keyed locking and atomic JSON persistence.

Every critical section on a persisted file goes through :func:`path_lock`.
The lock is keyed by the normalized absolute path, so two spellings of the
same file share one lock while different files never block each other.
Inside one process a per-path ``threading.Lock`` serializes callers; a
:class:`filelock.FileLock` on a ``.lock`` sibling keeps other processes out.
Read-only sections take the same exclusive lock because a half-written file
must never be read.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, TypeVar, Union

from filelock import FileLock, Timeout
from loguru import logger

from .constants import DEFAULT_LOCK_TIMEOUT, LOCK_SUFFIX
from .errors import LockContentionError, StoreIOError

T = TypeVar("T")
PathLike = Union[str, "os.PathLike[str]"]


def normalize_lock_key(path: PathLike) -> str:
    """Return the key a path is locked under (absolute, normalized, case-folded on Windows)."""
    return os.path.normcase(os.path.abspath(os.fspath(path)))


class PathLockRegistry:
    """Per-path ``threading.Lock`` objects, one per normalized key.

    Stores that touch the same file must share a registry. The module default
    is shared by every caller that does not pass one.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def keys(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)


default_lock_registry = PathLockRegistry()


@contextmanager
def path_lock(
    path: PathLike,
    timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT,
    registry: Optional[PathLockRegistry] = None,
) -> Iterator[str]:
    """Hold the exclusive lock for *path* for the duration of the block.

    ``timeout=None`` waits forever. When the bound is exceeded
    :class:`LockContentionError` is raised and nothing inside the block runs.
    The lock is released on every exit path, including exceptions.
    """
    key = normalize_lock_key(path)
    thread_lock = (registry or default_lock_registry).lock_for(key)
    started = time.monotonic()

    acquired = thread_lock.acquire(timeout=-1 if timeout is None else max(timeout, 0))
    if not acquired:
        logger.warning("Lock contention on {} after {}s", key, timeout)
        raise LockContentionError(key, timeout)
    try:
        remaining = -1.0 if timeout is None else max(timeout - (time.monotonic() - started), 0.0)
        Path(key).parent.mkdir(parents=True, exist_ok=True)
        file_lock = FileLock(key + LOCK_SUFFIX, timeout=remaining)
        try:
            file_lock.acquire()
        except Timeout as exc:
            logger.warning("File lock contention on {} after {}s", key, timeout)
            raise LockContentionError(key, timeout) from exc
        try:
            yield key
        finally:
            file_lock.release()
    finally:
        thread_lock.release()


def with_lock(
    path: PathLike,
    fn: Callable[[], T],
    timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT,
    registry: Optional[PathLockRegistry] = None,
) -> T:
    """Run *fn* while holding the lock for *path* and return its result."""
    with path_lock(path, timeout=timeout, registry=registry):
        return fn()


def _atomic_write_json(path: Path, data: Any) -> None:
    """Write *data* as JSON via a temp file in the same directory, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _load_json_with_error(path: Path, default: Any) -> tuple[Any, Optional[str]]:
    """Load JSON and return ``(data, error_message)``.

    A missing file is not an error. Parse and IO failures are reported so the
    caller can refuse to overwrite corrupted durable state.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            text = handle.read()
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    if not text.strip():
        return default, None
    try:
        return json.loads(text), None
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"


def load_json_strict(path: Path, default: Any) -> Any:
    """Like :func:`_load_json_with_error` but raises :class:`StoreIOError`."""
    data, err = _load_json_with_error(path, default)
    if err:
        raise StoreIOError(f"Cannot read {err}", path=str(path))
    return data


def save_json(path: Path, data: Any) -> None:
    """Atomically persist *data*, converting OS failures to :class:`StoreIOError`."""
    try:
        _atomic_write_json(path, data)
    except OSError as exc:
        raise StoreIOError(f"Cannot write {path.name}: {exc}", path=str(path)) from exc
