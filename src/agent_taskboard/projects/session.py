"""Project resolution and per-call project binding.

Many agent sessions share one server process. Each call names the project it
works on; :class:`ProjectResolver` turns that name into concrete paths and
caches the result, and :class:`ProjectSession` binds the resolved context to
the current call only.

The binding lives in a :class:`contextvars.ContextVar` owned by the session
instance. Threads start with an empty context and asyncio tasks copy theirs
at creation, so a binding made by one call is never visible to a call running
concurrently on another thread or task.
"""

from __future__ import annotations

import re
import threading
from collections import Counter
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterator, Optional, TypeVar

from loguru import logger

from ..config import Settings
from ..constants import DEFAULT_DATA_DIRNAME, MEMORY_DIRNAME, PROJECT_MARKER_TEMPLATE, TASKS_FILENAME
from ..errors import ProjectConflictError, ValidationError
from .roots import RootsProvider, first_file_root

T = TypeVar("T")

_PROJECT_ID_STRIP_RE = re.compile(r"[^a-z0-9-]")
_PROJECT_MARKER_RE = re.compile(r"<!-- Project: (.+?) -->")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def require_project_name(project_name: Optional[str]) -> str:
    """Reject a missing or blank project name."""
    if project_name is None or not str(project_name).strip():
        raise ValidationError(
            "A non-empty project name is required",
            field="project",
            current=project_name,
            hint="Pass the project this agent works on, e.g. 'backend-api'",
        )
    return str(project_name).strip()


def sanitize_project_name(project_name: str) -> str:
    """Derive the project id: lowercase with everything outside ``[a-z0-9-]`` removed."""
    name = require_project_name(project_name)
    project_id = _PROJECT_ID_STRIP_RE.sub("", name.lower())
    if not project_id:
        raise ValidationError(
            f"Project name {name!r} has no usable characters",
            field="project",
            current=name,
            expected="at least one of [a-z0-9-]",
        )
    return project_id


@dataclass
class ProjectContext:
    """Resolved identity and on-disk locations of one project."""

    project_id: str
    project_name: str
    project_root: Path
    data_dir: Path
    tasks_file_path: Path
    last_accessed: datetime = field(default_factory=_utcnow)

    @property
    def memory_dir(self) -> Path:
        """Directory holding timestamped task backups."""
        return self.data_dir / MEMORY_DIRNAME

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "projectName": self.project_name,
            "projectRoot": str(self.project_root),
            "dataDir": str(self.data_dir),
            "tasksFilePath": str(self.tasks_file_path),
            "lastAccessed": self.last_accessed.isoformat(),
        }


class ProjectResolver:
    """Map project names to :class:`ProjectContext` objects and cache them by id.

    First resolution of an id is serialized per id, so a race between two
    calls for the same new project builds exactly one cache entry.
    """

    def __init__(
        self,
        roots_provider: Optional[RootsProvider] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.roots_provider = roots_provider
        self.settings = settings or Settings()
        self._cache: dict[str, ProjectContext] = {}
        self._guard = threading.Lock()
        self._population_locks: dict[str, threading.Lock] = {}

    # -- internal helpers ---------------------------------------------------

    def _population_lock(self, project_id: str) -> threading.Lock:
        with self._guard:
            lock = self._population_locks.get(project_id)
            if lock is None:
                lock = threading.Lock()
                self._population_locks[project_id] = lock
            return lock

    def _cached(self, project_id: str, project_name: str) -> Optional[ProjectContext]:
        with self._guard:
            context = self._cache.get(project_id)
        if context is None:
            return None
        self._check_conflict(context, project_name)
        context.last_accessed = _utcnow()
        return context

    @staticmethod
    def _check_conflict(context: ProjectContext, project_name: str) -> None:
        if context.project_name != project_name:
            raise ProjectConflictError(
                f"Project {project_name!r} maps to id {context.project_id!r}, "
                f"which already belongs to {context.project_name!r}",
                field="project",
                current=project_name,
                expected=context.project_name,
                hint="Use a project name that differs by more than case or punctuation",
            )

    def _project_root(self, project_name: str) -> Path:
        if self.settings.project_root:
            return Path(self.settings.project_root).expanduser().resolve()
        if self.roots_provider is not None:
            root = first_file_root(self.roots_provider.list_roots(project_name))
            if root is not None:
                return root.expanduser().resolve()
        logger.warning(
            "No file:// root declared for project {!r}; falling back to {}",
            project_name,
            self.settings.fallback_root,
        )
        return Path(self.settings.fallback_root).expanduser().resolve()

    def _data_dir(self, project_root: Path, project_id: str) -> Path:
        override = self.settings.data_dir
        if override:
            override_path = Path(override).expanduser()
            if override_path.is_absolute():
                return override_path / project_id
            return project_root / override_path
        return project_root / DEFAULT_DATA_DIRNAME

    def _build(self, project_name: str, project_id: str) -> ProjectContext:
        project_root = self._project_root(project_name)
        data_dir = self._data_dir(project_root, project_id)
        return ProjectContext(
            project_id=project_id,
            project_name=project_name,
            project_root=project_root,
            data_dir=data_dir,
            tasks_file_path=data_dir / TASKS_FILENAME,
        )

    # -- public API ---------------------------------------------------------

    def resolve(self, project_name: str, force_refresh: bool = False) -> ProjectContext:
        """Return the context for *project_name*, building it on first use.

        ``force_refresh`` rebuilds the context even when one is cached.
        """
        name = require_project_name(project_name)
        project_id = sanitize_project_name(name)
        if not force_refresh:
            cached = self._cached(project_id, name)
            if cached is not None:
                return cached

        with self._population_lock(project_id):
            cached = self._cached(project_id, name)
            if cached is not None and not force_refresh:
                return cached
            context = self._build(name, project_id)
            with self._guard:
                self._cache[project_id] = context
        logger.debug("Resolved project {!r} -> {}", name, context.tasks_file_path)
        return context

    def cached_projects(self) -> list[ProjectContext]:
        with self._guard:
            return list(self._cache.values())

    def list_projects(self) -> list[str]:
        """Project names known to this process plus directories under a shared data dir."""
        names = {c.project_name for c in self.cached_projects()}
        override = self.settings.data_dir
        if override and Path(override).expanduser().is_absolute():
            base = Path(override).expanduser()
            if base.is_dir():
                known_ids = {c.project_id for c in self.cached_projects()}
                for entry in base.iterdir():
                    if entry.is_dir() and entry.name not in known_ids:
                        names.add(entry.name)
        return sorted(names)

    def clear_cache(self) -> None:
        with self._guard:
            self._cache.clear()


class ProjectSession:
    """Bind a resolved project to the duration of one call."""

    def __init__(self, resolver: Optional[ProjectResolver] = None) -> None:
        self.resolver = resolver or ProjectResolver()
        self._current: ContextVar[Optional[ProjectContext]] = ContextVar(
            f"agent_taskboard_project_{id(self):x}", default=None
        )
        self._stats_lock = threading.Lock()
        self._active = 0
        self._total_bindings = 0

    def current(self) -> Optional[ProjectContext]:
        """The context bound to the running call, if any."""
        return self._current.get()

    @contextmanager
    def bind(self, project_name: str, force_refresh: bool = False) -> Iterator[ProjectContext]:
        """Resolve *project_name* and make it the current context inside the block."""
        context = self.resolver.resolve(project_name, force_refresh=force_refresh)
        token = self._current.set(context)
        with self._stats_lock:
            self._active += 1
            self._total_bindings += 1
        try:
            with logger.contextualize(project=context.project_id):
                yield context
        finally:
            with self._stats_lock:
                self._active -= 1
            self._current.reset(token)

    def with_project_context(self, project_name: str, fn: Callable[[ProjectContext], T]) -> T:
        """Run ``fn(context)`` with *project_name* bound for that call only."""
        with self.bind(project_name) as context:
            return fn(context)

    async def awith_project_context(
        self,
        project_name: str,
        fn: Callable[[ProjectContext], Awaitable[T]],
    ) -> T:
        """Async counterpart of :meth:`with_project_context`."""
        with self.bind(project_name) as context:
            return await fn(context)

    def context_for(self, project_name: str) -> ProjectContext:
        """Return the bound context when it matches *project_name*, else resolve it."""
        name = require_project_name(project_name)
        bound = self._current.get()
        if bound is not None and bound.project_name == name:
            return bound
        return self.resolver.resolve(name)

    def stats(self) -> dict[str, Any]:
        current = self._current.get()
        with self._stats_lock:
            active, total = self._active, self._total_bindings
        return {
            "activeContexts": active,
            "totalBindings": total,
            "currentProject": current.project_name if current else None,
            "cacheSize": len(self.resolver.cached_projects()),
        }

    def reset_stats(self) -> None:
        """Drop every cached context and zero the binding total.

        Population locks and the count of bindings still open are kept.
        """
        self.resolver.clear_cache()
        with self._stats_lock:
            self._total_bindings = 0


# ---------------------------------------------------------------------------
# Project markers in persisted or rendered content
# ---------------------------------------------------------------------------

@dataclass
class ContextValidation:
    is_valid: bool
    detected_project: Optional[str] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"isValid": self.is_valid}
        if self.detected_project is not None:
            data["detectedProject"] = self.detected_project
        if self.suggestion is not None:
            data["suggestion"] = self.suggestion
        return data


@dataclass
class ProjectDetection:
    detected_project: Optional[str]
    confidence: float
    has_project_metadata: bool
    metadata_count: int
    consistent_project: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "detectedProject": self.detected_project,
            "confidence": self.confidence,
            "hasProjectMetadata": self.has_project_metadata,
            "metadataCount": self.metadata_count,
            "consistentProject": self.consistent_project,
        }


def add_project_metadata(text: str, project_name: str) -> str:
    """Append the project marker that :func:`validate_project_context` reads back."""
    return f"{text}\n\n{PROJECT_MARKER_TEMPLATE.format(project=project_name)}"


def validate_project_context(expected_project: str, stored_content: Optional[str]) -> ContextValidation:
    """Compare the trailing project marker in *stored_content* with *expected_project*.

    Content without a marker is accepted. A mismatch is reported, not raised.
    """
    if not stored_content:
        return ContextValidation(is_valid=True)
    markers = _PROJECT_MARKER_RE.findall(stored_content)
    if not markers:
        return ContextValidation(is_valid=True)
    detected = markers[-1].strip()
    if detected != expected_project:
        return ContextValidation(
            is_valid=False,
            detected_project=detected,
            suggestion=(
                f"Content belongs to project {detected!r} but the call is bound to "
                f"{expected_project!r}. Re-issue the call with project={detected!r} "
                "to avoid writing into the wrong project."
            ),
        )
    return ContextValidation(is_valid=True, detected_project=detected)


def auto_detect_project(content: str) -> ProjectDetection:
    """Guess which project *content* belongs to from all of its markers."""
    names = [m.strip() for m in _PROJECT_MARKER_RE.findall(content or "") if m.strip()]
    if not names:
        return ProjectDetection(None, 0.0, False, 0, False)
    counts = Counter(names)
    detected, _ = counts.most_common(1)[0]
    consistent = len(counts) == 1
    if consistent:
        confidence = min(0.9, 0.5 + len(names) * 0.1)
    else:
        confidence = 0.3
    return ProjectDetection(detected, round(confidence, 2), True, len(names), consistent)
