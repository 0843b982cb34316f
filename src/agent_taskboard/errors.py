"""Error taxonomy shared by the store, the resolver and the workflow engine."""

from __future__ import annotations

from typing import Any, Optional


class TaskboardError(Exception):
    """Base class for every error raised by the core."""

    code = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class NotFoundError(TaskboardError):
    """Unknown task or workflow id."""

    code = "not_found"

    def __init__(self, kind: str, identifier: str, hint: Optional[str] = None) -> None:
        super().__init__(f"{kind} {identifier!r} not found", kind=kind, id=identifier, hint=hint)
        self.kind = kind
        self.identifier = identifier


class ValidationError(TaskboardError, ValueError):
    """A request the caller can correct: bad input or an unmet precondition."""

    code = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        current: Any = None,
        expected: Any = None,
        hint: Optional[str] = None,
    ) -> None:
        super().__init__(message, field=field, current=current, expected=expected, hint=hint)
        self.field = field
        self.current = current
        self.expected = expected
        self.hint = hint


class ProjectConflictError(ValidationError):
    """Two different project names sanitize to the same project id."""

    code = "project_conflict"


class DependencyCycleError(ValidationError):
    """Accepting a dependency edge would close a cycle."""

    code = "dependency_cycle"


class LockContentionError(TaskboardError):
    """The path lock could not be acquired within the configured bound."""

    code = "lock_contention"

    def __init__(self, path: str, timeout: Optional[float]) -> None:
        super().__init__(
            f"Could not acquire lock for {path} within {timeout}s",
            path=path,
            timeout=timeout,
        )
        self.path = path
        self.timeout = timeout


class StoreIOError(TaskboardError):
    """Reading, writing or backing up persisted content failed."""

    code = "io_error"

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, path=path)
        self.path = path


class InternalError(TaskboardError):
    """Unexpected state."""

    code = "internal_error"
