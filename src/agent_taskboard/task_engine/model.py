"""Task records and the inputs used to create or update them.

Tasks persist as camelCase JSON objects inside ``{"tasks": [...]}``. Optional
text fields are omitted from the JSON while unset, so ``from_dict(to_dict(t))``
keeps the difference between an absent field and an empty one.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from ..errors import ValidationError

UUID_V4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @classmethod
    def parse(cls, raw: Any) -> "TaskStatus":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown task status {raw!r}",
                field="status",
                current=raw,
                expected=[s.value for s in cls],
            ) from None


class RelatedFileType(str, Enum):
    TO_MODIFY = "TO_MODIFY"
    REFERENCE = "REFERENCE"
    CREATE = "CREATE"
    DEPENDENCY = "DEPENDENCY"
    OTHER = "OTHER"


class UpdateMode(str, Enum):
    """How a task batch combines with the tasks already stored."""

    APPEND = "append"
    OVERWRITE = "overwrite"
    SELECTIVE = "selective"
    CLEAR_ALL_TASKS = "clearAllTasks"

    @classmethod
    def parse(cls, raw: Any) -> "UpdateMode":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw))
        except ValueError:
            raise ValidationError(
                f"Unknown update mode {raw!r}",
                field="mode",
                current=raw,
                expected=[m.value for m in cls],
            ) from None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _generate_id() -> str:
    return str(uuid.uuid4())


def is_task_id(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_V4_RE.match(value))


def require_task_id(value: Any) -> str:
    if not is_task_id(value):
        raise ValidationError(
            f"Invalid task id {value!r}",
            field="taskId",
            current=value,
            expected="UUID v4 (8-4-4-4-12 hex digits)",
            hint="List the project's tasks to find valid ids",
        )
    return str(value).lower()


# ---------------------------------------------------------------------------
# Related files
# ---------------------------------------------------------------------------

@dataclass
class RelatedFile:
    path: str
    type: RelatedFileType
    description: str = ""
    line_start: Optional[int] = None
    line_end: Optional[int] = None

    def validate(self) -> None:
        if not self.path:
            raise ValidationError("Related file path must not be empty", field="relatedFiles.path")
        if (self.line_start is None) != (self.line_end is None):
            raise ValidationError(
                f"Related file {self.path!r} must set lineStart and lineEnd together",
                field="relatedFiles.lineStart",
                current={"lineStart": self.line_start, "lineEnd": self.line_end},
            )
        if self.line_start is not None and self.line_end is not None:
            if self.line_start < 1 or self.line_start > self.line_end:
                raise ValidationError(
                    f"Related file {self.path!r} has an invalid line range",
                    field="relatedFiles.lineStart",
                    current={"lineStart": self.line_start, "lineEnd": self.line_end},
                    expected="1 <= lineStart <= lineEnd",
                )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "path": self.path,
            "type": self.type.value,
            "description": self.description,
        }
        if self.line_start is not None:
            data["lineStart"] = self.line_start
        if self.line_end is not None:
            data["lineEnd"] = self.line_end
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelatedFile":
        raw_type = data.get("type", RelatedFileType.OTHER.value)
        try:
            file_type = RelatedFileType(str(raw_type))
        except ValueError:
            raise ValidationError(
                f"Unknown related file type {raw_type!r}",
                field="relatedFiles.type",
                current=raw_type,
                expected=[t.value for t in RelatedFileType],
            ) from None
        return cls(
            path=str(data.get("path", "")),
            type=file_type,
            description=str(data.get("description", "") or ""),
            line_start=data.get("lineStart"),
            line_end=data.get("lineEnd"),
        )


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

# Optional free-text fields: python attribute -> JSON key.
_OPTIONAL_TEXT_FIELDS = {
    "implementation_guide": "implementationGuide",
    "verification_criteria": "verificationCriteria",
    "notes": "notes",
    "summary": "summary",
    "analysis_result": "analysisResult",
    "agent": "agent",
    "completed_at": "completedAt",
}


@dataclass
class Task:
    """One unit of trackable work owned by a single project's store."""

    id: str = field(default_factory=_generate_id)
    name: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    related_files: list[RelatedFile] = field(default_factory=list)
    implementation_guide: Optional[str] = None
    verification_criteria: Optional[str] = None
    notes: Optional[str] = None
    summary: Optional[str] = None
    analysis_result: Optional[str] = None
    agent: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    completed_at: Optional[str] = None

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "dependencies": [{"taskId": dep} for dep in self.dependencies],
            "relatedFiles": [f.to_dict() for f in self.related_files],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        for attr, key in _OPTIONAL_TEXT_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        d = dict(data)
        dependencies: list[str] = []
        for dep in d.get("dependencies") or []:
            dep_id = dep.get("taskId") if isinstance(dep, dict) else dep
            if dep_id and dep_id not in dependencies:
                dependencies.append(str(dep_id))
        task = cls(
            id=str(d.get("id") or _generate_id()),
            name=str(d.get("name", "")),
            description=str(d.get("description", "") or ""),
            status=TaskStatus.parse(d.get("status", TaskStatus.PENDING.value)),
            dependencies=dependencies,
            related_files=[RelatedFile.from_dict(f) for f in d.get("relatedFiles") or []],
            created_at=str(d.get("createdAt") or _now_iso()),
            updated_at=str(d.get("updatedAt") or _now_iso()),
        )
        for attr, key in _OPTIONAL_TEXT_FIELDS.items():
            if d.get(key) is not None:
                setattr(task, attr, str(d[key]))
        return task

    # ------------------------------------------------------------------
    # Status helpers
    # ------------------------------------------------------------------

    def touch(self) -> None:
        self.updated_at = _now_iso()

    def transition(self, new_status: TaskStatus) -> None:
        self.status = new_status
        if new_status == TaskStatus.COMPLETED:
            self.completed_at = _now_iso()
        self.touch()

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass
class TaskInput:
    """A task as submitted in a batch, before ids are assigned.

    ``dependencies`` may mix task ids and task names; they are normalized to
    ids when the batch is persisted.
    """

    name: str
    description: str = ""
    implementation_guide: Optional[str] = None
    verification_criteria: Optional[str] = None
    notes: Optional[str] = None
    dependencies: list[str] = field(default_factory=list)
    related_files: list[RelatedFile] = field(default_factory=list)
    agent: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskInput":
        return cls(
            name=str(data.get("name", "")),
            description=str(data.get("description", "") or ""),
            implementation_guide=data.get("implementationGuide"),
            verification_criteria=data.get("verificationCriteria"),
            notes=data.get("notes"),
            dependencies=[str(d) for d in data.get("dependencies") or []],
            related_files=[RelatedFile.from_dict(f) for f in data.get("relatedFiles") or []],
            agent=data.get("agent"),
        )

    def validate(self, max_name_length: int) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError("Task name must not be empty", field="name", current=self.name)
        if len(self.name) > max_name_length:
            raise ValidationError(
                f"Task name {self.name[:40]!r}... is too long",
                field="name",
                current=len(self.name),
                expected=f"<= {max_name_length} characters",
            )
        for related in self.related_files:
            related.validate()
