"""Workflow template registry: named tool sequences a task's workflow can follow.

A *WorkflowTemplate* is the ordered list of tool calls an agent is expected
to make for a task. Templates are plain data; the engine turns one into a
live :class:`~agent_taskboard.workflows.engine.Workflow`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from ..errors import NotFoundError, ValidationError


# ---------------------------------------------------------------------------
# Template
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WorkflowTemplate:
    """Immutable, named sequence of tools."""
    id: str
    display_name: str
    description: str
    tools: tuple[str, ...]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "description": self.description,
            "tools": list(self.tools),
        }


# ---------------------------------------------------------------------------
# Built-in templates
# ---------------------------------------------------------------------------

TASK_LIFECYCLE = WorkflowTemplate(
    id="task_lifecycle",
    display_name="Task Lifecycle",
    description="Execute a task, then verify it.",
    tools=("execute_task", "verify_task"),
)

PLANNING = WorkflowTemplate(
    id="planning",
    display_name="Planning",
    description="Plan, analyze and reflect, then split the work into tasks.",
    tools=("plan_task", "analyze_task", "reflect_task", "split_tasks"),
)

REVIEWED_EXECUTION = WorkflowTemplate(
    id="reviewed_execution",
    display_name="Reviewed Execution",
    description="Verify a task, review and clean up the change, then continue execution.",
    tools=("verify_task", "code_review_and_cleanup_tool", "execute_task"),
)

BUILTIN_TEMPLATES: dict[str, WorkflowTemplate] = {
    t.id: t for t in [TASK_LIFECYCLE, PLANNING, REVIEWED_EXECUTION]
}


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class WorkflowRegistry:
    """Holds the built-in templates plus any registered at runtime."""

    def __init__(self) -> None:
        self._templates: dict[str, WorkflowTemplate] = dict(BUILTIN_TEMPLATES)

    def get(self, template_id: str) -> WorkflowTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(
                "Workflow template",
                template_id,
                hint=f"Known templates: {sorted(self._templates)}",
            )
        return template

    def find(self, template_id: str) -> Optional[WorkflowTemplate]:
        return self._templates.get(template_id)

    def register(self, template: WorkflowTemplate, *, replace: bool = False) -> None:
        if not template.tools:
            raise ValidationError(
                f"Template {template.id!r} has no tools",
                field="tools",
                expected="at least one tool",
            )
        if template.id in self._templates and not replace:
            raise ValidationError(
                f"Template {template.id!r} is already registered",
                field="id",
                current=template.id,
            )
        self._templates[template.id] = template
        logger.debug("Registered workflow template {} ({} tools)", template.id, len(template.tools))

    def list_templates(self) -> list[WorkflowTemplate]:
        return list(self._templates.values())
