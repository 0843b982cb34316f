"""Provide the public `agent_taskboard` package exports."""

from __future__ import annotations

from .config import Settings, load_settings
from .projects import ProjectResolver, ProjectSession
from .task_engine import TaskEngine
from .workflows import WorkflowManager

__version__ = "0.3.0"

__all__ = [
    "ProjectResolver",
    "ProjectSession",
    "Settings",
    "TaskEngine",
    "WorkflowManager",
    "__version__",
    "load_settings",
]
