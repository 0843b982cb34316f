"""Project resolution and per-call project binding."""

from __future__ import annotations

from .roots import MappingRootsProvider, RootsProvider, StaticRootsProvider
from .session import (
    ProjectContext,
    ProjectResolver,
    ProjectSession,
    add_project_metadata,
    auto_detect_project,
    sanitize_project_name,
    validate_project_context,
)

__all__ = [
    "MappingRootsProvider",
    "ProjectContext",
    "ProjectResolver",
    "ProjectSession",
    "RootsProvider",
    "StaticRootsProvider",
    "add_project_metadata",
    "auto_detect_project",
    "sanitize_project_name",
    "validate_project_context",
]
