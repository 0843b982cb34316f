"""Workflow tracking for multi-step tool sequences."""

from .engine import (
    Continuation,
    StateTransfer,
    Workflow,
    WorkflowManager,
    WorkflowMonitoring,
    WorkflowStatus,
    WorkflowStep,
    WorkflowSweeper,
)
from .registry import WorkflowRegistry, WorkflowTemplate

__all__ = [
    "Continuation",
    "StateTransfer",
    "Workflow",
    "WorkflowManager",
    "WorkflowMonitoring",
    "WorkflowRegistry",
    "WorkflowStatus",
    "WorkflowStep",
    "WorkflowSweeper",
    "WorkflowTemplate",
]
