"""Workflow engine: in-memory tracking of a task's ordered tool sequence.

A workflow records which tool an agent must call next for a task. Steps
advance strictly left to right. A failed step pauses the workflow instead of
ending it, so the same step can be retried once the problem is fixed.

Workflows are not persisted; a :class:`WorkflowManager` instance owns its
registry, and every update to one workflow runs under that workflow's lock.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Sequence, Union

from loguru import logger

from ..errors import NotFoundError, ValidationError
from ..logging_utils import pretty
from ..projects.session import require_project_name
from ..task_engine.model import require_task_id
from .registry import WorkflowRegistry

Clock = Callable[[], float]


def _now_ms() -> float:
    return time.time() * 1000.0


def _iso(ms: Optional[float]) -> Optional[str]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Workflow state
# ---------------------------------------------------------------------------

class WorkflowStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"

    @classmethod
    def parse(cls, raw: Any) -> "WorkflowStatus":
        if isinstance(raw, cls):
            return raw
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown workflow status {raw!r}",
                field="status",
                current=raw,
                expected=[s.value for s in cls],
            ) from None


TERMINAL_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.FAILED})


@dataclass
class WorkflowStep:
    """One tool call in a workflow."""
    tool: str
    status: WorkflowStatus = WorkflowStatus.PENDING
    input: Optional[Any] = None
    output: Optional[Any] = None
    error: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"tool": self.tool, "status": self.status.value}
        for key, value in (
            ("input", self.input),
            ("output", self.output),
            ("error", self.error),
            ("startTime", _iso(self.start_time)),
            ("endTime", _iso(self.end_time)),
        ):
            if value is not None:
                data[key] = value
        return data


@dataclass
class Workflow:
    """Full tracking state for one task's tool sequence."""
    workflow_id: str
    task_id: str
    project: str
    steps: list[WorkflowStep] = field(default_factory=list)
    current_step: int = 0
    status: WorkflowStatus = WorkflowStatus.PENDING
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_STATUSES

    @property
    def progress(self) -> float:
        if not self.steps:
            return 0.0
        done = sum(1 for s in self.steps if s.status == WorkflowStatus.COMPLETED)
        return done / len(self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflowId": self.workflow_id,
            "taskId": self.task_id,
            "project": self.project,
            "steps": [s.to_dict() for s in self.steps],
            "currentStep": self.current_step,
            "status": self.status.value,
            "progress": round(self.progress, 3),
            "metadata": dict(self.metadata),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass
class Continuation:
    """What the agent should call next, or why it cannot proceed."""
    should_proceed: bool
    next_tool: Optional[str] = None
    next_tool_params: Optional[dict[str, Any]] = None
    reason: Optional[str] = None
    fallback_action: Optional[str] = None
    conditions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"shouldProceed": self.should_proceed}
        if self.next_tool is not None:
            data["nextTool"] = self.next_tool
        if self.next_tool_params is not None:
            data["nextToolParams"] = self.next_tool_params
        if self.reason is not None:
            data["reason"] = self.reason
        if self.fallback_action is not None:
            data["fallbackAction"] = self.fallback_action
        if self.conditions:
            data["conditions"] = list(self.conditions)
        return data


@dataclass
class StateTransfer:
    """Audit record of data handed from one tool to the next."""
    source_tool: str
    target_tool: str
    data: Any
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceTool": self.source_tool,
            "targetTool": self.target_tool,
            "data": self.data,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class WorkflowMonitoring:
    total_steps: int
    completed_steps: int
    failed_steps: int
    error_rate: float
    average_step_duration: float
    total_duration: float
    last_activity: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalSteps": self.total_steps,
            "completedSteps": self.completed_steps,
            "failedSteps": self.failed_steps,
            "errorRate": round(self.error_rate, 4),
            "averageStepDuration": round(self.average_step_duration, 3),
            "totalDuration": round(self.total_duration, 3),
            "lastActivity": _iso(self.last_activity),
        }


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class WorkflowManager:
    """Owns a registry of workflows keyed by id.

    Parameters
    ----------
    templates:
        Named tool sequences for :meth:`create_workflow_from_template`.
    clock:
        Returns the current time in epoch milliseconds.
    """

    def __init__(self, templates: Optional[WorkflowRegistry] = None, clock: Optional[Clock] = None) -> None:
        self.templates = templates or WorkflowRegistry()
        self._clock = clock or _now_ms
        self._workflows: dict[str, Workflow] = {}
        self._transfers: dict[str, list[StateTransfer]] = {}
        self._guard = threading.Lock()
        self._create_lock = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    # -- internal helpers ---------------------------------------------------

    def _lock_for(self, workflow_id: str) -> Optional[threading.Lock]:
        with self._guard:
            return self._locks.get(workflow_id)

    def _require(self, workflow_id: str) -> Workflow:
        with self._guard:
            workflow = self._workflows.get(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        return workflow

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_workflow(
        self,
        task_id: str,
        project: str,
        tools: Sequence[str],
        metadata: Optional[dict[str, Any]] = None,
        supersede: bool = False,
    ) -> Workflow:
        """Create a workflow whose first step is already in progress.

        At most one active workflow may exist per task. A second one is
        rejected unless *supersede* is set, which fails the older workflow.
        """
        task_id = require_task_id(task_id)
        project = require_project_name(project)
        tools = [str(t).strip() for t in tools]
        if not tools or not all(tools):
            raise ValidationError(
                "A workflow needs at least one non-empty tool name",
                field="tools",
                current=list(tools),
            )

        now = self._clock()
        workflow = Workflow(
            workflow_id=str(uuid.uuid4()),
            task_id=task_id,
            project=project,
            steps=[WorkflowStep(tool=t) for t in tools],
            status=WorkflowStatus.IN_PROGRESS,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        workflow.steps[0].status = WorkflowStatus.IN_PROGRESS
        workflow.steps[0].start_time = now

        # Lock order: creation lock, then per-workflow lock, then registry guard.
        with self._create_lock:
            active = [w for w in self.get_active_workflows() if w.task_id == task_id]
            if active and not supersede:
                raise ValidationError(
                    f"Task {task_id} already has an active workflow {active[0].workflow_id}",
                    field="taskId",
                    current=active[0].workflow_id,
                    hint="Continue the existing workflow or pass supersede=True",
                )
            for old in active:
                old_lock = self._lock_for(old.workflow_id)
                if old_lock is None:
                    continue
                with old_lock:
                    old.status = WorkflowStatus.FAILED
                    old.metadata["supersededBy"] = workflow.workflow_id
                    old.updated_at = now
                logger.info("Workflow {} superseded by {}", old.workflow_id, workflow.workflow_id)
            with self._guard:
                self._workflows[workflow.workflow_id] = workflow
                self._transfers[workflow.workflow_id] = []
                self._locks[workflow.workflow_id] = threading.Lock()

        logger.info(
            "Created workflow {} for task {} in {}: {}",
            workflow.workflow_id,
            task_id,
            project,
            " -> ".join(tools),
        )
        return workflow

    def create_workflow_from_template(
        self,
        task_id: str,
        project: str,
        template_id: str,
        metadata: Optional[dict[str, Any]] = None,
        supersede: bool = False,
    ) -> Workflow:
        template = self.templates.get(template_id)
        merged = {"template": template.id, **(metadata or {})}
        return self.create_workflow(task_id, project, template.tools, metadata=merged, supersede=supersede)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        with self._guard:
            return self._workflows.get(workflow_id)

    def find_workflow_by_task_id(self, task_id: str) -> Optional[Workflow]:
        """The task's active workflow, else its most recently created one."""
        task_id = require_task_id(task_id)
        with self._guard:
            candidates = [w for w in self._workflows.values() if w.task_id == task_id]
        if not candidates:
            return None
        active = [w for w in candidates if w.is_active]
        if active:
            return active[-1]
        return max(enumerate(candidates), key=lambda pair: (pair[1].created_at, pair[0]))[1]

    def get_active_workflows(self) -> list[Workflow]:
        with self._guard:
            return [w for w in self._workflows.values() if w.is_active]

    # ------------------------------------------------------------------
    # Step transitions
    # ------------------------------------------------------------------

    def update_step_status(
        self,
        workflow_id: str,
        step_index: int,
        status: Union[str, WorkflowStatus],
        output: Optional[Any] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Apply one step transition. Returns ``False`` when it is not allowed.

        Failures are recorded, not raised: a ``FAILED`` step pauses the
        workflow and its error is reported by :meth:`generate_continuation`.
        """
        lock = self._lock_for(workflow_id)
        if lock is None:
            return False
        target = WorkflowStatus.parse(status)
        with lock:
            workflow = self.get_workflow(workflow_id)
            if workflow is None or not 0 <= step_index < len(workflow.steps):
                return False
            if not workflow.is_active or step_index != workflow.current_step:
                return False
            step = workflow.steps[step_index]
            now = self._clock()

            if target == WorkflowStatus.IN_PROGRESS:
                if step.status not in (WorkflowStatus.IN_PROGRESS, WorkflowStatus.FAILED):
                    return False
                step.status = WorkflowStatus.IN_PROGRESS
                step.error = None
                step.end_time = None
                step.start_time = now
                workflow.status = WorkflowStatus.IN_PROGRESS
            elif target == WorkflowStatus.COMPLETED:
                if step.status not in (WorkflowStatus.IN_PROGRESS, WorkflowStatus.FAILED):
                    return False
                step.status = WorkflowStatus.COMPLETED
                step.output = output
                step.error = None
                step.end_time = now
                workflow.current_step += 1
                if workflow.current_step < len(workflow.steps):
                    nxt = workflow.steps[workflow.current_step]
                    nxt.status = WorkflowStatus.IN_PROGRESS
                    nxt.start_time = now
                    workflow.status = WorkflowStatus.IN_PROGRESS
                else:
                    workflow.status = WorkflowStatus.COMPLETED
            elif target == WorkflowStatus.FAILED:
                if step.status != WorkflowStatus.IN_PROGRESS:
                    return False
                step.status = WorkflowStatus.FAILED
                step.error = error or "unspecified failure"
                step.output = output
                step.end_time = now
                workflow.status = WorkflowStatus.PAUSED
                logger.warning(
                    "Workflow {} paused: step {} ({}) failed: {}",
                    workflow_id,
                    step_index,
                    step.tool,
                    step.error,
                )
            else:
                return False
            workflow.updated_at = now

        logger.debug("Workflow {} step {} -> {}", workflow_id, step_index, target.value)
        return True

    def generate_continuation(self, workflow_id: str) -> Continuation:
        """Recommend the next tool once the previous step has completed."""
        workflow = self.get_workflow(workflow_id)
        if workflow is None:
            return Continuation(
                should_proceed=False,
                reason="Workflow not found",
                fallback_action="Create a new workflow for the task",
            )
        if workflow.status == WorkflowStatus.COMPLETED:
            return Continuation(
                should_proceed=False,
                reason="Workflow completed",
                fallback_action="Start a new workflow if more work is needed",
            )
        if workflow.status == WorkflowStatus.FAILED:
            reason = "Workflow failed"
            if "supersededBy" in workflow.metadata:
                reason = f"Workflow superseded by {workflow.metadata['supersededBy']}"
            return Continuation(
                should_proceed=False,
                reason=reason,
                fallback_action="Continue with the task's active workflow",
            )

        step = workflow.steps[workflow.current_step]
        if step.status == WorkflowStatus.FAILED:
            return Continuation(
                should_proceed=False,
                reason=f"Step {workflow.current_step} ({step.tool}) failed: {step.error}",
                fallback_action=f"Fix the issue and retry {step.tool}",
            )
        if workflow.current_step == 0:
            return Continuation(
                should_proceed=False,
                reason=f"Waiting for the first step ({step.tool}) to complete",
                fallback_action=f"Call {step.tool}",
            )

        previous = workflow.steps[workflow.current_step - 1]
        return Continuation(
            should_proceed=previous.status == WorkflowStatus.COMPLETED,
            next_tool=step.tool,
            next_tool_params={
                "taskId": workflow.task_id,
                "project": workflow.project,
                "workflowId": workflow.workflow_id,
            },
            reason=f"Step {previous.tool} completed; proceed to {step.tool}",
            conditions=[f"{previous.tool} must be completed"],
        )

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def record_state_transfer(self, workflow_id: str, source_tool: str, target_tool: str, data: Any) -> StateTransfer:
        self._require(workflow_id)
        transfer = StateTransfer(source_tool, target_tool, data, self._clock())
        with self._guard:
            self._transfers.setdefault(workflow_id, []).append(transfer)
        logger.debug("Workflow {} transfer {} -> {}: {}", workflow_id, source_tool, target_tool, pretty(data))
        return transfer

    def get_state_transfer_history(self, workflow_id: str) -> list[StateTransfer]:
        with self._guard:
            return list(self._transfers.get(workflow_id, []))

    # ------------------------------------------------------------------
    # Expiry and monitoring
    # ------------------------------------------------------------------

    def cleanup_expired_workflows(self, max_age_ms: float) -> int:
        """Evict terminal workflows whose last update is at least *max_age_ms* old."""
        if max_age_ms < 0:
            raise ValidationError("maxAgeMs must be >= 0", field="maxAgeMs", current=max_age_ms)
        now = self._clock()
        with self._guard:
            expired = [
                wid
                for wid, w in self._workflows.items()
                if not w.is_active and now - w.updated_at >= max_age_ms
            ]
            for wid in expired:
                del self._workflows[wid]
                self._transfers.pop(wid, None)
                self._locks.pop(wid, None)
        if expired:
            logger.info("Removed {} expired workflow(s)", len(expired))
        return len(expired)

    def get_monitoring_data(self, workflow_id: str) -> WorkflowMonitoring:
        workflow = self._require(workflow_id)
        total = len(workflow.steps)
        completed = sum(1 for s in workflow.steps if s.status == WorkflowStatus.COMPLETED)
        failed = sum(1 for s in workflow.steps if s.status == WorkflowStatus.FAILED)
        durations = [s.duration_ms for s in workflow.steps if s.duration_ms is not None]
        end = workflow.updated_at if not workflow.is_active else self._clock()
        return WorkflowMonitoring(
            total_steps=total,
            completed_steps=completed,
            failed_steps=failed,
            error_rate=failed / total if total else 0.0,
            average_step_duration=sum(durations) / len(durations) if durations else 0.0,
            total_duration=end - workflow.created_at,
            last_activity=workflow.updated_at,
        )


# ---------------------------------------------------------------------------
# Periodic expiry
# ---------------------------------------------------------------------------

class WorkflowSweeper:
    """Background thread that calls :meth:`WorkflowManager.cleanup_expired_workflows`."""

    def __init__(self, manager: WorkflowManager, interval_seconds: float, max_age_ms: float) -> None:
        self.manager = manager
        self.interval_seconds = interval_seconds
        self.max_age_ms = max_age_ms
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.interval_seconds <= 0 or self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._loop, daemon=True, name="workflow-sweeper")
            self._thread.start()
        logger.info("Workflow sweeper running every {}s", self.interval_seconds)

    def shutdown(self, *, timeout: float = 5.0) -> None:
        with self._lock:
            self._stop.set()
            thread = self._thread
        if thread and thread.is_alive():
            thread.join(timeout=max(timeout, 0.0))
        self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.manager.cleanup_expired_workflows(self.max_age_ms)
            except Exception:
                logger.exception("Workflow sweep failed")
