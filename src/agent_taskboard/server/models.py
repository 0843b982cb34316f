"""Pydantic request and response models for the taskboard API."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from ..task_engine.model import RelatedFile, RelatedFileType, TaskInput


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class RelatedFileModel(BaseModel):
    path: str
    type: RelatedFileType = RelatedFileType.OTHER
    description: str = ""
    line_start: Optional[int] = None
    line_end: Optional[int] = None

    def to_related_file(self) -> RelatedFile:
        return RelatedFile(
            path=self.path,
            type=self.type,
            description=self.description,
            line_start=self.line_start,
            line_end=self.line_end,
        )


class TaskSpecRequest(BaseModel):
    name: str
    description: str = ""
    implementation_guide: Optional[str] = None
    verification_criteria: Optional[str] = None
    notes: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    related_files: list[RelatedFileModel] = Field(default_factory=list)
    agent: Optional[str] = None

    def to_input(self) -> TaskInput:
        return TaskInput(
            name=self.name,
            description=self.description,
            implementation_guide=self.implementation_guide,
            verification_criteria=self.verification_criteria,
            notes=self.notes,
            dependencies=list(self.dependencies),
            related_files=[f.to_related_file() for f in self.related_files],
            agent=self.agent,
        )


class BatchRequest(BaseModel):
    tasks: list[TaskSpecRequest] = Field(default_factory=list)
    mode: str = "append"
    global_analysis_result: Optional[str] = None


class UpdateContentRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    notes: Optional[str] = None
    implementation_guide: Optional[str] = None
    verification_criteria: Optional[str] = None
    related_files: Optional[list[RelatedFileModel]] = None
    dependencies: Optional[list[str]] = None


class StatusRequest(BaseModel):
    status: str


class SummaryRequest(BaseModel):
    summary: str


class VerifyRequest(BaseModel):
    score: int
    summary: str


class TaskResponse(BaseModel):
    """Standard wrapper for task responses."""
    task: dict[str, Any]


class TaskListResponse(BaseModel):
    tasks: list[dict[str, Any]]
    total: int


class QueryResponse(BaseModel):
    tasks: list[dict[str, Any]]
    page: int
    page_size: int
    total: int
    total_pages: int


class CanExecuteResponse(BaseModel):
    can_execute: bool
    blocked_by: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

class ValidateContentRequest(BaseModel):
    content: str = ""


class ProjectListResponse(BaseModel):
    projects: list[str]
    stats: dict[str, Any]


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------

class CreateWorkflowRequest(BaseModel):
    task_id: str
    tools: list[str] = Field(default_factory=list)
    template: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    supersede: bool = False


class StepUpdateRequest(BaseModel):
    status: str
    output: Optional[Any] = None
    error: Optional[str] = None


class StateTransferRequest(BaseModel):
    source_tool: str
    target_tool: str
    data: Any = None


class CleanupRequest(BaseModel):
    max_age_ms: Optional[float] = None


class WorkflowResponse(BaseModel):
    workflow: dict[str, Any]
