"""FastAPI application exposing the task store and workflow engine.

Every task route carries the project in its path and runs inside a
per-request project binding. Endpoints are plain ``def`` functions: FastAPI
runs them on its worker threads, each with its own copy of the request
context, so concurrent requests for different projects never see each
other's binding.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from loguru import logger

from ..config import Settings, load_settings
from ..errors import (
    LockContentionError,
    NotFoundError,
    StoreIOError,
    TaskboardError,
    ValidationError,
)
from ..logging_utils import configure_logging
from ..projects.roots import RootsProvider
from ..projects.session import (
    ProjectResolver,
    ProjectSession,
    auto_detect_project,
    validate_project_context,
)
from ..task_engine.engine import TaskEngine
from ..workflows.engine import Workflow, WorkflowManager, WorkflowSweeper
from .models import (
    BatchRequest,
    CanExecuteResponse,
    CleanupRequest,
    CreateWorkflowRequest,
    ProjectListResponse,
    QueryResponse,
    StateTransferRequest,
    StatusRequest,
    StepUpdateRequest,
    SummaryRequest,
    TaskListResponse,
    TaskResponse,
    UpdateContentRequest,
    ValidateContentRequest,
    VerifyRequest,
    WorkflowResponse,
)

_STATUS_CODES: dict[type[TaskboardError], int] = {
    NotFoundError: 404,
    ValidationError: 422,
    LockContentionError: 409,
    StoreIOError: 500,
}


def status_code_for(exc: TaskboardError) -> int:
    for exc_type, code in _STATUS_CODES.items():
        if isinstance(exc, exc_type):
            return code
    return 500


def create_app(
    settings: Optional[Settings] = None,
    roots_provider: Optional[RootsProvider] = None,
    workflow_manager: Optional[WorkflowManager] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Process settings; loaded from file and environment when omitted.
        roots_provider: Supplies client-declared roots per project.
        workflow_manager: Workflow registry to serve; a fresh one by default.

    Returns:
        Configured FastAPI app.
    """
    settings = settings or load_settings()
    session = ProjectSession(ProjectResolver(roots_provider, settings))
    engine = TaskEngine(session)
    workflows = workflow_manager or WorkflowManager()
    sweeper = WorkflowSweeper(
        workflows,
        interval_seconds=settings.workflow_sweep_interval_seconds,
        max_age_ms=settings.workflow_max_age_ms,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level, settings.log_file)
        sweeper.start()
        try:
            yield
        finally:
            sweeper.shutdown()

    app = FastAPI(
        title="Agent Taskboard",
        description="Project-isolated task store and workflow tracking for agent sessions",
        version="0.3.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session = session
    app.state.engine = engine
    app.state.workflows = workflows
    app.state.sweeper = sweeper

    @app.exception_handler(TaskboardError)
    async def taskboard_error_handler(request: Request, exc: TaskboardError) -> JSONResponse:
        status = status_code_for(exc)
        if status >= 500:
            logger.error("{} {} failed: {}", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content=exc.to_dict())

    def _workflow(workflow_id: str) -> Workflow:
        workflow = workflows.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow", workflow_id)
        return workflow

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    @app.get("/api/projects", response_model=ProjectListResponse)
    def list_projects() -> ProjectListResponse:
        return ProjectListResponse(projects=session.resolver.list_projects(), stats=session.stats())

    @app.get("/api/projects/{project}/context")
    def get_project_context(project: str) -> dict[str, Any]:
        with session.bind(project) as context:
            return context.to_dict()

    @app.post("/api/projects/{project}/validate")
    def validate_content(project: str, body: ValidateContentRequest) -> dict[str, Any]:
        with session.bind(project) as context:
            validation = validate_project_context(context.project_name, body.content)
            if not validation.is_valid:
                logger.warning("Content for {} carries marker {!r}", project, validation.detected_project)
            return {
                "validation": validation.to_dict(),
                "detection": auto_detect_project(body.content).to_dict(),
            }

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @app.get("/api/projects/{project}/tasks", response_model=TaskListResponse)
    def list_tasks(project: str, status: Optional[str] = Query(None)) -> TaskListResponse:
        with session.bind(project):
            tasks = engine.list_tasks(project, status=status)
        return TaskListResponse(tasks=[t.to_dict() for t in tasks], total=len(tasks))

    @app.post("/api/projects/{project}/tasks/batch", status_code=201)
    def batch_tasks(project: str, body: BatchRequest) -> dict[str, Any]:
        with session.bind(project):
            result = engine.batch_create_or_update_tasks(
                [spec.to_input() for spec in body.tasks],
                body.mode,
                project,
                global_analysis_result=body.global_analysis_result,
            )
        return result.to_dict()

    @app.get("/api/projects/{project}/tasks/query", response_model=QueryResponse)
    def query_tasks(
        project: str,
        query: str = Query(...),
        is_id: bool = Query(False),
        page: int = Query(1),
        page_size: int = Query(5),
    ) -> QueryResponse:
        with session.bind(project):
            found = engine.query_tasks(project, query, is_id=is_id, page=page, page_size=page_size)
        return QueryResponse(
            tasks=[t.to_dict() for t in found["tasks"]],
            page=found["page"],
            page_size=found["pageSize"],
            total=found["total"],
            total_pages=found["totalPages"],
        )

    @app.get("/api/projects/{project}/tasks/backups")
    def list_backups(project: str) -> dict[str, Any]:
        with session.bind(project):
            backups = engine.list_backups(project)
        return {"backups": [str(p) for p in backups]}

    @app.post("/api/projects/{project}/tasks/clear")
    def clear_tasks(project: str) -> dict[str, Any]:
        with session.bind(project):
            return engine.clear_all_tasks(project)

    @app.get("/api/projects/{project}/tasks/{task_id}", response_model=TaskResponse)
    def get_task(project: str, task_id: str) -> TaskResponse:
        with session.bind(project):
            task = engine.get_task_by_id(task_id, project)
        return TaskResponse(task=task.to_dict())

    @app.patch("/api/projects/{project}/tasks/{task_id}", response_model=TaskResponse)
    def update_task_content(project: str, task_id: str, body: UpdateContentRequest) -> TaskResponse:
        related = None
        if body.related_files is not None:
            related = [f.to_related_file() for f in body.related_files]
        with session.bind(project):
            task = engine.update_task_content(
                task_id,
                project,
                name=body.name,
                description=body.description,
                notes=body.notes,
                implementation_guide=body.implementation_guide,
                verification_criteria=body.verification_criteria,
                related_files=related,
                dependencies=body.dependencies,
            )
        return TaskResponse(task=task.to_dict())

    @app.delete("/api/projects/{project}/tasks/{task_id}", response_model=TaskResponse)
    def delete_task(project: str, task_id: str) -> TaskResponse:
        with session.bind(project):
            task = engine.delete_task(task_id, project)
        return TaskResponse(task=task.to_dict())

    @app.post("/api/projects/{project}/tasks/{task_id}/status", response_model=TaskResponse)
    def update_status(project: str, task_id: str, body: StatusRequest) -> TaskResponse:
        with session.bind(project):
            task = engine.update_task_status(task_id, body.status, project)
        return TaskResponse(task=task.to_dict())

    @app.post("/api/projects/{project}/tasks/{task_id}/summary", response_model=TaskResponse)
    def update_summary(project: str, task_id: str, body: SummaryRequest) -> TaskResponse:
        with session.bind(project):
            task = engine.update_task_summary(task_id, body.summary, project)
        return TaskResponse(task=task.to_dict())

    @app.get("/api/projects/{project}/tasks/{task_id}/can-execute", response_model=CanExecuteResponse)
    def can_execute(project: str, task_id: str) -> CanExecuteResponse:
        with session.bind(project):
            ok, blocked_by = engine.can_execute_task(task_id, project)
        return CanExecuteResponse(can_execute=ok, blocked_by=blocked_by)

    @app.post("/api/projects/{project}/tasks/{task_id}/start", response_model=TaskResponse)
    def start_task(project: str, task_id: str) -> TaskResponse:
        with session.bind(project):
            task = engine.start_task(task_id, project)
        return TaskResponse(task=task.to_dict())

    @app.post("/api/projects/{project}/tasks/{task_id}/verify")
    def verify_task(project: str, task_id: str, body: VerifyRequest) -> dict[str, Any]:
        with session.bind(project):
            result = engine.verify_task(task_id, body.score, body.summary, project)
        return result.to_dict()

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    @app.post("/api/projects/{project}/workflows", response_model=WorkflowResponse, status_code=201)
    def create_workflow(project: str, body: CreateWorkflowRequest) -> WorkflowResponse:
        with session.bind(project) as context:
            if body.template:
                workflow = workflows.create_workflow_from_template(
                    body.task_id,
                    context.project_name,
                    body.template,
                    metadata=body.metadata,
                    supersede=body.supersede,
                )
            else:
                workflow = workflows.create_workflow(
                    body.task_id,
                    context.project_name,
                    body.tools,
                    metadata=body.metadata,
                    supersede=body.supersede,
                )
        return WorkflowResponse(workflow=workflow.to_dict())

    @app.get("/api/projects/{project}/workflows")
    def list_workflows(project: str, task_id: Optional[str] = Query(None)) -> dict[str, Any]:
        with session.bind(project) as context:
            if task_id:
                found = workflows.find_workflow_by_task_id(task_id)
                items = [found] if found is not None and found.project == context.project_name else []
            else:
                items = [w for w in workflows.get_active_workflows() if w.project == context.project_name]
        return {"workflows": [w.to_dict() for w in items]}

    @app.post("/api/workflows/cleanup")
    def cleanup_workflows(body: CleanupRequest) -> dict[str, Any]:
        max_age = settings.workflow_max_age_ms if body.max_age_ms is None else body.max_age_ms
        return {"removed": workflows.cleanup_expired_workflows(max_age)}

    @app.get("/api/workflows/{workflow_id}", response_model=WorkflowResponse)
    def get_workflow(workflow_id: str) -> WorkflowResponse:
        return WorkflowResponse(workflow=_workflow(workflow_id).to_dict())

    @app.post("/api/workflows/{workflow_id}/steps/{step_index}")
    def update_step(workflow_id: str, step_index: int, body: StepUpdateRequest) -> dict[str, Any]:
        workflow = _workflow(workflow_id)
        with session.bind(workflow.project):
            updated = workflows.update_step_status(
                workflow_id, step_index, body.status, output=body.output, error=body.error
            )
        return {"updated": updated, "workflow": workflow.to_dict()}

    @app.get("/api/workflows/{workflow_id}/continuation")
    def get_continuation(workflow_id: str) -> dict[str, Any]:
        return workflows.generate_continuation(workflow_id).to_dict()

    @app.get("/api/workflows/{workflow_id}/monitoring")
    def get_monitoring(workflow_id: str) -> dict[str, Any]:
        return workflows.get_monitoring_data(workflow_id).to_dict()

    @app.get("/api/workflows/{workflow_id}/transfers")
    def get_transfers(workflow_id: str) -> dict[str, Any]:
        _workflow(workflow_id)
        history = workflows.get_state_transfer_history(workflow_id)
        return {"transfers": [t.to_dict() for t in history]}

    @app.post("/api/workflows/{workflow_id}/transfers", status_code=201)
    def record_transfer(workflow_id: str, body: StateTransferRequest) -> dict[str, Any]:
        transfer = workflows.record_state_transfer(workflow_id, body.source_tool, body.target_tool, body.data)
        return transfer.to_dict()

    return app
