"""Task API routes: creation, runs, progress, and audit trail.

Endpoints:
    POST /v1/tasks                              Create a task
    GET  /v1/tasks                              List tasks
    GET  /v1/tasks/{task_id}                    Task with its latest artifacts
    POST /v1/tasks/{task_id}/run                Start a background run
    GET  /v1/tasks/{task_id}/events             Run and stream events as NDJSON
    GET  /v1/tasks/{task_id}/progress           Latest progress snapshot
    GET  /v1/tasks/{task_id}/state              Persisted workflow state
    POST /v1/tasks/{task_id}/cancel             Cancel the in-flight run
    GET  /v1/tasks/{task_id}/invocations        Stage invocation records

Manual handling:
    POST   /v1/tasks/{task_id}/stages/{stage}   Run one stage and wait for it
    POST   /v1/tasks/{task_id}/publish          Publish a reviewed task
    PUT    /v1/tasks/{task_id}/research         Edit the research summary
    PUT    /v1/tasks/{task_id}/draft            Edit the draft
    PUT    /v1/tasks/{task_id}/review           Edit review scores and verdict
    GET    /v1/tasks/{task_id}/export           Draft as a markdown download
    DELETE /v1/tasks/{task_id}                  Delete a task
"""

import json
import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse

from blog_pipeline.executor.errors import (
    InvalidTransitionError,
    MissingArtifactError,
    RetryBudgetExhausted,
    TaskNotFound,
    WorkflowAlreadyRunning,
)
from blog_pipeline.executor.repository import SQLiteRepository
from blog_pipeline.executor.schemas import (
    BlogTask,
    CreateTaskRequest,
    DraftArtifact,
    DraftEdit,
    ResearchArtifact,
    ResearchEdit,
    ReviewArtifact,
    ReviewEdit,
    StageKind,
    StageResult,
    TaskStatus,
)
from blog_pipeline.executor.task_service import TaskService
from blog_pipeline.executor.workflow_runner import WorkflowRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])


def _runner(request: Request) -> WorkflowRunner:
    return request.app.state.runner


def _repository(request: Request) -> SQLiteRepository:
    return request.app.state.repository


def _service(request: Request) -> TaskService:
    return request.app.state.task_service


async def _require_task(request: Request, task_id: str) -> BlogTask:
    task = await _repository(request).get_task(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    return task


# --- Task endpoints ---


@router.post("", status_code=201)
async def create_task(body: CreateTaskRequest, request: Request) -> BlogTask:
    """Create a task in the created state. Start it with /run or /events."""
    task = BlogTask(**body.model_dump())
    return await _repository(request).create_task(task)


@router.get("")
async def list_tasks(
    request: Request,
    status: Optional[TaskStatus] = None,
    limit: int = Query(default=50, ge=1, le=500),
):
    """List tasks, newest first."""
    tasks = await _repository(request).list_tasks(status=status, limit=limit)
    return {"tasks": tasks, "count": len(tasks)}


@router.get("/{task_id}")
async def get_task(task_id: str, request: Request):
    """Task record plus its latest research, draft and review."""
    task = await _require_task(request, task_id)
    repo = _repository(request)
    return {
        "task": task,
        "research": await repo.get_artifact(task_id, StageKind.RESEARCH, ResearchArtifact),
        "draft": await repo.get_artifact(task_id, StageKind.DRAFT, DraftArtifact),
        "review": await repo.get_artifact(task_id, StageKind.REVIEW, ReviewArtifact),
    }


# --- Run endpoints ---


@router.post("/{task_id}/run", status_code=202)
async def run_task(task_id: str, request: Request, auto_publish: Optional[bool] = None):
    """Start a run in the background and return immediately."""
    try:
        await _runner(request).start_workflow(task_id, auto_publish=auto_publish)
    except TaskNotFound:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    except (WorkflowAlreadyRunning, InvalidTransitionError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "task_id": task_id,
        "status": "running",
        "message": f"Run started. Poll GET /v1/tasks/{task_id}/progress for progress.",
    }


@router.get("/{task_id}/events")
async def stream_task_events(task_id: str, request: Request, auto_publish: Optional[bool] = None):
    """Run the task and stream its events, one JSON object per line."""
    events = _runner(request).run(task_id, auto_publish=auto_publish)
    try:
        first = await events.__anext__()
    except TaskNotFound:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    except (WorkflowAlreadyRunning, InvalidTransitionError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    async def ndjson():
        yield json.dumps(first.to_dict()) + "\n"
        async for event in events:
            yield json.dumps(event.to_dict()) + "\n"

    return StreamingResponse(ndjson(), media_type="application/x-ndjson")


@router.post("/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request):
    """Cancel the task's in-flight run."""
    if not _runner(request).request_cancellation(task_id):
        await _require_task(request, task_id)
        raise HTTPException(status_code=409, detail=f"Task {task_id} is not running")
    return {"task_id": task_id, "status": "cancelling", "message": "Cancellation requested"}


# --- Status endpoints ---


@router.get("/{task_id}/progress")
async def get_progress(task_id: str, request: Request):
    """Latest progress snapshot. 404 if the task never ran or the snapshot expired."""
    snapshot = _runner(request).get_progress(task_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"No run for task {task_id}")
    return snapshot


@router.get("/{task_id}/state")
async def get_state(task_id: str, request: Request):
    try:
        return await _runner(request).get_workflow_state(task_id)
    except TaskNotFound:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")


@router.get("/{task_id}/invocations")
async def list_invocations(task_id: str, request: Request):
    """Audit trail of stage calls, oldest first."""
    await _require_task(request, task_id)
    records = await _repository(request).list_invocations(task_id)
    return {
        "task_id": task_id,
        "invocations": records,
        "count": len(records),
        "total_cost_units": sum(r.cost_units for r in records),
    }


# --- Manual handling endpoints ---


@router.post("/{task_id}/stages/{stage}")
async def execute_stage(task_id: str, stage: StageKind, request: Request) -> StageResult:
    """Run one stage (research, draft, review or rewrite) and wait for it."""
    try:
        return await _runner(request).execute_stage(task_id, stage)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except TaskNotFound:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    except (WorkflowAlreadyRunning, InvalidTransitionError, RetryBudgetExhausted) as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/{task_id}/publish")
async def publish_task(task_id: str, request: Request) -> BlogTask:
    """Publish a task whose review is complete, whatever its score."""
    try:
        return await _runner(request).publish_task(task_id)
    except (TaskNotFound, MissingArtifactError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (WorkflowAlreadyRunning, InvalidTransitionError) as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.put("/{task_id}/research", response_model=ResearchArtifact)
async def update_research(task_id: str, body: ResearchEdit, request: Request):
    try:
        return await _service(request).update_research(task_id, body)
    except (TaskNotFound, MissingArtifactError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.put("/{task_id}/draft", response_model=DraftArtifact)
async def update_draft(task_id: str, body: DraftEdit, request: Request):
    try:
        return await _service(request).update_draft(task_id, body)
    except (TaskNotFound, MissingArtifactError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.put("/{task_id}/review", response_model=ReviewArtifact)
async def update_review(task_id: str, body: ReviewEdit, request: Request):
    """Override review scores; the overall score is recomputed from the dimensions."""
    try:
        return await _service(request).update_review(task_id, body)
    except (TaskNotFound, MissingArtifactError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WorkflowAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/{task_id}/export")
async def export_markdown(task_id: str, request: Request):
    """The current draft as a markdown file download."""
    try:
        export = await _service(request).export_markdown(task_id)
    except (TaskNotFound, MissingArtifactError) as e:
        raise HTTPException(status_code=404, detail=str(e))

    quoted = quote(export.filename)
    headers = {"Content-Disposition": f"attachment; filename*=UTF-8''{quoted}"}
    return Response(content=export.content, media_type="text/markdown; charset=utf-8", headers=headers)


@router.delete("/{task_id}")
async def delete_task(task_id: str, request: Request):
    """Delete a task that is not running, with its artifacts and audit trail."""
    try:
        await _service(request).delete_task(task_id)
    except TaskNotFound:
        raise HTTPException(status_code=404, detail=f"Task not found: {task_id}")
    except WorkflowAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"task_id": task_id, "deleted": True}
