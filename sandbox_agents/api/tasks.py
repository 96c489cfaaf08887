"""Task API endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from sandbox_agents.core.auth import verify_api_key
from sandbox_agents.core.errors import (
    NotFoundError,
    RateLimitExceededError,
    ValidationError,
)
from sandbox_agents.models import Task
from sandbox_agents.services import TaskService
from sandbox_agents.services.files import SandboxFileBrowser

router = APIRouter()


class TaskCreate(BaseModel):
    """Request model for creating a task."""

    owner_id: str
    repository_url: str
    instruction: str
    agent: str = "claude"
    keep_alive: bool = False
    branch_name: str | None = None
    max_duration: int | None = None


class TaskContinue(BaseModel):
    """Request model for a follow-up instruction."""

    instruction: str


class BranchRename(BaseModel):
    """Request model for naming a task branch."""

    branch_name: str


class TaskResponse(BaseModel):
    """Response model for task data."""

    id: UUID
    owner_id: str
    instruction: str
    agent: str
    repository_url: str
    status: str
    result: str | None
    error_code: str | None
    branch_name: str | None
    branch_pushed: bool
    commit_sha: str | None
    changes_detected: bool | None
    push_retries: int
    keep_alive: bool
    max_duration: int
    cancel_requested: bool
    sandbox_id: str | None
    session_id: str | None
    parent_task_id: UUID | None
    created_at: datetime
    updated_at: datetime


class TaskListResponse(BaseModel):
    """Response model for list of tasks."""

    tasks: list[TaskResponse]
    total: int
    limit: int
    offset: int


class TaskMessageResponse(BaseModel):
    """Response model for one entry of the task message stream."""

    seq: int
    kind: str
    stream: str
    content: str
    created_at: datetime


class TaskMessageListResponse(BaseModel):
    """Response model for a page of task messages."""

    messages: list[TaskMessageResponse]
    total: int
    after_seq: int
    limit: int


class TaskFileResponse(BaseModel):
    """Response model for a changed file."""

    path: str
    content: str
    size: int


class TaskFileListResponse(BaseModel):
    """Response model for the files a task changed."""

    files: list[TaskFileResponse]


def _to_response(task: Task) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        owner_id=task.owner_id,
        instruction=task.instruction,
        agent=task.agent,
        repository_url=task.repository_url,
        status=task.status,
        result=task.result,
        error_code=task.error_code,
        branch_name=task.branch_name,
        branch_pushed=task.branch_pushed,
        commit_sha=task.commit_sha,
        changes_detected=task.changes_detected,
        push_retries=task.push_retries,
        keep_alive=task.keep_alive,
        max_duration=task.max_duration,
        cancel_requested=task.cancel_requested,
        sandbox_id=task.sandbox_id,
        session_id=task.session_id,
        parent_task_id=task.parent_task_id,
        created_at=task.created_at,
        updated_at=task.updated_at,
    )


def _not_found(e: NotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
def create_task(task_data: TaskCreate, api_key: str = Depends(verify_api_key)):
    """Create a new task."""
    try:
        task = TaskService.create_task(
            owner_id=task_data.owner_id,
            repository_url=task_data.repository_url,
            instruction=task_data.instruction,
            agent=task_data.agent,
            keep_alive=task_data.keep_alive,
            branch_name=task_data.branch_name,
            max_duration=task_data.max_duration,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e),
        ) from e
    except RateLimitExceededError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e),
        ) from e

    return _to_response(task)


@router.get("/tasks/{task_id}", response_model=TaskResponse)
def get_task(task_id: UUID, api_key: str = Depends(verify_api_key)):
    """Get a task by ID."""
    try:
        task = TaskService.get_task_by_id(task_id)
    except NotFoundError as e:
        raise _not_found(e) from e

    return _to_response(task)


@router.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    limit: int = 100,
    offset: int = 0,
    owner_id: str | None = None,
    api_key: str = Depends(verify_api_key),
):
    """List tasks with pagination."""
    tasks, total = TaskService.list_tasks(limit=limit, offset=offset, owner_id=owner_id)

    return TaskListResponse(
        tasks=[_to_response(task) for task in tasks],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/tasks/{task_id}/continue",
    response_model=TaskResponse,
    status_code=status.HTTP_201_CREATED,
)
def continue_task(
    task_id: UUID, body: TaskContinue, api_key: str = Depends(verify_api_key)
):
    """Queue a follow-up instruction on a finished task."""
    try:
        task = TaskService.continue_task(task_id, body.instruction)
    except NotFoundError as e:
        raise _not_found(e) from e
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except RateLimitExceededError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(e),
        ) from e

    return _to_response(task)


@router.post("/tasks/{task_id}/cancel", response_model=TaskResponse)
def cancel_task(task_id: UUID, api_key: str = Depends(verify_api_key)):
    """Cancel a task; running tasks stop at their next checkpoint."""
    try:
        task = TaskService.cancel_task(task_id)
    except NotFoundError as e:
        raise _not_found(e) from e

    return _to_response(task)


@router.patch("/tasks/{task_id}/branch", response_model=TaskResponse)
def rename_branch(
    task_id: UUID, body: BranchRename, api_key: str = Depends(verify_api_key)
):
    """Name the task branch before it is first pushed."""
    try:
        task = TaskService.rename_branch(task_id, body.branch_name)
    except NotFoundError as e:
        raise _not_found(e) from e
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    return _to_response(task)


@router.get("/tasks/{task_id}/messages", response_model=TaskMessageListResponse)
def get_task_messages(
    task_id: UUID,
    after_seq: int = 0,
    limit: int = 100,
    api_key: str = Depends(verify_api_key),
):
    """Get the task message stream in append order.

    Poll with ``after_seq`` set to the last seq seen to follow a running task.
    """
    try:
        messages, total = TaskService.get_task_messages(
            task_id, after_seq=after_seq, limit=limit
        )
    except NotFoundError as e:
        raise _not_found(e) from e

    return TaskMessageListResponse(
        messages=[
            TaskMessageResponse(
                seq=message.seq,
                kind=message.kind,
                stream=message.stream,
                content=message.content,
                created_at=message.created_at,
            )
            for message in messages
        ],
        total=total,
        after_seq=after_seq,
        limit=limit,
    )


@router.get("/tasks/{task_id}/files", response_model=TaskFileListResponse)
def get_task_files(task_id: UUID, api_key: str = Depends(verify_api_key)):
    """Get files changed by a finished task from its kept-alive sandbox."""
    try:
        files = SandboxFileBrowser().get_task_files(task_id)
    except NotFoundError as e:
        raise _not_found(e) from e
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    return TaskFileListResponse(
        files=[
            TaskFileResponse(path=f.path, content=f.content, size=f.size) for f in files
        ]
    )
