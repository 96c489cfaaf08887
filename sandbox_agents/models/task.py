"""Task model for agent execution."""

from datetime import UTC, datetime
from enum import StrEnum
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, String, Text
from sqlmodel import Field, SQLModel


class TaskStatus(StrEnum):
    """Lifecycle states of a task."""

    QUEUED = "queued"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    COMMITTING = "committing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

# Cancellation is reachable from every non-terminal state.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.PROVISIONING, TaskStatus.CANCELLED}),
    TaskStatus.PROVISIONING: frozenset(
        {TaskStatus.RUNNING, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMMITTING, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMMITTING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    """Return True if ``current -> target`` is an edge of the state machine."""
    return TaskStatus(target) in ALLOWED_TRANSITIONS[TaskStatus(current)]


class Task(SQLModel, table=True):
    """Task for agent execution."""

    __tablename__ = "tasks"

    # Primary key and timestamps
    id: UUID = Field(
        default_factory=uuid4,
        primary_key=True,
        description="Unique identifier for the task",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True), index=True),
        description="Timestamp when the task was created",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True)),
        description="Timestamp when the task was last updated",
    )

    # Request
    owner_id: str = Field(index=True, description="User that owns the task")
    instruction: str = Field(
        sa_column=Column(Text, nullable=False),
        description="Natural language instruction for the agent",
    )
    agent: str = Field(default="claude", description="Agent variant tag")
    repository_url: str = Field(description="Repository URL to clone and work on")
    keep_alive: bool = Field(
        default=False, description="Keep the sandbox after completion for follow-ups"
    )
    max_duration: int = Field(
        default=300, description="Sandbox lifetime budget in minutes"
    )
    parent_task_id: UUID | None = Field(
        default=None,
        foreign_key="tasks.id",
        description="Task this follow-up continues",
    )

    # State machine
    status: str = Field(
        default=TaskStatus.QUEUED.value,
        sa_column=Column(String, index=True, nullable=False),
        description="queued, provisioning, running, committing, completed, failed, cancelled",
    )
    version: int = Field(default=0, description="Optimistic lock counter")
    cancel_requested: bool = Field(default=False)
    message_seq: int = Field(
        default=0, description="Last sequence number given to a task message"
    )

    # Execution
    branch_name: str | None = Field(default=None, description="Target branch")
    branch_pushed: bool = Field(
        default=False, description="True once the branch exists on the remote"
    )
    sandbox_id: str | None = Field(
        default=None, description="ID of the sandbox where the task runs"
    )
    session_id: str | None = Field(
        default=None, description="Agent session ID for resumption"
    )
    changes_detected: bool | None = Field(default=None)
    commit_sha: str | None = Field(default=None)
    push_retries: int = Field(default=0)
    result: str | None = Field(
        default=None, description="Sanitized result or failure summary"
    )
    error_code: str | None = Field(default=None)
