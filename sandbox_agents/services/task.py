"""Task service: persistence and the task state machine."""

import logging
from datetime import timedelta
from uuid import UUID

from sqlalchemy import func, update
from sqlmodel import select

from sandbox_agents.core.clock import utcnow
from sandbox_agents.core.config import Settings, settings
from sandbox_agents.core.database import get_session
from sandbox_agents.core.errors import (
    ConcurrentModificationError,
    IllegalTransitionError,
    NotFoundError,
    RateLimitExceededError,
    ValidationError,
)
from sandbox_agents.models import Task, TaskMessage, TaskStatus
from sandbox_agents.models.task import can_transition
from sandbox_agents.services.git import GitService

logger = logging.getLogger(__name__)

_TRANSITION_FIELDS = frozenset(
    {
        "sandbox_id",
        "session_id",
        "changes_detected",
        "commit_sha",
        "push_retries",
        "branch_name",
        "branch_pushed",
        "result",
        "error_code",
    }
)


def _dispatch(task_id: UUID) -> None:
    from sandbox_agents.tasks import execute_agent_task

    execute_agent_task.delay(str(task_id))


def _add_messages(session, task_id: UUID, messages: list[tuple[str, str, str]]) -> None:
    """Add (kind, stream, content) messages under the task's next sequence numbers.

    Bumping ``tasks.message_seq`` locks the task row until the session
    commits, so concurrent writers of one task commit in sequence order and a
    reader paging on ``seq`` never skips a number that becomes visible later.
    """
    session.execute(
        update(Task)
        .where(Task.id == task_id)
        .values(message_seq=Task.message_seq + len(messages))
    )
    last = session.execute(select(Task.message_seq).where(Task.id == task_id)).scalar_one()
    first = last - len(messages) + 1
    session.add_all(
        TaskMessage(
            task_id=task_id, seq=first + offset, kind=kind, stream=stream, content=content
        )
        for offset, (kind, stream, content) in enumerate(messages)
    )


class RateLimitService:
    """Per-owner quota on tasks started in a rolling 24 hour window."""

    @staticmethod
    def count_recent(owner_id: str) -> int:
        since = utcnow() - timedelta(days=1)
        with get_session() as session:
            statement = (
                select(func.count())
                .select_from(Task)
                .where(Task.owner_id == owner_id, Task.created_at >= since)
            )
            return session.execute(statement).scalar() or 0

    @staticmethod
    def check(owner_id: str, config: Settings = settings) -> None:
        """Raise RateLimitExceededError if the owner is over quota."""
        used = RateLimitService.count_recent(owner_id)
        if used >= config.max_messages_per_day:
            raise RateLimitExceededError(
                f"Owner {owner_id} reached the limit of "
                f"{config.max_messages_per_day} tasks per day"
            )


class TaskService:
    """Service for task-related business logic."""

    @staticmethod
    def create_task(
        owner_id: str,
        repository_url: str,
        instruction: str,
        agent: str = "claude",
        keep_alive: bool = False,
        branch_name: str | None = None,
        max_duration: int | None = None,
        config: Settings = settings,
    ) -> Task:
        """Create a new task and queue it for execution."""
        from sandbox_agents.services.agents import AGENT_VARIANTS

        if not instruction.strip():
            raise ValidationError("Instruction must not be empty")
        if agent not in AGENT_VARIANTS:
            raise ValidationError(f"Unknown agent: {agent}")
        if branch_name is not None and not GitService.is_valid_branch_name(branch_name):
            raise ValidationError(f"Invalid branch name: {branch_name}")
        if max_duration is not None and not 0 < max_duration <= config.max_sandbox_duration:
            raise ValidationError(
                f"max_duration must be between 1 and {config.max_sandbox_duration} minutes"
            )
        try:
            repository_url = GitService.normalize_repo_url(repository_url)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        RateLimitService.check(owner_id, config)

        with get_session() as session:
            task = Task(
                owner_id=owner_id,
                repository_url=repository_url,
                instruction=instruction,
                agent=agent,
                keep_alive=keep_alive,
                branch_name=branch_name,
                max_duration=max_duration or config.max_sandbox_duration,
                status=TaskStatus.QUEUED.value,
            )
            session.add(task)
            session.flush()
            _add_messages(session, task.id, [("event", "system", "Task queued")])
            session.commit()
            session.refresh(task)

        _dispatch(task.id)
        logger.info(f"Queued task {task.id} ({agent}) for owner {owner_id}")
        return task

    @staticmethod
    def continue_task(task_id: UUID, instruction: str, config: Settings = settings) -> Task:
        """Queue a follow-up instruction on a finished task.

        The follow-up is a new task chained through ``parent_task_id``; it
        inherits the repository, agent, branch, sandbox and agent session so
        the run can reuse a kept-alive sandbox and resume the conversation.
        """
        if not instruction.strip():
            raise ValidationError("Instruction must not be empty")

        parent = TaskService.get_task_by_id(task_id)
        if not TaskStatus(parent.status).is_terminal:
            raise ValidationError(f"Task {task_id} is still {parent.status}")

        RateLimitService.check(parent.owner_id, config)

        with get_session() as session:
            task = Task(
                owner_id=parent.owner_id,
                repository_url=parent.repository_url,
                instruction=instruction,
                agent=parent.agent,
                keep_alive=parent.keep_alive,
                max_duration=parent.max_duration,
                parent_task_id=parent.id,
                branch_name=parent.branch_name,
                branch_pushed=parent.branch_pushed,
                sandbox_id=parent.sandbox_id,
                session_id=parent.session_id,
                status=TaskStatus.QUEUED.value,
            )
            session.add(task)
            session.flush()
            _add_messages(session, task.id, [("event", "system", "Follow-up queued")])
            session.commit()
            session.refresh(task)

        _dispatch(task.id)
        logger.info(f"Queued follow-up {task.id} of task {parent.id}")
        return task

    @staticmethod
    def get_task_by_id(task_id: UUID) -> Task:
        """Get task by ID."""
        with get_session() as session:
            statement = select(Task).where(Task.id == task_id)
            task = session.execute(statement).scalar_one_or_none()

            if task is None:
                raise NotFoundError(f"Task with id {task_id} not found")

            return task

    @staticmethod
    def list_tasks(
        limit: int = 100, offset: int = 0, owner_id: str | None = None
    ) -> tuple[list[Task], int]:
        """List tasks with pagination, newest first."""
        with get_session() as session:
            count_statement = select(func.count()).select_from(Task)
            statement = select(Task)
            if owner_id is not None:
                count_statement = count_statement.where(Task.owner_id == owner_id)
                statement = statement.where(Task.owner_id == owner_id)

            total = session.execute(count_statement).scalar()
            statement = statement.order_by(Task.created_at.desc()).offset(offset).limit(limit)
            tasks = session.execute(statement).scalars().all()

            return list(tasks), total

    @staticmethod
    def transition(
        task_id: UUID,
        status: TaskStatus,
        message: str | None = None,
        expected_version: int | None = None,
        **fields,
    ) -> Task:
        """Move a task along one edge of the state machine.

        The status change, any field updates and the triggering message are
        committed in one transaction. The update is conditional on the
        version read here, so two writers racing on the same task cannot
        both succeed.

        Raises:
            NotFoundError: If the task does not exist
            IllegalTransitionError: If the edge is not allowed (nothing is written)
            ConcurrentModificationError: If the task changed concurrently
        """
        status = TaskStatus(status)
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unknown task fields: {sorted(unknown)}")

        with get_session() as session:
            task = session.execute(select(Task).where(Task.id == task_id)).scalar_one_or_none()
            if task is None:
                raise NotFoundError(f"Task with id {task_id} not found")

            if not can_transition(task.status, status):
                raise IllegalTransitionError(
                    f"Task {task_id} cannot move from {task.status} to {status.value}"
                )
            if expected_version is not None and task.version != expected_version:
                raise ConcurrentModificationError(
                    f"Task {task_id} is at version {task.version}, expected {expected_version}"
                )

            result = session.execute(
                update(Task)
                .where(Task.id == task_id, Task.version == task.version)
                .values(
                    status=status.value,
                    version=task.version + 1,
                    updated_at=utcnow(),
                    **fields,
                )
            )
            if result.rowcount != 1:
                raise ConcurrentModificationError(f"Task {task_id} changed concurrently")

            if message:
                _add_messages(session, task_id, [("event", "system", message)])
            session.commit()
            session.refresh(task)

        logger.info(f"Task {task_id} -> {status.value}")
        return task

    @staticmethod
    def fail_if_active(
        task_id: UUID, message: str, error_code: str = "internal_error"
    ) -> Task | None:
        """Fail a task unless it already reached a terminal state.

        Returns the failed task, or None if it was already terminal.
        """
        for _ in range(2):
            task = TaskService.get_task_by_id(task_id)
            if TaskStatus(task.status).is_terminal:
                return None
            try:
                return TaskService.transition(
                    task_id,
                    TaskStatus.FAILED,
                    message,
                    expected_version=task.version,
                    result=message,
                    error_code=error_code,
                )
            except (ConcurrentModificationError, IllegalTransitionError):
                continue
        return None

    @staticmethod
    def cancel_task(task_id: UUID) -> Task:
        """Request cancellation.

        A queued task is cancelled right away. A task that is already being
        worked on is flagged; the worker stops it at its next checkpoint.
        Cancelling a finished task is a no-op.
        """
        task = TaskService.get_task_by_id(task_id)
        status = TaskStatus(task.status)
        if status.is_terminal:
            return task

        if status == TaskStatus.QUEUED:
            try:
                return TaskService.transition(
                    task_id,
                    TaskStatus.CANCELLED,
                    "Task cancelled",
                    expected_version=task.version,
                    result="Task cancelled",
                )
            except (ConcurrentModificationError, IllegalTransitionError):
                # A worker picked it up in the meantime; fall through to the flag
                pass

        terminal = [s.value for s in TaskStatus if s.is_terminal]
        with get_session() as session:
            # Flag only, no version bump: the worker's own transitions stay valid
            result = session.execute(
                update(Task)
                .where(Task.id == task_id, Task.status.notin_(terminal))
                .values(cancel_requested=True)
            )
            flagged = result.rowcount == 1
            if flagged:
                _add_messages(session, task_id, [("event", "system", "Cancellation requested")])
        if flagged:
            logger.info(f"Cancellation requested for task {task_id}")
        return TaskService.get_task_by_id(task_id)

    @staticmethod
    def is_cancel_requested(task_id: UUID) -> bool:
        with get_session() as session:
            statement = select(Task.cancel_requested).where(Task.id == task_id)
            return bool(session.execute(statement).scalar_one_or_none())

    @staticmethod
    def rename_branch(task_id: UUID, branch_name: str) -> Task:
        """Set the human-readable branch name before the branch is first pushed."""
        if not GitService.is_valid_branch_name(branch_name):
            raise ValidationError(f"Invalid branch name: {branch_name}")

        with get_session() as session:
            result = session.execute(
                update(Task)
                .where(
                    Task.id == task_id,
                    Task.branch_pushed.is_(False),
                    Task.status != TaskStatus.COMMITTING.value,
                )
                .values(branch_name=branch_name, updated_at=utcnow())
            )
            updated = result.rowcount == 1

        if not updated:
            task = TaskService.get_task_by_id(task_id)  # raises NotFoundError
            raise ValidationError(
                f"Branch of task {task.id} can no longer be renamed ({task.branch_name})"
            )
        return TaskService.get_task_by_id(task_id)

    @staticmethod
    def append_messages(task_id: UUID, messages: list[tuple[str, str, str]]) -> None:
        """Append (kind, stream, content) messages in order, in one transaction."""
        if not messages:
            return
        with get_session() as session:
            _add_messages(session, task_id, messages)

    @staticmethod
    def get_task_messages(
        task_id: UUID, after_seq: int = 0, limit: int = 100
    ) -> tuple[list[TaskMessage], int]:
        """Get messages for a task in append order.

        Args:
            task_id: UUID of the task
            after_seq: Return only messages with a sequence number above this
            limit: Maximum number of messages to return

        Returns:
            Tuple of (messages, total_count)
        """
        TaskService.get_task_by_id(task_id)

        with get_session() as session:
            total = session.execute(
                select(func.count())
                .select_from(TaskMessage)
                .where(TaskMessage.task_id == task_id)
            ).scalar()
            statement = (
                select(TaskMessage)
                .where(TaskMessage.task_id == task_id, TaskMessage.seq > after_seq)
                .order_by(TaskMessage.seq)
                .limit(limit)
            )
            messages = session.execute(statement).scalars().all()
            return list(messages), total
