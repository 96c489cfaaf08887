"""Agent execution service: drives a task through the state machine."""

import logging
from dataclasses import dataclass
from uuid import UUID

from sandbox_agents.core.config import Settings, settings
from sandbox_agents.core.errors import (
    ConcurrentModificationError,
    IllegalTransitionError,
    NothingToCommit,
    OrchestratorError,
    TaskCancelledError,
    redact,
)
from sandbox_agents.models import Task, TaskStatus
from sandbox_agents.services.agents import AgentRunner, get_variant
from sandbox_agents.services.connectors import ConnectorService
from sandbox_agents.services.credentials import CredentialService
from sandbox_agents.services.lifecycle import LifecycleManager
from sandbox_agents.services.log_stream import TaskLogSink
from sandbox_agents.services.provisioner import ProvisionedSandbox, SandboxProvisioner
from sandbox_agents.services.task import TaskService
from sandbox_agents.services.vcs import CommitResult, VcsTracker, commit_message

logger = logging.getLogger(__name__)


@dataclass
class _Run:
    task: Task
    provisioned: ProvisionedSandbox | None = None


class AgentExecutionService:
    """Orchestrates provisioning, agent execution, commit and teardown.

    queued -> provisioning -> running -> committing -> completed, with
    failed reachable from each working state and cancelled from any
    non-terminal one. Every path out of ``execute_task`` hands the sandbox
    to the lifecycle manager.
    """

    def __init__(
        self,
        config: Settings = settings,
        provisioner: SandboxProvisioner | None = None,
        runner: AgentRunner | None = None,
        vcs: VcsTracker | None = None,
        lifecycle: LifecycleManager | None = None,
    ):
        self.config = config
        self.lifecycle = lifecycle or LifecycleManager(config)
        self.provisioner = provisioner or SandboxProvisioner(config, self.lifecycle)
        self.runner = runner or AgentRunner(config)
        self.vcs = vcs or VcsTracker(config)

    def execute_task(self, task_id: UUID) -> dict[str, str | None]:
        """Execute a queued task to a terminal state.

        Args:
            task_id: UUID of the task to execute

        Returns:
            Dict with the final status and error code

        Raises:
            NotFoundError: If task not found
        """
        task = TaskService.get_task_by_id(task_id)
        status = TaskStatus(task.status)

        if status.is_terminal:
            logger.info(f"Task {task_id} already {task.status}, nothing to do")
            return {"status": task.status, "error_code": task.error_code}
        if status != TaskStatus.QUEUED:
            return self._recover_interrupted(task)

        try:
            task = TaskService.transition(
                task_id,
                TaskStatus.PROVISIONING,
                "Provisioning sandbox",
                expected_version=task.version,
            )
        except (IllegalTransitionError, ConcurrentModificationError) as e:
            logger.info(f"Task {task_id} was taken elsewhere: {e}")
            task = TaskService.get_task_by_id(task_id)
            return {"status": task.status, "error_code": task.error_code}

        run = _Run(task=task)
        sink = TaskLogSink(task_id, self.config).start()
        final = None
        try:
            final = self._drive(run, sink)
        except TaskCancelledError:
            sink.flush()
            final = self._finish(task_id, TaskStatus.CANCELLED, "Task cancelled")
        except OrchestratorError as e:
            logger.warning(f"Task {task_id} failed ({e.code}): {e}")
            sink.flush()
            final = self._finish(task_id, TaskStatus.FAILED, e.user_message, e.code)
        except (IllegalTransitionError, ConcurrentModificationError) as e:
            # Another actor (the reaper) finalized the task first
            logger.warning(f"Task {task_id} changed underneath the worker: {e}")
            final = TaskService.get_task_by_id(task_id)
        except Exception:
            logger.exception(f"Unexpected error executing task {task_id}")
            sink.flush()
            final = self._finish(task_id, TaskStatus.FAILED, "Internal error", "internal_error")
        finally:
            sink.close()
            self._release(run, final)

        logger.info(f"Task {task_id} finished with status {final.status}")
        return {"status": final.status, "error_code": final.error_code}

    def _drive(self, run: _Run, sink: TaskLogSink) -> Task:
        task = run.task
        variant = get_variant(task.agent)
        credentials = CredentialService.resolve(task.owner_id, variant, self.config)
        self._checkpoint(task.id)

        resume_sandbox_id = None
        if task.parent_task_id and task.sandbox_id:
            if self.lifecycle.claim(
                task.sandbox_id, task.parent_task_id, task.id, task.max_duration
            ):
                resume_sandbox_id = task.sandbox_id

        run.provisioned = provisioned = self.provisioner.provision(
            task, credentials, sink, resume_sandbox_id=resume_sandbox_id
        )
        if resume_sandbox_id and not provisioned.reused:
            # Claimed but unreachable
            self.lifecycle.schedule(resume_sandbox_id, keep_alive=False, max_duration=0)
        self._checkpoint(task.id)

        task = TaskService.transition(
            task.id,
            TaskStatus.RUNNING,
            f"Sandbox ready, starting {variant.name}",
            sandbox_id=provisioned.sandbox_id,
        )

        session_id = task.session_id if variant.supports_resume else None
        if session_id and variant.session_is_local and not provisioned.reused:
            sink.event("Previous agent session is not in this sandbox, starting a new one")
            session_id = None

        connectors = (
            ConnectorService.list_for_owner(task.owner_id) if variant.mcp_config_path else []
        )
        result = self.runner.execute(
            provisioned.sandbox,
            variant,
            task.instruction,
            sink,
            credentials.agent_env,
            resume_session_id=session_id,
            connectors=connectors,
            deadline=provisioned.expires_at,
        )
        sink.flush()
        self._checkpoint(task.id)

        task = TaskService.transition(
            task.id,
            TaskStatus.COMMITTING,
            "Agent finished with changes" if result.changes_detected else "Agent finished, no changes",
            session_id=result.session_id or session_id,
            changes_detected=result.changes_detected,
        )

        # Re-read: the branch may have been renamed while the agent ran
        branch = task.branch_name or provisioned.branch
        try:
            commit = self.vcs.commit_and_push(
                provisioned.sandbox,
                credentials.identity,
                branch,
                result.changes_detected,
                credentials.github_token,
                commit_message(task.instruction),
            )
        except NothingToCommit:
            sink.event("Changes disappeared before commit, nothing pushed")
            commit = CommitResult(status="no_changes")

        if commit.pushed:
            message = f"Pushed {commit.commit_sha[:7]} to {commit.branch}"
            return TaskService.transition(
                task.id,
                TaskStatus.COMPLETED,
                message,
                result=message,
                commit_sha=commit.commit_sha,
                push_retries=commit.retries,
                branch_name=commit.branch,
                branch_pushed=True,
            )

        return TaskService.transition(
            task.id, TaskStatus.COMPLETED, "No changes to push", result="No changes"
        )

    def _checkpoint(self, task_id: UUID) -> None:
        if TaskService.is_cancel_requested(task_id):
            raise TaskCancelledError(f"Task {task_id} cancelled")

    def _finish(
        self, task_id: UUID, status: TaskStatus, message: str, error_code: str | None = None
    ) -> Task:
        message = redact(message)
        try:
            return TaskService.transition(
                task_id, status, message, result=message, error_code=error_code
            )
        except (IllegalTransitionError, ConcurrentModificationError) as e:
            logger.warning(f"Could not mark task {task_id} {status.value}: {e}")
            return TaskService.get_task_by_id(task_id)

    def _release(self, run: _Run, final: Task | None) -> None:
        if run.provisioned is None:
            return
        keep_alive = (
            final is not None
            and run.task.keep_alive
            and final.status != TaskStatus.CANCELLED
        )
        try:
            self.lifecycle.schedule(
                run.provisioned.sandbox_id,
                keep_alive=keep_alive,
                max_duration=run.task.max_duration,
                sandbox=run.provisioned.sandbox,
            )
        except Exception:
            logger.exception(
                f"Failed to schedule teardown of sandbox {run.provisioned.sandbox_id}"
            )

    def _recover_interrupted(self, task: Task) -> dict[str, str | None]:
        """Handle redelivery of a task whose previous worker died mid-run."""
        logger.warning(f"Task {task.id} found in {task.status}; previous worker was interrupted")
        TaskService.fail_if_active(task.id, "Task was interrupted", error_code="interrupted")
        self.lifecycle.release_task_sandboxes(task.id)
        task = TaskService.get_task_by_id(task.id)
        return {"status": task.status, "error_code": task.error_code}
