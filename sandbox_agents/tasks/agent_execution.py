"""Agent execution Celery task."""

import logging
from uuid import UUID

from sandbox_agents.celery_app import app
from sandbox_agents.core.errors import NotFoundError
from sandbox_agents.services import AgentExecutionService, TaskService

logger = logging.getLogger(__name__)


@app.task(bind=True, name="sandbox_agents.tasks.agent_execution.execute_agent_task")
def execute_agent_task(self, task_id: str):
    """Execute an agent task in a remote sandbox.

    This is a thin Celery wrapper around AgentExecutionService. It is not
    retried: a run has side effects (sandboxes, pushes) that a blind retry
    would repeat. Redelivery after a worker crash is handled by the service.

    Args:
        task_id: UUID of the task to execute
    """
    task_uuid = UUID(task_id)

    try:
        return AgentExecutionService().execute_task(task_uuid)
    except NotFoundError:
        logger.error(f"Task {task_id} does not exist, dropping")
        return None
    except Exception as exc:
        logger.error(f"Error executing task {task_id}: {exc}")
        TaskService.fail_if_active(task_uuid, "Internal error", error_code="internal_error")
        raise
