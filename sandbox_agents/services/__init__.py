"""Business logic services."""

from .agent_execution import AgentExecutionService
from .lifecycle import LifecycleManager
from .task import TaskService

__all__ = ["AgentExecutionService", "LifecycleManager", "TaskService"]
