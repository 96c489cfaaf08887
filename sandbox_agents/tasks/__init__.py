"""Celery tasks."""

from .agent_execution import execute_agent_task
from .lifecycle import reap_expired_sandboxes

__all__ = ["execute_agent_task", "reap_expired_sandboxes"]
