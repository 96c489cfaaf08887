"""Database models."""

from .connector import Connector
from .sandbox import SandboxRecord
from .task import ALLOWED_TRANSITIONS, TERMINAL_STATUSES, Task, TaskStatus
from .task_message import TaskMessage
from .user import UserCredential, UserProfile

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "Connector",
    "SandboxRecord",
    "Task",
    "TaskMessage",
    "TaskStatus",
    "UserCredential",
    "UserProfile",
]
