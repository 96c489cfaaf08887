"""Read-only view of the files a task changed, served from its idle sandbox."""

import logging
from dataclasses import dataclass
from uuid import UUID

from sandbox_agents.core.config import Settings, settings
from sandbox_agents.core.errors import NotFoundError, ValidationError
from sandbox_agents.models import TaskStatus
from sandbox_agents.services.lifecycle import LifecycleManager
from sandbox_agents.services.sandbox import REPO_DIR, SandboxService
from sandbox_agents.services.task import TaskService

logger = logging.getLogger(__name__)


@dataclass
class TaskFile:
    """Represents a file from a task."""

    path: str
    content: str
    size: int


def parse_porcelain(output: str) -> list[str]:
    """Paths from ``git status --porcelain`` output (renames give the new path)."""
    paths = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:].strip()
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip('"'))
    return paths


class SandboxFileBrowser:
    """Lists and reads changed files without mutating the sandbox.

    Only finished tasks whose sandbox is still kept alive (and not yet
    claimed by a follow-up) can be browsed.
    """

    def __init__(self, config: Settings = settings, lifecycle: LifecycleManager | None = None):
        self.config = config
        self.lifecycle = lifecycle or LifecycleManager(config)

    def get_task_files(self, task_id: UUID) -> list[TaskFile]:
        """Get files modified by a finished task.

        Raises:
            NotFoundError: If the task or its sandbox is gone
            ValidationError: If the task is still executing
        """
        task = TaskService.get_task_by_id(task_id)
        if not TaskStatus(task.status).is_terminal:
            raise ValidationError("Task must be finished to browse files")

        record = self.lifecycle.find_live(task.sandbox_id, task.id)
        if record is None:
            raise NotFoundError(f"Sandbox for task {task_id} is no longer available")

        sandbox = SandboxService.connect_sandbox(record.sandbox_id, config=self.config)

        paths = []
        if task.commit_sha:
            result = SandboxService.run_command(
                sandbox,
                f"git show --name-only --pretty=format: {task.commit_sha}",
                cwd=REPO_DIR,
                timeout=self.config.command_timeout,
            )
            paths.extend(line.strip() for line in result.stdout.splitlines() if line.strip())

        status = SandboxService.run_command(
            sandbox, "git status --porcelain", cwd=REPO_DIR, timeout=self.config.command_timeout
        )
        paths.extend(parse_porcelain(status.stdout))

        files = []
        for path in dict.fromkeys(paths):
            try:
                content = sandbox.files.read(f"{REPO_DIR}/{path}")
            except Exception as e:
                # Deleted files show up in the listing but cannot be read
                logger.info(f"Skipping {path}: {e}")
                continue
            files.append(TaskFile(path=path, content=content, size=len(content)))
        return files
