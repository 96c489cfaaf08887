"""Change & VCS tracker: commits agent changes and pushes the task branch."""

import logging
import re
import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass

from sandbox_agents.core.config import Settings, settings
from sandbox_agents.core.errors import AuthFailed, NothingToCommit, PushRejected, VcsError
from sandbox_agents.services.credentials import GitIdentity
from sandbox_agents.services.sandbox import REPO_DIR, SandboxService

logger = logging.getLogger(__name__)

PUSH_REJECTED_PATTERN = re.compile(
    r"\[rejected\]|non-fast-forward|fetch first|updates were rejected", re.IGNORECASE
)
PUSH_AUTH_PATTERN = re.compile(
    r"authentication failed|could not read username|permission to .* denied"
    r"|\b403\b|invalid credentials",
    re.IGNORECASE,
)


@dataclass
class CommitResult:
    status: str  # "pushed" or "no_changes"
    branch: str | None = None
    commit_sha: str | None = None
    retries: int = 0

    @property
    def pushed(self) -> bool:
        return self.status == "pushed"


def commit_message(instruction: str, limit: int = 72) -> str:
    """First line of the instruction, trimmed to a commit subject."""
    lines = instruction.strip().splitlines()
    subject = lines[0].strip() if lines else ""
    if len(subject) > limit:
        subject = subject[: limit - 3].rstrip() + "..."
    return subject or "Agent changes"


def classify_push_failure(stderr: str) -> type[VcsError]:
    if PUSH_AUTH_PATTERN.search(stderr):
        return AuthFailed
    if PUSH_REJECTED_PATTERN.search(stderr):
        return PushRejected
    return VcsError


class VcsTracker:
    """Stages, commits and pushes the working tree of a sandbox."""

    def __init__(self, config: Settings = settings, sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self._sleep = sleep

    def _git(self, sandbox, command: str, token: str | None = None):
        return SandboxService.run_command(
            sandbox,
            command,
            cwd=REPO_DIR,
            envs={"GITHUB_TOKEN": token} if token else None,
            timeout=self.config.command_timeout,
        )

    def commit_and_push(
        self,
        sandbox,
        identity: GitIdentity,
        branch: str,
        changes_detected: bool,
        github_token: str,
        message: str,
    ) -> CommitResult:
        """Commit every modification once and push it to ``branch``.

        Returns ``CommitResult(status="no_changes")`` without touching git
        when the agent changed nothing. A rejected push is rebased onto the
        remote branch and retried up to ``push_retry_attempts`` times; the
        commit itself is never repeated.

        Raises:
            NothingToCommit: The tree became clean between detection and staging
            PushRejected: Still rejected after the retry budget
            AuthFailed: The remote refused the owner's token
            VcsError: Any other git failure
        """
        if not changes_detected:
            return CommitResult(status="no_changes")

        result = self._git(sandbox, "git add -A")
        if result.exit_code != 0:
            raise VcsError(f"git add failed: {result.stderr}")

        staged = self._git(sandbox, "git diff --cached --quiet")
        if staged.exit_code == 0:
            raise NothingToCommit("Working tree clean after staging")

        result = self._git(
            sandbox,
            f"git -c user.name={shlex.quote(identity.name)} "
            f"-c user.email={shlex.quote(identity.email)} "
            f"commit -m {shlex.quote(message)}",
        )
        if result.exit_code != 0:
            raise VcsError(f"git commit failed: {result.stderr}")

        quoted = shlex.quote(branch)
        result = self._git(sandbox, f"git branch -M {quoted}")
        if result.exit_code != 0:
            raise VcsError(f"Could not name branch {branch}: {result.stderr}")

        retries = self._push(sandbox, branch, github_token)

        sha = self._git(sandbox, "git rev-parse HEAD").stdout.strip()
        logger.info(f"Pushed {sha[:7]} to {branch} after {retries} retries")
        return CommitResult(status="pushed", branch=branch, commit_sha=sha, retries=retries)

    def _push(self, sandbox, branch: str, token: str) -> int:
        quoted = shlex.quote(branch)
        attempts = max(self.config.push_retry_attempts, 0)
        retries = 0
        while True:
            result = self._git(
                sandbox, f"git push -u origin HEAD:refs/heads/{quoted}", token=token
            )
            if result.exit_code == 0:
                return retries

            error_type = classify_push_failure(result.stderr)
            logger.warning(f"Push to {branch} failed ({error_type.__name__}): {result.stderr}")
            if error_type is not PushRejected or retries >= attempts:
                raise error_type(f"git push exited with {result.exit_code}")

            retries += 1
            self._sleep(self.config.push_retry_backoff * retries)
            rebase = self._git(sandbox, f"git pull --rebase origin {quoted}", token=token)
            if rebase.exit_code != 0:
                self._git(sandbox, "git rebase --abort")
                raise PushRejected(f"Rebase onto origin/{branch} failed: {rebase.stderr}")
