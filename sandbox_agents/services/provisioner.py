"""Sandbox provisioner: prepares a sandbox with the repository checked out."""

import logging
import re
import shlex
from dataclasses import dataclass
from datetime import datetime, timedelta

from e2b import TimeoutException

from sandbox_agents.core.clock import utcnow
from sandbox_agents.core.config import Settings, settings
from sandbox_agents.core.errors import (
    CloneFailed,
    CredentialInvalid,
    DependencyInstallFailed,
    EnvironmentUnavailable,
    ProvisionError,
)
from sandbox_agents.models import Task
from sandbox_agents.services.credentials import Credentials, GitIdentity
from sandbox_agents.services.git import GitService
from sandbox_agents.services.lifecycle import LifecycleManager
from sandbox_agents.services.log_stream import TaskLogSink
from sandbox_agents.services.sandbox import REPO_DIR, SandboxService

logger = logging.getLogger(__name__)

# The token is supplied per command through $GITHUB_TOKEN and never stored
CREDENTIAL_HELPER = (
    "git config --global credential.helper "
    "'!f() { echo username=x-access-token; echo password=$GITHUB_TOKEN; }; f'"
)

GIT_AUTH_FAILURE = re.compile(
    r"authentication failed|could not read username|403|permission .* denied|invalid credentials",
    re.IGNORECASE,
)

# Lock file -> install command, most specific first. Only the first
# JavaScript match runs; Python requirements install independently.
NODE_INSTALLERS = [
    ("pnpm-lock.yaml", "npm install -g pnpm && pnpm install --frozen-lockfile"),
    ("yarn.lock", "npm install -g yarn && yarn install --frozen-lockfile"),
    ("bun.lockb", "npm install -g bun && bun install --frozen-lockfile"),
    ("bun.lock", "npm install -g bun && bun install --frozen-lockfile"),
    ("package-lock.json", "npm ci"),
    ("package.json", "npm install"),
]
PYTHON_INSTALLERS = [
    ("requirements.txt", "pip install -r requirements.txt"),
]


def detect_install_commands(files: set[str]) -> list[str]:
    """Install commands for the lock files present at the repository root."""
    commands = []
    for lock_file, command in NODE_INSTALLERS:
        if lock_file in files:
            commands.append(command)
            break
    for lock_file, command in PYTHON_INSTALLERS:
        if lock_file in files:
            commands.append(command)
    return commands


@dataclass
class ProvisionedSandbox:
    sandbox: object
    sandbox_id: str
    branch: str
    reused: bool
    expires_at: datetime


class SandboxProvisioner:
    """Creates or resumes the sandbox for a task."""

    def __init__(self, config: Settings = settings, lifecycle: LifecycleManager | None = None):
        self.config = config
        self.lifecycle = lifecycle or LifecycleManager(config)

    def provision(
        self,
        task: Task,
        credentials: Credentials,
        sink: TaskLogSink,
        resume_sandbox_id: str | None = None,
    ) -> ProvisionedSandbox:
        """Return a sandbox with the task's repository checked out on its branch.

        A ``resume_sandbox_id`` that is still reachable is reused as-is.
        Otherwise a fresh sandbox is created and recorded with the lifecycle
        manager before any command runs in it, so a worker that dies midway
        still leaves it to the reaper. If a step fails the sandbox is torn
        down before the error is raised.

        Raises:
            ProvisionError: CloneFailed, DependencyInstallFailed,
                CredentialInvalid or EnvironmentUnavailable
        """
        branch = task.branch_name or GitService.placeholder_branch(task.id)
        lifetime = task.max_duration * 60

        if resume_sandbox_id:
            sandbox = self._reconnect(resume_sandbox_id, lifetime)
            if sandbox is not None:
                sink.event("Reusing kept-alive sandbox")
                self._configure_identity(sandbox, credentials.identity)
                return ProvisionedSandbox(
                    sandbox=sandbox,
                    sandbox_id=resume_sandbox_id,
                    branch=branch,
                    reused=True,
                    expires_at=utcnow() + timedelta(seconds=lifetime),
                )
            sink.event("Previous sandbox is gone, provisioning a new one")

        if not credentials.github_token:
            raise CredentialInvalid("No source control token for clone")

        sink.event("Creating sandbox")
        try:
            sandbox = SandboxService.create_sandbox(
                timeout=lifetime,
                metadata={"task_id": str(task.id), "owner_id": task.owner_id},
                config=self.config,
            )
        except Exception as e:
            raise EnvironmentUnavailable(f"Sandbox creation failed: {e}") from e

        expires_at = utcnow() + timedelta(seconds=lifetime)
        try:
            self.lifecycle.register(task.id, sandbox.sandbox_id, task.keep_alive, expires_at)
        except Exception as e:
            sandbox.kill()
            raise EnvironmentUnavailable(
                f"Could not record sandbox {sandbox.sandbox_id}: {e}"
            ) from e

        try:
            self._clone(sandbox, task.repository_url, credentials.github_token, sink)
            self._install_dependencies(sandbox, sink)
            self._configure_identity(sandbox, credentials.identity)
            self._checkout_branch(sandbox, branch, credentials.github_token, sink)
        except ProvisionError:
            self._discard(sandbox.sandbox_id)
            raise
        except TimeoutException as e:
            error = EnvironmentUnavailable(f"Sandbox command timed out: {e}")
            self._discard(sandbox.sandbox_id)
            raise error from e
        except Exception as e:
            error = EnvironmentUnavailable(f"Provisioning failed: {e}")
            self._discard(sandbox.sandbox_id)
            raise error from e

        return ProvisionedSandbox(
            sandbox=sandbox,
            sandbox_id=sandbox.sandbox_id,
            branch=branch,
            reused=False,
            expires_at=expires_at,
        )

    def _reconnect(self, sandbox_id: str, lifetime: int):
        try:
            sandbox = SandboxService.connect_sandbox(sandbox_id, config=self.config)
            if not sandbox.is_running():
                logger.info(f"Sandbox {sandbox_id} is no longer running")
                return None
            sandbox.set_timeout(lifetime)
        except Exception as e:
            logger.warning(f"Could not reconnect to sandbox {sandbox_id}: {e}")
            return None
        logger.info(f"Reconnected to sandbox {sandbox_id}")
        return sandbox

    def _discard(self, sandbox_id: str) -> None:
        """Tear down a partially provisioned sandbox; the reaper retries on failure."""
        try:
            self.lifecycle.schedule(sandbox_id, keep_alive=False, max_duration=0)
        except Exception as e:
            logger.error(f"Failed to release sandbox {sandbox_id}: {e}")

    def _clone(self, sandbox, repository_url: str, token: str, sink: TaskLogSink) -> None:
        SandboxService.run_command(sandbox, CREDENTIAL_HELPER, timeout=self.config.command_timeout)

        sink.event("Cloning repository")
        try:
            result = SandboxService.run_command(
                sandbox,
                f"git clone {shlex.quote(repository_url)} {REPO_DIR}",
                envs={"GITHUB_TOKEN": token},
                timeout=self.config.install_timeout,
            )
        except TimeoutException as e:
            raise CloneFailed("git clone timed out") from e

        if result.exit_code != 0:
            logger.error(f"Clone of {repository_url} failed: {result.stderr}")
            if GIT_AUTH_FAILURE.search(result.stderr):
                raise CredentialInvalid("Repository rejected the owner's token")
            raise CloneFailed(f"git clone exited with {result.exit_code}")

    def _install_dependencies(self, sandbox, sink: TaskLogSink) -> None:
        listing = SandboxService.run_command(
            sandbox, f"ls -1A {REPO_DIR}", timeout=self.config.command_timeout
        )
        files = {line.strip() for line in listing.stdout.splitlines() if line.strip()}

        for command in detect_install_commands(files):
            sink.event(f"Installing dependencies: {command}")
            try:
                result = SandboxService.run_command(
                    sandbox, command, cwd=REPO_DIR, timeout=self.config.install_timeout
                )
            except TimeoutException as e:
                raise DependencyInstallFailed(f"'{command}' timed out") from e
            if result.exit_code != 0:
                logger.error(f"'{command}' failed (exit {result.exit_code}): {result.stderr}")
                raise DependencyInstallFailed(f"'{command}' exited with {result.exit_code}")

    def _configure_identity(self, sandbox, identity: GitIdentity) -> None:
        for key, value in (("user.name", identity.name), ("user.email", identity.email)):
            SandboxService.run_command(
                sandbox,
                f"git config {key} {shlex.quote(value)}",
                cwd=REPO_DIR,
                timeout=self.config.command_timeout,
            )

    def _checkout_branch(self, sandbox, branch: str, token: str, sink: TaskLogSink) -> None:
        quoted = shlex.quote(branch)
        envs = {"GITHUB_TOKEN": token}
        remote = SandboxService.run_command(
            sandbox,
            f"git ls-remote --exit-code --heads origin {quoted}",
            cwd=REPO_DIR,
            envs=envs,
            timeout=self.config.command_timeout,
        )
        if remote.exit_code == 0:
            command = f"git fetch origin {quoted} && git checkout -B {quoted} FETCH_HEAD"
        else:
            command = f"git checkout -b {quoted}"

        result = SandboxService.run_command(
            sandbox, command, cwd=REPO_DIR, envs=envs, timeout=self.config.command_timeout
        )
        if result.exit_code != 0:
            logger.error(f"Checkout of {branch} failed: {result.stderr}")
            raise CloneFailed(f"Could not check out branch {branch}")
        sink.event(f"Working on branch {branch}")
