"""Sandbox service for remote e2b sandbox operations."""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from e2b import CommandExitException
from e2b_code_interpreter import Sandbox

from sandbox_agents.core.config import Settings, settings

logger = logging.getLogger(__name__)

REPO_DIR = "/home/user/repo"


@dataclass
class CommandResult:
    """Outcome of a sandbox command, including non-zero exits."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""


def _connection_opts(config: Settings) -> dict:
    opts = {}
    if config.sandbox_api_key:
        opts["api_key"] = config.sandbox_api_key
    if config.sandbox_domain:
        opts["domain"] = config.sandbox_domain
    return opts


class SandboxService:
    """Thin wrapper over the e2b SDK."""

    @staticmethod
    def create_sandbox(
        timeout: int,
        metadata: dict[str, str] | None = None,
        config: Settings = settings,
    ) -> Sandbox:
        """Create a new sandbox that expires on its own after ``timeout`` seconds."""
        sandbox = Sandbox.create(
            template=config.sandbox_template,
            timeout=timeout,
            metadata=metadata or {},
            **_connection_opts(config),
        )
        logger.info(f"Created sandbox {sandbox.sandbox_id} with {timeout}s timeout")
        return sandbox

    @staticmethod
    def connect_sandbox(sandbox_id: str, config: Settings = settings) -> Sandbox:
        """Reconnect to a running sandbox."""
        return Sandbox.connect(sandbox_id, **_connection_opts(config))

    @staticmethod
    def kill_sandbox(sandbox_id: str, config: Settings = settings) -> bool:
        """Kill a sandbox by id. Returns False if it was already gone."""
        killed = Sandbox.kill(sandbox_id, **_connection_opts(config))
        logger.info(f"Sandbox {sandbox_id} killed (was running: {killed})")
        return killed

    @staticmethod
    def run_command(
        sandbox: Sandbox,
        command: str,
        timeout: int | None = None,
        envs: dict[str, str] | None = None,
        cwd: str | None = None,
        on_stdout: Callable[[str], None] | None = None,
        on_stderr: Callable[[str], None] | None = None,
    ) -> CommandResult:
        """Run a command in the sandbox.

        e2b raises for non-zero exit codes; this returns a CommandResult for
        them instead so callers can branch on ``exit_code``. Timeouts still
        raise ``e2b.TimeoutException``.
        """
        kwargs = {}
        if envs:
            kwargs["envs"] = envs
        if cwd:
            kwargs["cwd"] = cwd
        if on_stdout:
            kwargs["on_stdout"] = on_stdout
        if on_stderr:
            kwargs["on_stderr"] = on_stderr

        try:
            result = sandbox.commands.run(command, timeout=timeout, **kwargs)
        except CommandExitException as e:
            return CommandResult(
                exit_code=e.exit_code,
                stdout=getattr(e, "stdout", "") or "",
                stderr=getattr(e, "stderr", "") or str(e),
            )

        return CommandResult(
            exit_code=result.exit_code,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )
