"""Agent runner and the registry of supported agent CLIs.

Each agent is an ``AgentVariant`` record: how to install it, which
credentials it reads, how to build its command line and (for agents that
can resume a conversation) how to find the session id in its JSON output.
A single ``AgentRunner`` executes any variant.
"""

import json
import logging
import re
import shlex
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from e2b import TimeoutException

from sandbox_agents.core.clock import ensure_utc, utcnow
from sandbox_agents.core.config import Settings, settings
from sandbox_agents.core.errors import (
    AgentError,
    AuthenticationFailed,
    ExecutionCrashed,
    ExecutionTimeout,
    ToolInstallFailed,
    ValidationError,
)
from sandbox_agents.services.connectors import McpServer, render_mcp_config
from sandbox_agents.services.log_stream import LineBuffer, TaskLogSink
from sandbox_agents.services.sandbox import REPO_DIR, SandboxService

logger = logging.getLogger(__name__)

# Leave room for commit and push after the agent exits
DEADLINE_MARGIN_SECONDS = 60
OUTPUT_TAIL_LINES = 200

AUTH_FAILURE_PATTERN = re.compile(
    r"invalid api key|invalid x-api-key|authentication[_ ](failed|error)"
    r"|unauthorized|\b401\b|not logged in|please run /login",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class AgentVariant:
    name: str
    binary: str
    install_command: str
    # (environment variable, credential provider) pairs
    credentials: tuple[tuple[str, str], ...]
    build_command: Callable[[str, str | None, str | None], str]
    session_parser: Callable[[dict], str | None] | None = None
    mcp_config_path: str | None = None
    # Session transcripts live on the sandbox filesystem
    session_is_local: bool = True

    @property
    def supports_resume(self) -> bool:
        return self.session_parser is not None


@dataclass
class AgentExecutionResult:
    success: bool
    output: str
    changes_detected: bool
    session_id: str | None = None
    exit_code: int | None = None


def _claude_command(instruction: str, session_id: str | None, mcp_config: str | None) -> str:
    cmd = f"claude -p {instruction} --dangerously-skip-permissions --output-format stream-json --verbose"
    if session_id:
        cmd += f" --resume {shlex.quote(session_id)}"
    if mcp_config:
        cmd += f" --mcp-config {shlex.quote(mcp_config)}"
    return cmd


def _codex_command(instruction: str, session_id: str | None, mcp_config: str | None) -> str:
    cmd = "codex exec --json --dangerously-bypass-approvals-and-sandbox"
    if session_id:
        return f"{cmd} resume {shlex.quote(session_id)} {instruction}"
    return f"{cmd} {instruction}"


def _cursor_command(instruction: str, session_id: str | None, mcp_config: str | None) -> str:
    cmd = f'"$HOME/.local/bin/cursor-agent" -p --force --output-format stream-json {instruction}'
    if session_id:
        cmd += f" --resume {shlex.quote(session_id)}"
    return cmd


def _session_id_field(event: dict) -> str | None:
    return event.get("session_id")


def _codex_thread_id(event: dict) -> str | None:
    if event.get("type") == "thread.started":
        return event.get("thread_id")
    return None


AGENT_VARIANTS: dict[str, AgentVariant] = {
    "claude": AgentVariant(
        name="claude",
        binary="claude",
        install_command="npm install -g @anthropic-ai/claude-code",
        credentials=(("ANTHROPIC_API_KEY", "anthropic"),),
        build_command=_claude_command,
        session_parser=_session_id_field,
        mcp_config_path="/home/user/.mcp.json",
    ),
    "codex": AgentVariant(
        name="codex",
        binary="codex",
        install_command="npm install -g @openai/codex",
        credentials=(("OPENAI_API_KEY", "openai"),),
        build_command=_codex_command,
        session_parser=_codex_thread_id,
    ),
    "cursor": AgentVariant(
        name="cursor",
        binary="$HOME/.local/bin/cursor-agent",
        install_command="curl https://cursor.com/install -fsS | bash",
        credentials=(("CURSOR_API_KEY", "cursor"),),
        build_command=_cursor_command,
        session_parser=_session_id_field,
        mcp_config_path="/home/user/.cursor/mcp.json",
    ),
    "gemini": AgentVariant(
        name="gemini",
        binary="gemini",
        install_command="npm install -g @google/gemini-cli",
        credentials=(("GEMINI_API_KEY", "gemini"),),
        build_command=lambda instruction, session_id, mcp_config: f"gemini --yolo -p {instruction}",
    ),
    "copilot": AgentVariant(
        name="copilot",
        binary="copilot",
        install_command="npm install -g @github/copilot",
        credentials=(("GH_TOKEN", "github"),),
        build_command=lambda instruction, session_id, mcp_config: (
            f"copilot -p {instruction} --allow-all-tools"
        ),
    ),
    "opencode": AgentVariant(
        name="opencode",
        binary="opencode",
        install_command="npm install -g opencode-ai",
        credentials=(("OPENAI_API_KEY", "openai"), ("ANTHROPIC_API_KEY", "anthropic")),
        build_command=lambda instruction, session_id, mcp_config: f"opencode run {instruction}",
    ),
}


def get_variant(name: str) -> AgentVariant:
    try:
        return AGENT_VARIANTS[name]
    except KeyError:
        raise ValidationError(f"Unknown agent: {name}") from None


class _OutputCapture:
    """Feeds streamed output to the sink line by line and keeps a bounded tail."""

    def __init__(self, variant: AgentVariant, sink: TaskLogSink, tail_lines: int):
        self.variant = variant
        self.sink = sink
        self.session_id: str | None = None
        self._tail: deque[str] = deque(maxlen=tail_lines)
        self._buffers = {"stdout": LineBuffer(), "stderr": LineBuffer()}

    def on_stdout(self, chunk) -> None:
        self._emit("stdout", self._buffers["stdout"].feed(str(chunk)))

    def on_stderr(self, chunk) -> None:
        self._emit("stderr", self._buffers["stderr"].feed(str(chunk)))

    def close(self) -> None:
        for stream, buffer in self._buffers.items():
            self._emit(stream, buffer.flush())

    def _emit(self, stream: str, lines: list[str]) -> None:
        for line in lines:
            self._tail.append(line)
            if stream == "stdout":
                self._parse_session(line)
            self.sink.append(line, stream=stream)

    def _parse_session(self, line: str) -> None:
        if self.variant.session_parser is None or not line.startswith("{"):
            return
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            return
        if isinstance(event, dict):
            session_id = self.variant.session_parser(event)
            if session_id:
                self.session_id = session_id

    @property
    def output(self) -> str:
        return "\n".join(self._tail)


class AgentRunner:
    """Runs an agent CLI inside a provisioned sandbox."""

    def __init__(self, config: Settings = settings):
        self.config = config

    def ensure_installed(self, sandbox, variant: AgentVariant, sink: TaskLogSink) -> None:
        """Install the agent CLI unless the sandbox already has it."""
        check = SandboxService.run_command(
            sandbox, f"command -v {variant.binary}", timeout=self.config.command_timeout
        )
        if check.exit_code == 0:
            logger.info(f"{variant.name} CLI already installed in sandbox")
            return

        sink.event(f"Installing {variant.name} CLI")
        try:
            result = SandboxService.run_command(
                sandbox, variant.install_command, timeout=self.config.install_timeout
            )
        except TimeoutException as e:
            raise ToolInstallFailed(f"Installing {variant.name} timed out") from e

        if result.exit_code != 0:
            logger.error(f"Installing {variant.name} failed (exit {result.exit_code}): {result.stderr}")
            raise ToolInstallFailed(f"Installing {variant.name} exited with {result.exit_code}")

    def write_mcp_config(
        self, sandbox, variant: AgentVariant, connectors: list[McpServer]
    ) -> str | None:
        if not connectors or not variant.mcp_config_path:
            return None
        sandbox.files.write(variant.mcp_config_path, render_mcp_config(connectors))
        logger.info(f"Wrote {len(connectors)} MCP connectors for {variant.name}")
        return variant.mcp_config_path

    def timeout_for(self, deadline: datetime | None) -> int:
        """Agent timeout bounded by what is left of the sandbox lifetime."""
        timeout = self.config.agent_timeout
        if deadline is not None:
            remaining = (ensure_utc(deadline) - utcnow()).total_seconds() - DEADLINE_MARGIN_SECONDS
            timeout = min(timeout, int(remaining))
        if timeout <= 0:
            raise ExecutionTimeout("No sandbox time left to run the agent")
        return timeout

    def detect_changes(self, sandbox) -> bool:
        """True if the working tree has any uncommitted modification."""
        result = SandboxService.run_command(
            sandbox,
            "git status --porcelain",
            cwd=REPO_DIR,
            timeout=self.config.command_timeout,
        )
        if result.exit_code != 0:
            raise AgentError(f"git status failed: {result.stderr}")
        return bool(result.stdout.strip())

    def execute(
        self,
        sandbox,
        variant: AgentVariant,
        instruction: str,
        sink: TaskLogSink,
        agent_env: dict[str, str],
        resume_session_id: str | None = None,
        connectors: list[McpServer] | None = None,
        deadline: datetime | None = None,
    ) -> AgentExecutionResult:
        """Run the agent on ``instruction`` and stream its output to ``sink``.

        Raises:
            ToolInstallFailed: The CLI could not be installed
            AuthenticationFailed: No credential, or the agent rejected it
            ExecutionTimeout: The run exceeded its time budget
            ExecutionCrashed: The agent exited non-zero
        """
        self.ensure_installed(sandbox, variant, sink)

        if not agent_env:
            raise AuthenticationFailed(f"No credential available for {variant.name}")

        timeout = self.timeout_for(deadline)
        mcp_config = self.write_mcp_config(sandbox, variant, connectors or [])
        session_id = resume_session_id if variant.supports_resume else None
        command = variant.build_command(shlex.quote(instruction), session_id, mcp_config)

        capture = _OutputCapture(variant, sink, OUTPUT_TAIL_LINES)
        if session_id:
            sink.event(f"Resuming {variant.name} session")
        else:
            sink.event(f"Running {variant.name}")
        logger.info(f"Running {variant.name} with {timeout}s timeout (resume={bool(session_id)})")

        try:
            result = SandboxService.run_command(
                sandbox,
                command,
                timeout=timeout,
                envs=agent_env,
                cwd=REPO_DIR,
                on_stdout=capture.on_stdout,
                on_stderr=capture.on_stderr,
            )
        except TimeoutException as e:
            raise ExecutionTimeout(f"{variant.name} timed out after {timeout}s") from e
        finally:
            capture.close()
            sink.flush()

        if result.exit_code != 0:
            output = capture.output or result.stderr
            if AUTH_FAILURE_PATTERN.search(output):
                raise AuthenticationFailed(f"{variant.name} rejected its credentials")
            raise ExecutionCrashed(
                f"{variant.name} exited with {result.exit_code}",
                output=output,
                user_message=f"The agent exited with code {result.exit_code}",
                exit_code=result.exit_code,
            )

        return AgentExecutionResult(
            success=True,
            output=capture.output,
            changes_detected=self.detect_changes(sandbox),
            session_id=capture.session_id if variant.supports_resume else None,
            exit_code=result.exit_code,
        )
