"""Pytest configuration and fixtures."""

import os
from unittest.mock import MagicMock

from cryptography.fernet import Fernet

# Settings are read at import time, so the test environment goes first
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ["API_SECRET_KEY"] = "test-secret-key"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from sandbox_agents.core.database import clean_database, close_db, create_tables  # noqa: E402
from sandbox_agents.main import app  # noqa: E402
from sandbox_agents.models import Task  # noqa: E402
from sandbox_agents.services import TaskService  # noqa: E402
from sandbox_agents.services.credentials import CredentialService  # noqa: E402
from sandbox_agents.services.sandbox import CommandResult  # noqa: E402

TEST_OWNER = "user-1"


def create_test_task(
    instruction: str = "Add a hello world function",
    repository_url: str = "https://github.com/test/repo.git",
    owner_id: str = TEST_OWNER,
    **kwargs,
) -> Task:
    """Helper function to create a test task with default values."""
    return TaskService.create_task(
        owner_id=owner_id,
        repository_url=repository_url,
        instruction=instruction,
        **kwargs,
    )


def create_test_owner(
    owner_id: str = TEST_OWNER,
    github_token: str | None = "ghp_testtoken0000000000000000",
    anthropic_key: str | None = "sk-ant-test",
) -> str:
    """Store a profile and credentials for an owner."""
    CredentialService.upsert_profile(
        owner_id, name="Test User", email="test@example.com", github_login="testuser"
    )
    if github_token:
        CredentialService.store_credential(owner_id, "github", github_token)
    if anthropic_key:
        CredentialService.store_credential(owner_id, "anthropic", anthropic_key)
    return owner_id


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(exit_code=0, stdout=stdout)


def fail(exit_code: int = 1, stderr: str = "", stdout: str = "") -> CommandResult:
    return CommandResult(exit_code=exit_code, stdout=stdout, stderr=stderr)


class FakeShell:
    """Scripted stand-in for ``SandboxService.run_command``.

    Commands are matched by substring against rules in the order they were
    added; unmatched commands succeed with empty output. A rule's responses
    are used in turn and the last one repeats. A response is a
    CommandResult, an exception to raise, or a callable receiving the
    command and its output callbacks.
    """

    def __init__(self):
        self.calls: list[str] = []
        self.envs: list[dict | None] = []
        self._rules: list[tuple[str, list]] = []

    def on(self, fragment: str, *responses) -> "FakeShell":
        self._rules.append((fragment, list(responses)))
        return self

    def override(self, fragment: str, *responses) -> "FakeShell":
        """Like ``on``, but takes precedence over rules added earlier."""
        self._rules.insert(0, (fragment, list(responses)))
        return self

    def __call__(
        self,
        sandbox,
        command,
        timeout=None,
        envs=None,
        cwd=None,
        on_stdout=None,
        on_stderr=None,
    ):
        self.calls.append(command)
        self.envs.append(envs)
        for fragment, responses in self._rules:
            if fragment not in command:
                continue
            response = responses.pop(0) if len(responses) > 1 else responses[0]
            if isinstance(response, BaseException):
                raise response
            if callable(response):
                return response(command, on_stdout, on_stderr)
            return response
        return ok()

    def ran(self, fragment: str) -> list[str]:
        return [call for call in self.calls if fragment in call]


@pytest.fixture(autouse=True, scope="function")
def mock_celery_task(mocker):
    """Mock Celery task execution for all tests."""
    return mocker.patch("sandbox_agents.tasks.agent_execution.execute_agent_task.delay")


@pytest.fixture(autouse=True, scope="function")
def clean_db():
    """Initialize and clean database for each test."""
    create_tables()

    # Clean all tables before test to ensure isolation
    clean_database()

    yield

    # Close DB connections
    close_db()


@pytest.fixture(scope="function")
def test_client():
    """Create a test client."""
    with TestClient(app) as client:
        yield client


@pytest.fixture(scope="function")
def auth_headers():
    """Provide authentication headers for API requests."""
    from sandbox_agents.core.config import settings

    return {"X-API-Key": settings.api_secret_key}


@pytest.fixture
def shell(mocker):
    """Replace every sandbox command with a scripted FakeShell."""
    fake = FakeShell()
    mocker.patch(
        "sandbox_agents.services.sandbox.SandboxService.run_command",
        side_effect=fake,
    )
    return fake


@pytest.fixture
def sandbox():
    mock_sandbox = MagicMock()
    mock_sandbox.sandbox_id = "sbx-1"
    mock_sandbox.is_running.return_value = True
    return mock_sandbox


@pytest.fixture
def sink():
    """In-memory stand-in for TaskLogSink."""
    mock_sink = MagicMock()
    mock_sink.lines = []
    mock_sink.events = []
    mock_sink.append.side_effect = lambda line, stream="stdout": mock_sink.lines.append(
        (stream, line)
    )
    mock_sink.event.side_effect = mock_sink.events.append
    return mock_sink
