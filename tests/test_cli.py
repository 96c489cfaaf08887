"""Tests for the command-line interface."""

import httpx
from typer.testing import CliRunner

from sandbox_agents.cli import app

runner = CliRunner()


def _task(**fields):
    data = {
        "id": "12345678-1234-5678-1234-567812345678",
        "instruction": "Add a login page",
        "agent": "claude",
        "repository_url": "https://github.com/test/repo.git",
        "status": "queued",
        "branch_name": None,
        "created_at": "2025-01-01T00:00:00Z",
        "updated_at": "2025-01-01T00:01:00Z",
    }
    data.update(fields)
    return data


def test_create_task(mocker):
    mock_create = mocker.patch(
        "sandbox_agents.cli.ApiClientService.create_task", return_value=_task()
    )

    result = runner.invoke(
        app,
        ["task", "create", "Add a login page", "--repo", "test/repo", "--owner", "user-1"],
    )

    assert result.exit_code == 0
    assert "Task created: 12345678-1234-5678-1234-567812345678" in result.output
    mock_create.assert_called_once_with(
        owner_id="user-1",
        instruction="Add a login page",
        repository_url="test/repo",
        agent="claude",
        keep_alive=False,
        branch_name=None,
    )


def test_create_task_api_error(mocker):
    response = httpx.Response(
        429,
        json={"detail": "Owner user-1 reached the limit of 50 tasks per day"},
        request=httpx.Request("POST", "http://test/v1/tasks"),
    )
    mocker.patch(
        "sandbox_agents.cli.ApiClientService.create_task",
        side_effect=httpx.HTTPStatusError("429", request=response.request, response=response),
    )

    result = runner.invoke(
        app,
        ["task", "create", "Hi", "--repo", "test/repo", "--owner", "user-1"],
    )

    assert result.exit_code == 1
    assert "API error 429" in result.output


def test_logs_follow_drains_final_messages(mocker):
    mocker.patch("sandbox_agents.cli.time.sleep")
    mocker.patch(
        "sandbox_agents.cli.ApiClientService.get_messages",
        side_effect=[
            {"messages": [{"seq": 1, "kind": "event", "stream": "system", "content": "Task queued"}]},
            {"messages": []},
            {"messages": [{"seq": 2, "kind": "log", "stream": "stdout", "content": "done"}]},
            {"messages": []},
        ],
    )
    mocker.patch(
        "sandbox_agents.cli.ApiClientService.get_task",
        return_value=_task(status="completed"),
    )

    result = runner.invoke(app, ["task", "logs", "some-id", "--follow"])

    assert result.exit_code == 0
    assert "Task queued" in result.output
    assert "done" in result.output


def test_wait_failed_task_exits_nonzero(mocker):
    mocker.patch(
        "sandbox_agents.cli.ApiClientService.wait_for_task",
        return_value=_task(status="failed", result="Failed to clone repository"),
    )

    result = runner.invoke(app, ["task", "wait", "some-id"])

    assert result.exit_code == 1
    assert "Task failed" in result.output
    assert "Failed to clone repository" in result.output
