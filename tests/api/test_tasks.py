"""Tests for task API endpoints."""

from uuid import uuid4

from sandbox_agents.models import TaskStatus
from sandbox_agents.services import TaskService
from sandbox_agents.services.files import TaskFile
from tests.conftest import TEST_OWNER, create_test_task


def _finish(task_id, status=TaskStatus.COMPLETED, **fields):
    TaskService.transition(task_id, TaskStatus.PROVISIONING)
    TaskService.transition(task_id, TaskStatus.RUNNING)
    TaskService.transition(task_id, TaskStatus.COMMITTING)
    return TaskService.transition(task_id, status, **fields)


def test_requires_api_key(test_client):
    response = test_client.get("/v1/tasks", headers={"X-API-Key": "wrong"})

    assert response.status_code == 403


def test_create_task(test_client, auth_headers, mock_celery_task):
    """Test POST /v1/tasks endpoint."""
    response = test_client.post(
        "/v1/tasks",
        json={
            "owner_id": TEST_OWNER,
            "instruction": "Add a login page",
            "repository_url": "test/repo",
            "agent": "codex",
            "keep_alive": True,
        },
        headers=auth_headers,
    )

    assert response.status_code == 201
    data = response.json()
    assert data["instruction"] == "Add a login page"
    assert data["repository_url"] == "https://github.com/test/repo.git"
    assert data["status"] == "queued"
    assert data["agent"] == "codex"
    assert data["keep_alive"] is True
    assert data["result"] is None
    assert data["sandbox_id"] is None
    assert data["branch_pushed"] is False
    mock_celery_task.assert_called_once_with(data["id"])


def test_create_task_invalid_agent(test_client, auth_headers):
    response = test_client.post(
        "/v1/tasks",
        json={
            "owner_id": TEST_OWNER,
            "instruction": "Hi",
            "repository_url": "test/repo",
            "agent": "unknown",
        },
        headers=auth_headers,
    )

    assert response.status_code == 422
    assert "Unknown agent" in response.json()["detail"]


def test_create_task_rate_limited(test_client, auth_headers, mocker):
    mocker.patch(
        "sandbox_agents.services.task.RateLimitService.count_recent", return_value=1000
    )

    response = test_client.post(
        "/v1/tasks",
        json={"owner_id": TEST_OWNER, "instruction": "Hi", "repository_url": "test/repo"},
        headers=auth_headers,
    )

    assert response.status_code == 429


def test_get_task(test_client, auth_headers):
    """Test GET /v1/tasks/{task_id} endpoint."""
    task = create_test_task(instruction="Task to retrieve via API")

    response = test_client.get(f"/v1/tasks/{task.id}", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == str(task.id)
    assert data["instruction"] == task.instruction
    assert data["status"] == "queued"


def test_get_task_not_found(test_client, auth_headers):
    response = test_client.get(f"/v1/tasks/{uuid4()}", headers=auth_headers)

    assert response.status_code == 404
    assert "not found" in response.json()["detail"]


def test_list_tasks(test_client, auth_headers):
    """Test GET /v1/tasks with pagination and owner filter."""
    for i in range(4):
        create_test_task(instruction=f"Task {i}")
    create_test_task(instruction="Elsewhere", owner_id="other")

    response = test_client.get("/v1/tasks?limit=2&offset=0", headers=auth_headers)
    data = response.json()
    assert response.status_code == 200
    assert len(data["tasks"]) == 2
    assert data["total"] == 5
    assert data["limit"] == 2

    response = test_client.get(f"/v1/tasks?owner_id={TEST_OWNER}", headers=auth_headers)
    data = response.json()
    assert data["total"] == 4
    assert data["tasks"][0]["instruction"] == "Task 3"


def test_continue_task(test_client, auth_headers):
    parent = create_test_task()
    _finish(parent.id, session_id="sess-1")

    response = test_client.post(
        f"/v1/tasks/{parent.id}/continue",
        json={"instruction": "Now add tests"},
        headers=auth_headers,
    )

    assert response.status_code == 201
    data = response.json()
    assert data["parent_task_id"] == str(parent.id)
    assert data["session_id"] == "sess-1"
    assert data["status"] == "queued"


def test_continue_active_task_conflict(test_client, auth_headers):
    task = create_test_task()

    response = test_client.post(
        f"/v1/tasks/{task.id}/continue",
        json={"instruction": "More"},
        headers=auth_headers,
    )

    assert response.status_code == 409


def test_cancel_task(test_client, auth_headers):
    task = create_test_task()

    response = test_client.post(f"/v1/tasks/{task.id}/cancel", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"


def test_cancel_task_not_found(test_client, auth_headers):
    response = test_client.post(f"/v1/tasks/{uuid4()}/cancel", headers=auth_headers)

    assert response.status_code == 404


def test_rename_branch(test_client, auth_headers):
    task = create_test_task()

    response = test_client.patch(
        f"/v1/tasks/{task.id}/branch",
        json={"branch_name": "feature/login-page"},
        headers=auth_headers,
    )

    assert response.status_code == 200
    assert response.json()["branch_name"] == "feature/login-page"


def test_rename_pushed_branch_conflict(test_client, auth_headers):
    task = create_test_task()
    _finish(task.id, branch_name="agent/1234", branch_pushed=True)

    response = test_client.patch(
        f"/v1/tasks/{task.id}/branch",
        json={"branch_name": "feature/too-late"},
        headers=auth_headers,
    )

    assert response.status_code == 409


def test_get_task_messages(test_client, auth_headers):
    task = create_test_task()
    TaskService.append_messages(task.id, [("log", "stdout", "hello"), ("log", "stderr", "oops")])

    response = test_client.get(f"/v1/tasks/{task.id}/messages", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 3
    assert [(m["kind"], m["stream"], m["content"]) for m in data["messages"]] == [
        ("event", "system", "Task queued"),
        ("log", "stdout", "hello"),
        ("log", "stderr", "oops"),
    ]

    assert [m["seq"] for m in data["messages"]] == [1, 2, 3]
    response = test_client.get(
        f"/v1/tasks/{task.id}/messages?after_seq=2", headers=auth_headers
    )
    assert [m["content"] for m in response.json()["messages"]] == ["oops"]
    assert response.json()["after_seq"] == 2


def test_get_task_messages_not_found(test_client, auth_headers):
    response = test_client.get(f"/v1/tasks/{uuid4()}/messages", headers=auth_headers)

    assert response.status_code == 404


def test_get_task_files(test_client, auth_headers, mocker):
    task = create_test_task()
    mocker.patch(
        "sandbox_agents.api.tasks.SandboxFileBrowser.get_task_files",
        return_value=[TaskFile(path="src/app.py", content="print('hi')", size=11)],
    )

    response = test_client.get(f"/v1/tasks/{task.id}/files", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {
        "files": [{"path": "src/app.py", "content": "print('hi')", "size": 11}]
    }


def test_get_task_files_while_running(test_client, auth_headers):
    task = create_test_task()

    response = test_client.get(f"/v1/tasks/{task.id}/files", headers=auth_headers)

    assert response.status_code == 409


def test_get_task_files_sandbox_gone(test_client, auth_headers):
    task = create_test_task()
    _finish(task.id)

    response = test_client.get(f"/v1/tasks/{task.id}/files", headers=auth_headers)

    assert response.status_code == 404


def test_health_check(test_client, auth_headers):
    """Test GET /health endpoint."""
    response = test_client.get("/health", headers=auth_headers)

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
