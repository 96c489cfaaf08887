"""Tests for AgentExecutionService."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from sandbox_agents.core.clock import ensure_utc, utcnow
from sandbox_agents.core.errors import NotFoundError
from sandbox_agents.models import TaskStatus
from sandbox_agents.services import AgentExecutionService, LifecycleManager, TaskService
from sandbox_agents.services.vcs import VcsTracker
from tests.conftest import create_test_owner, create_test_task, fail, ok

REJECTED = " ! [rejected]        HEAD -> main (fetch first)"


def agent_run(session_id="sess-1", lines=("Editing src/app.py",), exit_code=0, before=None):
    """Scripted agent: optional hook, a session event, then plain output lines."""

    def run(command, on_stdout, on_stderr):
        if before:
            before()
        on_stdout(json.dumps({"type": "system", "session_id": session_id}) + "\n")
        for line in lines:
            on_stdout(line + "\n")
        return ok() if exit_code == 0 else fail(exit_code, stderr="agent crashed")

    return run


def script_repo(shell, agent=None):
    shell.on("claude -p", agent or agent_run())
    shell.on("ls -1A", ok("package.json\npackage-lock.json\n"))
    shell.on("git ls-remote", fail(2))
    shell.on("git status --porcelain", ok(" M src/app.py\n"))
    shell.on("git diff --cached --quiet", fail(1))
    shell.on("git rev-parse HEAD", ok("abc1234def5678\n"))
    return shell


@pytest.fixture
def sandbox_api(mocker, sandbox):
    return SimpleNamespace(
        create=mocker.patch(
            "sandbox_agents.services.sandbox.SandboxService.create_sandbox",
            return_value=sandbox,
        ),
        connect=mocker.patch(
            "sandbox_agents.services.sandbox.SandboxService.connect_sandbox",
            return_value=sandbox,
        ),
        kill=mocker.patch(
            "sandbox_agents.services.sandbox.SandboxService.kill_sandbox",
            return_value=True,
        ),
    )


@pytest.fixture
def service():
    return AgentExecutionService(vcs=VcsTracker(sleep=lambda seconds: None))


@pytest.fixture
def owner():
    return create_test_owner()


def _contents(task_id):
    messages, _ = TaskService.get_task_messages(task_id, limit=1000)
    return [m.content for m in messages]


def test_execute_task_success(shell, sandbox_api, service, owner):
    """Full run: provision, agent, commit, push, teardown."""
    script_repo(shell)
    task = create_test_task()

    result = service.execute_task(task.id)

    assert result == {"status": "completed", "error_code": None}
    task = TaskService.get_task_by_id(task.id)
    branch = f"agent/{task.id.hex[:8]}"
    assert task.sandbox_id == "sbx-1"
    assert task.session_id == "sess-1"
    assert task.changes_detected is True
    assert task.commit_sha == "abc1234def5678"
    assert task.branch_name == branch
    assert task.branch_pushed is True
    assert task.push_retries == 0
    assert task.result == f"Pushed abc1234 to {branch}"

    assert shell.ran("npm ci")
    assert shell.ran(f"git push -u origin HEAD:refs/heads/{branch}")
    sandbox_api.kill.assert_called_once()
    assert LifecycleManager().get_record("sbx-1").torn_down_at is not None

    contents = _contents(task.id)
    assert contents[0] == "Task queued"
    assert contents[-1] == task.result
    assert (
        contents.index("Sandbox ready, starting claude")
        < contents.index("Editing src/app.py")
        < contents.index("Agent finished with changes")
    )


def test_execute_task_no_changes(shell, sandbox_api, service, owner):
    script_repo(shell)
    shell.override("git status --porcelain", ok(""))
    task = create_test_task()

    result = service.execute_task(task.id)

    assert result["status"] == "completed"
    task = TaskService.get_task_by_id(task.id)
    assert task.changes_detected is False
    assert task.result == "No changes"
    assert task.commit_sha is None
    assert task.branch_pushed is False
    assert not shell.ran("git add")
    assert not shell.ran("git push")
    sandbox_api.kill.assert_called_once()


def test_execute_task_dependency_install_failure(shell, sandbox_api, service, owner):
    script_repo(shell)
    shell.override("npm ci", fail(1, stderr="npm ERR! ERESOLVE"))
    task = create_test_task()

    result = service.execute_task(task.id)

    assert result == {"status": "failed", "error_code": "dependency_install_failed"}
    task = TaskService.get_task_by_id(task.id)
    assert task.result == "Failed to install project dependencies"
    assert "ERESOLVE" not in task.result
    sandbox_api.kill.assert_called_once()
    record = LifecycleManager().get_record("sbx-1")
    assert record.task_id == task.id
    assert record.torn_down_at is not None
    assert not shell.ran("claude -p")


def test_execute_task_push_retried_once(shell, sandbox_api, service, owner):
    script_repo(shell)
    shell.override("git push", fail(1, stderr=REJECTED), ok())
    task = create_test_task()

    result = service.execute_task(task.id)

    assert result["status"] == "completed"
    task = TaskService.get_task_by_id(task.id)
    assert task.push_retries == 1
    assert len(shell.ran(" commit -m ")) == 1
    assert len(shell.ran("git push")) == 2


def test_keep_alive_follow_up_reuses_sandbox(shell, sandbox, sandbox_api, service, owner):
    script_repo(shell)
    parent = create_test_task(keep_alive=True)

    assert service.execute_task(parent.id)["status"] == "completed"
    sandbox_api.kill.assert_not_called()
    sandbox.set_timeout.assert_called_with(300 * 60)
    record = LifecycleManager().get_record("sbx-1")
    assert record.keep_alive is True
    assert ensure_utc(record.expires_at) > utcnow()

    child = TaskService.continue_task(parent.id, "Add tests too")
    result = service.execute_task(child.id)

    assert result["status"] == "completed"
    sandbox_api.create.assert_called_once()
    sandbox_api.connect.assert_called_once()
    assert len(shell.ran("git clone")) == 1
    follow_up = shell.ran("claude -p")[-1]
    assert "--resume sess-1" in follow_up
    assert "'Add tests too'" in follow_up
    assert "hello world" not in follow_up
    assert LifecycleManager().get_record("sbx-1").task_id == child.id
    child = TaskService.get_task_by_id(child.id)
    assert child.branch_name == TaskService.get_task_by_id(parent.id).branch_name


def test_follow_up_without_live_sandbox_starts_fresh(shell, sandbox_api, service, owner):
    second = MagicMock()
    second.sandbox_id = "sbx-2"
    sandbox_api.create.side_effect = [sandbox_api.create.return_value, second]
    script_repo(shell)
    parent = create_test_task()
    service.execute_task(parent.id)

    child = TaskService.continue_task(parent.id, "One more thing")
    result = service.execute_task(child.id)

    assert result["status"] == "completed"
    assert sandbox_api.create.call_count == 2
    sandbox_api.connect.assert_not_called()
    assert "--resume" not in shell.ran("claude -p")[-1]
    assert "Previous agent session is not in this sandbox, starting a new one" in _contents(
        child.id
    )


def test_cancel_while_running(shell, sandbox_api, service, owner):
    task = create_test_task(keep_alive=True)
    script_repo(shell, agent_run(before=lambda: TaskService.cancel_task(task.id)))

    result = service.execute_task(task.id)

    assert result == {"status": "cancelled", "error_code": None}
    assert not shell.ran("git push")
    # Cancelled runs never keep their sandbox
    sandbox_api.kill.assert_called_once()
    assert "Cancellation requested" in _contents(task.id)


def test_cancel_before_pickup(shell, sandbox_api, service, owner):
    task = create_test_task()
    TaskService.cancel_task(task.id)

    result = service.execute_task(task.id)

    assert result["status"] == "cancelled"
    sandbox_api.create.assert_not_called()


def test_missing_source_control_credential(shell, sandbox_api, service):
    create_test_owner(github_token=None)
    task = create_test_task()

    result = service.execute_task(task.id)

    assert result == {"status": "failed", "error_code": "credential_invalid"}
    sandbox_api.create.assert_not_called()


def test_agent_crash(shell, sandbox_api, service, owner):
    script_repo(shell, agent_run(exit_code=2))
    task = create_test_task()

    result = service.execute_task(task.id)

    assert result == {"status": "failed", "error_code": "execution_crashed"}
    assert TaskService.get_task_by_id(task.id).result == "The agent exited with code 2"
    sandbox_api.kill.assert_called_once()


def test_changes_gone_before_commit(shell, sandbox_api, service, owner):
    script_repo(shell)
    shell.override("git diff --cached --quiet", ok())
    task = create_test_task()

    result = service.execute_task(task.id)

    assert result["status"] == "completed"
    assert TaskService.get_task_by_id(task.id).result == "No changes"
    assert "Changes disappeared before commit, nothing pushed" in _contents(task.id)


def test_failed_teardown_left_to_reaper(shell, sandbox_api, service, owner):
    script_repo(shell)
    shell.override("git clone", fail(128, stderr="fatal: repository not found"))
    sandbox_api.kill.side_effect = RuntimeError("network down")
    task = create_test_task()

    result = service.execute_task(task.id)

    assert result["error_code"] == "clone_failed"
    record = LifecycleManager().get_record("sbx-1")
    assert record.task_id == task.id
    assert record.torn_down_at is None
    assert record.teardown_attempts == 1
    assert ensure_utc(record.expires_at) <= utcnow()


def test_worker_crash_during_install_releases_sandbox_on_redelivery(
    shell, sandbox_api, service, owner
):
    script_repo(shell)
    shell.override("npm ci", SystemExit(1))
    task = create_test_task()

    with pytest.raises(SystemExit):
        service.execute_task(task.id)

    record = LifecycleManager().get_record("sbx-1")
    assert record.task_id == task.id
    assert record.torn_down_at is None
    sandbox_api.kill.assert_not_called()

    result = service.execute_task(task.id)

    assert result == {"status": "failed", "error_code": "interrupted"}
    sandbox_api.kill.assert_called_once()
    assert LifecycleManager().get_record("sbx-1").torn_down_at is not None


def test_unexpected_error_fails_task(shell, sandbox_api, service, owner):
    script_repo(shell, RuntimeError("boom"))
    task = create_test_task()

    result = service.execute_task(task.id)

    assert result == {"status": "failed", "error_code": "internal_error"}
    assert TaskService.get_task_by_id(task.id).result == "Internal error"
    sandbox_api.kill.assert_called_once()


def test_redelivered_task_is_marked_interrupted(shell, sandbox_api, service, owner):
    task = create_test_task()
    TaskService.transition(task.id, TaskStatus.PROVISIONING)
    LifecycleManager().register(task.id, "sbx-1", False, utcnow())

    result = service.execute_task(task.id)

    assert result == {"status": "failed", "error_code": "interrupted"}
    sandbox_api.kill.assert_called_once()
    sandbox_api.create.assert_not_called()


def test_finished_task_is_not_rerun(shell, sandbox_api, service, owner):
    task = create_test_task()
    TaskService.transition(task.id, TaskStatus.CANCELLED)

    result = service.execute_task(task.id)

    assert result["status"] == "cancelled"
    assert shell.calls == []


def test_execute_task_not_found(service):
    with pytest.raises(NotFoundError):
        service.execute_task(uuid4())
