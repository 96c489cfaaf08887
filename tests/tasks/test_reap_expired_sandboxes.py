"""Tests for the sandbox reaper Celery task."""

from sandbox_agents.celery_app import app
from sandbox_agents.tasks import reap_expired_sandboxes


def test_reap_expired_sandboxes(mocker):
    mock_reap = mocker.patch(
        "sandbox_agents.tasks.lifecycle.LifecycleManager.reap_expired", return_value=3
    )

    assert reap_expired_sandboxes.run(limit=10) == 3
    mock_reap.assert_called_once_with(limit=10)


def test_reaper_is_scheduled():
    entry = app.conf.beat_schedule["reap-expired-sandboxes"]

    assert entry["task"] == reap_expired_sandboxes.name
