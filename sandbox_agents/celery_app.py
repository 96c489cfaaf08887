"""Celery application configuration."""

from celery import Celery
from celery.signals import setup_logging

from sandbox_agents.core.config import settings
from sandbox_agents.core.logging import configure_logging

# Seconds beyond the longest sandbox lifetime before Redis redelivers a task
VISIBILITY_MARGIN = 3600

# Create Celery app
app = Celery("sandbox-agents")

# Configure Celery
app.conf.update(
    # Broker configuration
    broker_url=settings.celery_broker_url,
    broker_connection_retry_on_startup=True,
    broker_connection_retry=True,
    broker_connection_max_retries=10,
    # Result backend - disabled (fire-and-forget pattern, state tracked in the database)
    result_backend=None,
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Task execution
    task_track_started=True,
    task_acks_late=True,  # Acknowledge after task completion
    task_reject_on_worker_lost=True,  # Redeliver, the worker marks it interrupted
    worker_prefetch_multiplier=1,  # Only fetch one task at a time
    # Redis redelivers unacknowledged tasks after the visibility timeout; it has
    # to outlast the longest allowed run or a live task is executed twice
    broker_transport_options={
        "visibility_timeout": settings.max_sandbox_duration * 60 + VISIBILITY_MARGIN,
    },
    # Task routing
    task_routes={
        "sandbox_agents.tasks.agent_execution.*": {"queue": "agent_execution"},
        "sandbox_agents.tasks.lifecycle.*": {"queue": "lifecycle"},
    },
    # Periodic sandbox reaper (run with `celery beat`)
    beat_schedule={
        "reap-expired-sandboxes": {
            "task": "sandbox_agents.tasks.lifecycle.reap_expired_sandboxes",
            "schedule": float(settings.reaper_interval),
        },
    },
)


@setup_logging.connect
def _setup_logging(**kwargs):
    configure_logging()


# Auto-discover tasks from sandbox_agents.tasks module
app.autodiscover_tasks(["sandbox_agents.tasks"])
