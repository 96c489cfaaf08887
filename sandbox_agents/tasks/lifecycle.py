"""Periodic sandbox cleanup."""

import logging

from sandbox_agents.celery_app import app
from sandbox_agents.services import LifecycleManager

logger = logging.getLogger(__name__)


@app.task(name="sandbox_agents.tasks.lifecycle.reap_expired_sandboxes")
def reap_expired_sandboxes(limit: int = 100) -> int:
    """Tear down every sandbox past its expiry."""
    return LifecycleManager().reap_expired(limit=limit)
