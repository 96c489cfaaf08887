"""FastAPI application."""

from fastapi import Depends, FastAPI

from sandbox_agents import __version__
from sandbox_agents.api.tasks import router as tasks_router
from sandbox_agents.core.auth import verify_api_key
from sandbox_agents.core.logging import configure_logging

configure_logging()

app = FastAPI(
    title="Sandbox Agents API",
    description="Runs coding agents against repositories in remote sandboxes",
    version=__version__,
)

app.include_router(tasks_router, prefix="/v1", tags=["tasks"])


@app.get("/health")
def health_check(api_key: str = Depends(verify_api_key)):
    """Health check endpoint."""
    return {"status": "healthy"}
