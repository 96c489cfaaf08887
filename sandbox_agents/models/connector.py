"""MCP server connector configuration."""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel


class Connector(SQLModel, table=True):
    """User-scoped MCP server an agent run may reference."""

    __tablename__ = "connectors"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(index=True)
    name: str
    transport: str = Field(default="local", description="local (stdio) or remote (http)")
    command: str | None = Field(default=None, description="Launch command for local servers")
    url: str | None = Field(default=None, description="Endpoint for remote servers")
    env_encrypted: str | None = Field(
        default=None,
        sa_column=Column(Text),
        description="Fernet-encrypted JSON environment",
    )
    enabled: bool = Field(default=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True)),
    )
