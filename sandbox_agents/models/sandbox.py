"""Durable sandbox handle used for teardown bookkeeping."""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlmodel import Field, SQLModel


class SandboxRecord(SQLModel, table=True):
    """A provisioned remote sandbox and its expiry.

    Every sandbox the provisioner hands out gets a row here. The reaper
    tears down rows whose ``expires_at`` has passed and ``torn_down_at`` is
    still empty.
    """

    __tablename__ = "sandboxes"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    sandbox_id: str = Field(
        sa_column=Column(String, unique=True, index=True, nullable=False),
        description="Remote sandbox identifier",
    )
    task_id: UUID | None = Field(
        default=None,
        sa_column=Column(ForeignKey("tasks.id", ondelete="SET NULL"), index=True),
        description="Task currently owning the sandbox",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True)),
    )
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
    keep_alive: bool = Field(default=False)
    teardown_claimed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    teardown_attempts: int = Field(default=0)
    torn_down_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), index=True)
    )
