"""Task message model: the ordered, append-only task log."""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class TaskMessage(SQLModel, table=True):
    """Log line or structured event produced while a task executes.

    Ordering is ``seq``, numbered per task from 1 without gaps. Numbers are
    taken from ``tasks.message_seq`` inside the inserting transaction, so the
    task row lock makes writers commit in sequence order.
    """

    __tablename__ = "task_messages"
    __table_args__ = (UniqueConstraint("task_id", "seq"),)

    id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True)),
        description="Timestamp when the message was appended",
    )

    task_id: UUID = Field(
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="CASCADE"), index=True, nullable=False
        ),
        description="ID of the task this message belongs to",
    )
    seq: int = Field(
        sa_column=Column(Integer, nullable=False),
        description="Position of the message in its task's log",
    )

    kind: str = Field(
        default="log",
        sa_column=Column(String, nullable=False),
        description="log (agent output) or event (orchestrator notice)",
    )
    stream: str = Field(
        default="stdout",
        sa_column=Column(String, nullable=False),
        description="stdout, stderr or system",
    )
    content: str = Field(sa_column=Column(Text, nullable=False))
