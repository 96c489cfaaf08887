"""Owner profile and encrypted credential models."""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import Column, DateTime, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class UserProfile(SQLModel, table=True):
    """Identity used for commit authorship."""

    __tablename__ = "user_profiles"

    id: str = Field(primary_key=True, description="Owner identifier")
    name: str | None = Field(default=None)
    email: str | None = Field(default=None)
    github_login: str | None = Field(default=None)


class UserCredential(SQLModel, table=True):
    """Per-user secret for one provider, encrypted with the store key."""

    __tablename__ = "user_credentials"
    __table_args__ = (UniqueConstraint("owner_id", "provider"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: str = Field(index=True)
    provider: str = Field(description="github, anthropic, openai, gemini, cursor")
    encrypted_value: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True)),
    )
