"""
Pull Request Model

Mutable record for one pull request within a connection.
Key: (connection_id, number)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class PullRequestStatus(str, Enum):
    """Pull request status enum."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"
    DRAFT = "DRAFT"


# -----------------------------------------------------------------------------
# Base
# -----------------------------------------------------------------------------
class PullRequestBase(SQLModel):
    """Shared fields for PullRequest."""

    connection_id: int = Field(foreign_key="github_connection.id", index=True)
    number: int = Field(index=True, description="GitHub PR number")
    title: str
    description: Optional[str] = Field(
        default=None, sa_column=Column(Text, nullable=True)
    )
    author_username: Optional[str] = Field(default=None)
    head_branch: Optional[str] = Field(default=None)
    base_branch: Optional[str] = Field(default=None)
    status: str = Field(
        default=PullRequestStatus.OPEN,
        sa_column=Column(String, nullable=False, default=PullRequestStatus.OPEN),
    )
    merged: bool = Field(default=False)
    additions: Optional[int] = Field(default=None)
    deletions: Optional[int] = Field(default=None)
    changed_files: Optional[int] = Field(default=None)
    review_comments: int = Field(default=0)
    url: Optional[str] = Field(default=None)


# -----------------------------------------------------------------------------
# ORM Model (Database layer)
# -----------------------------------------------------------------------------
class PullRequest(PullRequestBase, table=True):
    """
    Pull Request table.

    Composite unique key: (connection_id, number). ``merged`` implies CLOSED.
    """

    __tablename__ = "github_pull_request"

    id: Optional[int] = Field(default=None, primary_key=True)
    opened_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    merged_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    __table_args__ = (
        UniqueConstraint("connection_id", "number", name="uq_pull_request_identity"),
    )

    def to_public(self) -> "PullRequestPublic":
        return PullRequestPublic.model_validate(self, from_attributes=True)


# -----------------------------------------------------------------------------
# Public (Response/Read layer)
# -----------------------------------------------------------------------------
class PullRequestPublic(PullRequestBase):
    """Public DTO for PullRequest responses."""

    id: int
    opened_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None
    updated_at: datetime
