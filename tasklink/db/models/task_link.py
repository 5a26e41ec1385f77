"""
Task Link Model

Typed association between a commit or pull request and an external task.
Key: (commit_id, task_id, link_type) or (pull_request_id, task_id, link_type)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import CheckConstraint, Column, DateTime, String, UniqueConstraint
from sqlmodel import Field, SQLModel


class LinkType(str, Enum):
    """How a commit or PR refers to a task."""

    REFERENCE = "REFERENCE"
    CLOSES = "CLOSES"
    FIXES = "FIXES"
    RESOLVES = "RESOLVES"

    @property
    def is_closing(self) -> bool:
        return self is not LinkType.REFERENCE


# -----------------------------------------------------------------------------
# Base
# -----------------------------------------------------------------------------
class TaskLinkBase(SQLModel):
    """Shared fields for TaskLink."""

    task_id: int = Field(index=True)
    link_type: str = Field(sa_column=Column(String, nullable=False))
    reference_text: Optional[str] = Field(default=None)
    auto_status_update: bool = Field(default=True)
    commit_id: Optional[int] = Field(
        default=None, foreign_key="github_commit.id", index=True
    )
    pull_request_id: Optional[int] = Field(
        default=None, foreign_key="github_pull_request.id", index=True
    )


# -----------------------------------------------------------------------------
# ORM Model (Database layer)
# -----------------------------------------------------------------------------
class TaskLink(TaskLinkBase, table=True):
    """
    Task link table. Exactly one of commit_id / pull_request_id is set.
    """

    __tablename__ = "github_task_link"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    __table_args__ = (
        UniqueConstraint(
            "commit_id", "task_id", "link_type", name="uq_task_link_commit"
        ),
        UniqueConstraint(
            "pull_request_id", "task_id", "link_type", name="uq_task_link_pull_request"
        ),
        CheckConstraint(
            "(commit_id IS NULL) <> (pull_request_id IS NULL)",
            name="ck_task_link_single_source",
        ),
    )

    @property
    def is_closing(self) -> bool:
        return LinkType(self.link_type).is_closing

    def to_public(self) -> "TaskLinkPublic":
        return TaskLinkPublic.model_validate(self, from_attributes=True)


# -----------------------------------------------------------------------------
# Public (Response/Read layer)
# -----------------------------------------------------------------------------
class TaskLinkPublic(TaskLinkBase):
    """Public DTO for TaskLink responses."""

    id: int
    created_at: datetime
