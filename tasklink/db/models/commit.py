"""
Commit Model

One externally observed commit.
Key: sha (globally unique)
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel


# -----------------------------------------------------------------------------
# Base
# -----------------------------------------------------------------------------
class CommitBase(SQLModel):
    """Shared fields for Commit."""

    sha: str = Field(unique=True, index=True, description="Full commit SHA")
    connection_id: int = Field(foreign_key="github_connection.id", index=True)
    author_name: Optional[str] = Field(default=None)
    author_email: Optional[str] = Field(default=None)
    author_username: Optional[str] = Field(default=None)
    committer_name: Optional[str] = Field(default=None)
    committer_email: Optional[str] = Field(default=None)
    message: str = Field(sa_column=Column(Text, nullable=False))
    branch_name: Optional[str] = Field(default=None)
    additions: Optional[int] = Field(default=None)
    deletions: Optional[int] = Field(default=None)
    changed_files: Optional[int] = Field(default=None)
    url: Optional[str] = Field(default=None)


# -----------------------------------------------------------------------------
# ORM Model (Database layer)
# -----------------------------------------------------------------------------
class Commit(CommitBase, table=True):
    """
    Commit table.

    Authorship and message are written once; upserts only touch branch and stats.
    """

    __tablename__ = "github_commit"

    id: Optional[int] = Field(default=None, primary_key=True)
    committed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )

    @property
    def short_sha(self) -> str:
        return self.sha[:7]

    def to_public(self) -> "CommitPublic":
        return CommitPublic.model_validate(self, from_attributes=True)


# -----------------------------------------------------------------------------
# Public (Response/Read layer)
# -----------------------------------------------------------------------------
class CommitPublic(CommitBase):
    """Public DTO for Commit responses."""

    id: int
    committed_at: Optional[datetime] = None
    created_at: datetime
