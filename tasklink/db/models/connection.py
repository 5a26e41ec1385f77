"""
GitHub Connection Model and Enums

One connection binds a project to a repository.
Key: id; at most one live (non-DISCONNECTED) row per (project_id, repository_full_name).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, Index, String, text
from sqlmodel import Field, SQLModel


class ConnectionStatus(str, Enum):
    """Connection lifecycle status."""

    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    DISCONNECTED = "DISCONNECTED"


class WebhookStatus(str, Enum):
    """Webhook registration status."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ERROR = "ERROR"


# -----------------------------------------------------------------------------
# Base
# -----------------------------------------------------------------------------
class ConnectionBase(SQLModel):
    """Shared, non-secret fields for Connection."""

    project_id: int = Field(index=True, description="Owning project id")
    repository_full_name: str = Field(
        index=True, description="Repository full name, e.g., 'owner/repo'"
    )
    repository_url: Optional[str] = Field(default=None)
    status: str = Field(
        default=ConnectionStatus.ACTIVE,
        sa_column=Column(String, nullable=False, default=ConnectionStatus.ACTIVE),
    )
    webhook_status: str = Field(
        default=WebhookStatus.PENDING,
        sa_column=Column(String, nullable=False, default=WebhookStatus.PENDING),
    )
    webhook_id: Optional[int] = Field(default=None)
    error_count: int = Field(default=0)
    last_error: Optional[str] = Field(default=None)


# -----------------------------------------------------------------------------
# ORM Model (Database layer)
# -----------------------------------------------------------------------------
class Connection(ConnectionBase, table=True):
    """
    GitHub connection table.

    ``access_token_encrypted`` and ``webhook_secret`` never leave the engine;
    use :meth:`to_public` for anything returned over HTTP.
    """

    __tablename__ = "github_connection"

    id: Optional[int] = Field(default=None, primary_key=True)
    access_token_encrypted: str = Field(sa_column=Column(String, nullable=False))
    webhook_secret: Optional[str] = Field(default=None)
    token_expires_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    last_sync_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    last_webhook_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    __table_args__ = (
        Index(
            "uq_live_connection",
            "project_id",
            "repository_full_name",
            unique=True,
            postgresql_where=text("status != 'DISCONNECTED'"),
            sqlite_where=text("status != 'DISCONNECTED'"),
        ),
    )

    @property
    def is_live(self) -> bool:
        return self.status != ConnectionStatus.DISCONNECTED

    def to_public(self) -> "ConnectionPublic":
        """Convert to a credential-free public DTO."""
        return ConnectionPublic(
            id=self.id,
            project_id=self.project_id,
            repository_full_name=self.repository_full_name,
            repository_url=self.repository_url,
            status=self.status,
            webhook_status=self.webhook_status,
            webhook_id=self.webhook_id,
            error_count=self.error_count,
            last_error=self.last_error,
            last_sync_at=self.last_sync_at,
            last_webhook_at=self.last_webhook_at,
            created_at=self.created_at,
        )


# -----------------------------------------------------------------------------
# Public (Response/Read layer)
# -----------------------------------------------------------------------------
class ConnectionPublic(ConnectionBase):
    """Public DTO for Connection responses."""

    id: int
    last_sync_at: Optional[datetime] = None
    last_webhook_at: Optional[datetime] = None
    created_at: datetime
