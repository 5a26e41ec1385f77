"""
DTOs for the /github routes.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlmodel import Field, SQLModel

from tasklink.db.models.connection import ConnectionPublic
from tasklink.db.models.task_link import LinkType, TaskLinkPublic
from tasklink.services.github.health import ConnectionHealth


class ConnectionCreate(SQLModel):
    project_id: int
    repository_full_name: str = Field(min_length=3, description="owner/repo")
    access_token: str = Field(min_length=1)
    token_expires_at: Optional[datetime] = None


class ConnectionDetail(SQLModel):
    connection: ConnectionPublic
    health: ConnectionHealth


class RepositorySearchRequest(SQLModel):
    access_token: str = Field(min_length=1)
    query: str = ""
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=30, ge=1, le=100)


class ManualLinkCreate(SQLModel):
    task_id: int
    link_type: LinkType = LinkType.REFERENCE


class ManualLinkResult(SQLModel):
    link: TaskLinkPublic
    created: bool


class OAuthCallbackResult(SQLModel):
    """
    Returned to the frontend, which then creates the connection with the token.
    """

    project_id: int
    access_token: str
    token_type: str
    scope: str
    user: Dict[str, Any]


class WebhookResponse(SQLModel):
    accepted: bool
    reason: str
    detail: str = ""
    queued: bool = False
    actions: List[str] = []
