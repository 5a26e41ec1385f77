"""
Database models package.

Import all models here so Alembic can discover them.
"""

from tasklink.db.models.connection import (
    Connection,
    ConnectionPublic,
    ConnectionStatus,
    WebhookStatus,
)
from tasklink.db.models.commit import Commit, CommitPublic
from tasklink.db.models.pull_request import (
    PullRequest,
    PullRequestPublic,
    PullRequestStatus,
)
from tasklink.db.models.task_link import LinkType, TaskLink, TaskLinkPublic

__all__ = [
    "Connection",
    "ConnectionPublic",
    "ConnectionStatus",
    "WebhookStatus",
    "Commit",
    "CommitPublic",
    "PullRequest",
    "PullRequestPublic",
    "PullRequestStatus",
    "LinkType",
    "TaskLink",
    "TaskLinkPublic",
]
