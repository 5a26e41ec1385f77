"""
Request and response DTOs for the HTTP layer.
"""

from tasklink.schemas.github import (
    ConnectionCreate,
    ConnectionDetail,
    ManualLinkCreate,
    ManualLinkResult,
    OAuthCallbackResult,
    RepositorySearchRequest,
    WebhookResponse,
)

__all__ = [
    "ConnectionCreate",
    "ConnectionDetail",
    "ManualLinkCreate",
    "ManualLinkResult",
    "OAuthCallbackResult",
    "RepositorySearchRequest",
    "WebhookResponse",
]
