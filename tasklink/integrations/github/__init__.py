"""
GitHub REST, OAuth and webhook payload integration.
"""

from tasklink.integrations.github.client import GitHubClient
from tasklink.integrations.github.errors import (
    AuthStateError,
    GitHubApiError,
    OAuthExchangeError,
)

__all__ = ["GitHubClient", "GitHubApiError", "AuthStateError", "OAuthExchangeError"]
