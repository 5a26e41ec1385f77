"""
Exception taxonomy for GitHub REST and OAuth calls.
"""

from typing import Any, Optional


class GitHubApiError(Exception):
    """Base class for classified GitHub REST API failures."""

    retryable = False

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class Unauthorized(GitHubApiError):
    """401: the access token is invalid or revoked."""


class RateLimited(GitHubApiError):
    """403/429 caused by primary or secondary rate limits."""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Any = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code, body)
        self.retry_after = retry_after


class Forbidden(GitHubApiError):
    """403 not caused by rate limiting."""


class NotFound(GitHubApiError):
    """404."""


class ValidationFailed(GitHubApiError):
    """422: GitHub rejected the request body."""


class UnknownApiError(GitHubApiError):
    """Any other non-2xx status, or a transport failure (status_code is None)."""


class AuthStateError(Exception):
    """OAuth state was invalid, expired, already used, or the code was missing."""


class OAuthExchangeError(Exception):
    """The provider refused to exchange the authorization code."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.error_code = error_code
