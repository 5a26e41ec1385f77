"""
Rate-limited GitHub REST API client.

Every call goes through :meth:`GitHubClient.request`, which

1. waits for the rate-limit window to reset when the remaining quota for the
   token has dropped to ``GITHUB_RATE_LIMIT_BUFFER`` or below,
2. sends the request with a bounded timeout,
3. records the ``X-RateLimit-*`` headers of the response,
4. classifies failures into the :mod:`tasklink.integrations.github.errors`
   taxonomy, retrying only :class:`RateLimited` with exponential backoff.

When a ``connection_id`` is passed and the client has a health reporter, the
outcome is reported after the response is back.
"""

import asyncio
import hashlib
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import httpx

from tasklink.core.config import settings
from tasklink.core.logging import get_logger
from tasklink.integrations.github.errors import (
    Forbidden,
    GitHubApiError,
    NotFound,
    RateLimited,
    Unauthorized,
    UnknownApiError,
    ValidationFailed,
)

logger = get_logger(__name__)


class HealthReporter(Protocol):
    async def record_success(self, connection_id: int) -> None: ...

    async def record_failure(self, connection_id: int, message: str) -> None: ...


@dataclass
class QuotaWindow:
    remaining: int
    reset_at: float


def _token_key(token: Optional[str]) -> str:
    if not token:
        return "anonymous"
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    if response.headers.get("X-RateLimit-Remaining") == "0":
        return True
    return "rate limit" in response.text.lower()


def _retry_after(response: httpx.Response, now: float) -> Optional[float]:
    retry_after = response.headers.get("Retry-After")
    if retry_after:
        try:
            return max(float(retry_after), 0.0)
        except ValueError:
            return None
    reset = response.headers.get("X-RateLimit-Reset")
    if reset and response.headers.get("X-RateLimit-Remaining") == "0":
        try:
            return max(float(reset) - now, 0.0)
        except ValueError:
            return None
    return None


def classify_error(response: httpx.Response, now: Optional[float] = None) -> GitHubApiError:
    """Map a non-2xx response onto the error taxonomy."""
    status = response.status_code
    body = _response_body(response)
    detail = body.get("message") if isinstance(body, dict) else None
    detail = detail or response.reason_phrase or "no detail"

    if status == 401:
        return Unauthorized(f"GitHub authentication failed: {detail}", status, body)
    if _is_rate_limited(response):
        return RateLimited(
            f"GitHub rate limit exceeded: {detail}",
            status,
            body,
            retry_after=_retry_after(response, now if now is not None else time.time()),
        )
    if status == 403:
        return Forbidden(f"GitHub access forbidden: {detail}", status, body)
    if status == 404:
        return NotFound(f"GitHub resource not found: {detail}", status, body)
    if status == 422:
        return ValidationFailed(f"GitHub validation failed: {detail}", status, body)
    return UnknownApiError(f"GitHub API error {status}: {detail}", status, body)


class GitHubClient:
    """Client for the GitHub REST API with quota tracking and typed errors."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        rate_limit_buffer: Optional[int] = None,
        max_rate_limit_wait: Optional[float] = None,
        health: Optional[HealthReporter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.GITHUB_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.GITHUB_API_TIMEOUT_SECONDS
        self.max_retries = (
            settings.GITHUB_API_MAX_RETRIES if max_retries is None else max_retries
        )
        self.retry_base_delay = (
            settings.GITHUB_API_RETRY_BASE_DELAY
            if retry_base_delay is None
            else retry_base_delay
        )
        self.retry_max_delay = retry_max_delay or settings.GITHUB_API_RETRY_MAX_DELAY
        self.rate_limit_buffer = (
            settings.GITHUB_RATE_LIMIT_BUFFER
            if rate_limit_buffer is None
            else rate_limit_buffer
        )
        self.max_rate_limit_wait = (
            max_rate_limit_wait or settings.GITHUB_RATE_LIMIT_MAX_WAIT_SECONDS
        )
        self.health = health
        self.transport = transport
        self.headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": settings.GITHUB_API_VERSION,
            "User-Agent": settings.GITHUB_USER_AGENT,
        }
        self._quota: Dict[str, QuotaWindow] = {}
        self._sleep = asyncio.sleep
        self._clock = time.time

    # ------------------------------------------------------------------
    # Core request path
    # ------------------------------------------------------------------
    async def request(
        self,
        method: str,
        endpoint: str,
        token: Optional[str],
        *,
        connection_id: Optional[int] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Send one API call and return its decoded JSON body.

        Raises:
            GitHubApiError: a classified failure, after retries for RateLimited.
        """
        url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"
        quota_key = _token_key(token)
        headers = dict(self.headers)
        if token:
            headers["Authorization"] = f"Bearer {token}"

        await self._wait_for_quota(quota_key)

        attempt = 0
        while True:
            try:
                async with httpx.AsyncClient(
                    timeout=self.timeout, transport=self.transport
                ) as client:
                    response = await client.request(
                        method, url, headers=headers, params=params, json=json
                    )
            except httpx.HTTPError as e:
                error = UnknownApiError(f"GitHub request failed: {e.__class__.__name__}")
                await self._report_failure(connection_id, error)
                raise error from e

            self._track_quota(quota_key, response)

            if response.is_success:
                await self._report_success(connection_id)
                if response.status_code == 204 or not response.content:
                    return None
                return response.json()

            error = classify_error(response, self._clock())
            if error.retryable and attempt < self.max_retries:
                delay = self._backoff_delay(attempt, error)
                logger.warning(
                    "%s %s rate limited (attempt %d/%d), retrying in %.1fs",
                    method,
                    endpoint,
                    attempt + 1,
                    self.max_retries,
                    delay,
                )
                await self._sleep(delay)
                attempt += 1
                continue

            logger.error("%s %s failed: %s", method, endpoint, error)
            await self._report_failure(connection_id, error)
            raise error

    async def get(self, endpoint: str, token: Optional[str], **kwargs) -> Any:
        return await self.request("GET", endpoint, token, **kwargs)

    async def post(self, endpoint: str, token: Optional[str], **kwargs) -> Any:
        return await self.request("POST", endpoint, token, **kwargs)

    async def delete(self, endpoint: str, token: Optional[str], **kwargs) -> Any:
        return await self.request("DELETE", endpoint, token, **kwargs)

    # ------------------------------------------------------------------
    # Quota and retry helpers
    # ------------------------------------------------------------------
    def _track_quota(self, quota_key: str, response: httpx.Response) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if remaining is None or reset is None:
            return
        try:
            self._quota[quota_key] = QuotaWindow(int(remaining), float(reset))
        except ValueError:
            logger.debug("Ignoring malformed rate-limit headers: %s/%s", remaining, reset)

    async def _wait_for_quota(self, quota_key: str) -> None:
        window = self._quota.get(quota_key)
        if window is None or window.remaining > self.rate_limit_buffer:
            return
        wait = window.reset_at - self._clock()
        if wait <= 0:
            self._quota.pop(quota_key, None)
            return
        wait = min(wait, self.max_rate_limit_wait)
        logger.warning(
            "GitHub quota low (%d remaining), delaying %.1fs until reset",
            window.remaining,
            wait,
        )
        await self._sleep(wait)
        self._quota.pop(quota_key, None)

    def _backoff_delay(self, attempt: int, error: GitHubApiError) -> float:
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return min(retry_after, self.max_rate_limit_wait)
        return min(self.retry_base_delay * (2**attempt), self.retry_max_delay)

    def quota_for(self, token: Optional[str]) -> Optional[QuotaWindow]:
        return self._quota.get(_token_key(token))

    async def _report_success(self, connection_id: Optional[int]) -> None:
        if connection_id is not None and self.health is not None:
            await self.health.record_success(connection_id)

    async def _report_failure(
        self, connection_id: Optional[int], error: GitHubApiError
    ) -> None:
        if connection_id is not None and self.health is not None:
            await self.health.record_failure(connection_id, str(error))

    # ------------------------------------------------------------------
    # Endpoints used by the engine
    # ------------------------------------------------------------------
    async def get_authenticated_user(self, token: str) -> Dict[str, Any]:
        return await self.get("/user", token)

    async def search_repositories(
        self, token: str, query: str, page: int = 1, per_page: int = 30
    ) -> Dict[str, Any]:
        """Search repositories visible to the token owner, most recently updated first."""
        params = {
            "q": f"{query.strip()} user:@me".strip(),
            "sort": "updated",
            "order": "desc",
            "page": max(page, 1),
            "per_page": max(1, min(per_page, 100)),
        }
        return await self.get("/search/repositories", token, params=params)

    async def get_repository(
        self, token: str, full_name: str, connection_id: Optional[int] = None
    ) -> Dict[str, Any]:
        return await self.get(f"/repos/{full_name}", token, connection_id=connection_id)

    async def get_commit(
        self, token: str, full_name: str, sha: str, connection_id: Optional[int] = None
    ) -> Dict[str, Any]:
        return await self.get(
            f"/repos/{full_name}/commits/{sha}", token, connection_id=connection_id
        )

    async def get_pull_request(
        self,
        token: str,
        full_name: str,
        number: int,
        connection_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await self.get(
            f"/repos/{full_name}/pulls/{number}", token, connection_id=connection_id
        )

    async def create_webhook(
        self,
        token: str,
        full_name: str,
        callback_url: str,
        secret: str,
        events: List[str],
    ) -> Dict[str, Any]:
        payload = {
            "name": "web",
            "active": True,
            "events": events,
            "config": {
                "url": callback_url,
                "content_type": "json",
                "secret": secret,
                "insecure_ssl": "0",
            },
        }
        return await self.post(f"/repos/{full_name}/hooks", token, json=payload)

    async def delete_webhook(self, token: str, full_name: str, hook_id: int) -> None:
        await self.delete(f"/repos/{full_name}/hooks/{hook_id}", token)
