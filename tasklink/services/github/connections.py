"""
Connection lifecycle: connect a repository, disconnect it, run a manual sync,
and search the repositories a token can see.
"""

import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from tasklink.core.config import settings
from tasklink.core.crypto import TokenCipher, get_token_cipher
from tasklink.core.dispatcher import KeyedDispatcher, get_dispatcher
from tasklink.core.logging import get_logger
from tasklink.db.models.commit import Commit
from tasklink.db.models.connection import Connection, ConnectionStatus, WebhookStatus
from tasklink.db.models.pull_request import PullRequest, PullRequestStatus
from tasklink.db.session import AsyncSessionLocal
from tasklink.integrations.github.client import GitHubClient
from tasklink.integrations.github.errors import GitHubApiError
from tasklink.integrations.github.payloads import PullRequestPayload
from tasklink.services.activity import (
    ActivityEvent,
    ActivityPublisher,
    ActivityType,
    emit,
)
from tasklink.services.github.exceptions import (
    ConnectionExistsError,
    ConnectionNotFoundError,
    ConnectionUnavailableError,
)
from tasklink.services.github.health import ConnectionHealthMonitor
from tasklink.services.github.sync_engine import LinkOutcome, SyncEngine

logger = get_logger(__name__)


class SyncResults(BaseModel):
    connection_id: int
    commits_processed: int = 0
    pull_requests_processed: int = 0
    task_links_created: int = 0
    tasks_updated: int = 0
    errors: List[str] = Field(default_factory=list)

    def absorb(self, outcome: LinkOutcome) -> None:
        self.task_links_created += len(outcome.links_created)
        self.tasks_updated += len(outcome.tasks_completed) + len(
            outcome.tasks_transitioned
        )
        self.errors.extend(outcome.errors)


class RepositorySummary(BaseModel):
    id: int
    full_name: str
    name: str
    owner: Optional[str] = None
    private: bool = False
    html_url: Optional[str] = None
    description: Optional[str] = None
    default_branch: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "RepositorySummary":
        return cls(
            id=item["id"],
            full_name=item["full_name"],
            name=item.get("name") or item["full_name"].split("/")[-1],
            owner=(item.get("owner") or {}).get("login"),
            private=item.get("private", False),
            html_url=item.get("html_url"),
            description=item.get("description"),
            default_branch=item.get("default_branch"),
            updated_at=item.get("updated_at"),
        )


class RepositorySearchResult(BaseModel):
    total_count: int
    page: int
    per_page: int
    items: List[RepositorySummary]


class ConnectionService:
    def __init__(
        self,
        github: GitHubClient,
        health: ConnectionHealthMonitor,
        engine: SyncEngine,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        cipher: Optional[TokenCipher] = None,
        publisher: Optional[ActivityPublisher] = None,
        callback_url: Optional[str] = None,
        dispatcher: Optional[KeyedDispatcher] = None,
    ):
        self.github = github
        self.health = health
        self.engine = engine
        self.session_factory = session_factory or AsyncSessionLocal
        self.cipher = cipher or get_token_cipher()
        self.publisher = publisher
        self.callback_url = callback_url or settings.WEBHOOK_CALLBACK_URL
        self.dispatcher = dispatcher or get_dispatcher()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_connection(self, connection_id: int) -> Connection:
        async with self.session_factory() as session:
            connection = await session.get(Connection, connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return connection

    async def list_connections(
        self, project_id: int, include_disconnected: bool = False
    ) -> List[Connection]:
        statement = select(Connection).where(Connection.project_id == project_id)
        if not include_disconnected:
            statement = statement.where(
                Connection.status != ConnectionStatus.DISCONNECTED
            )
        async with self.session_factory() as session:
            result = await session.exec(statement.order_by(Connection.created_at))
            return list(result.all())

    def access_token_for(self, connection: Connection) -> str:
        return self.cipher.decrypt(connection.access_token_encrypted)

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------
    async def create_connection(
        self,
        project_id: int,
        repository_full_name: str,
        access_token: str,
        token_expires_at: Optional[datetime] = None,
    ) -> Connection:
        """
        Connect ``repository_full_name`` to ``project_id`` and register its webhook.

        Raises:
            ConnectionExistsError: the project already has a live connection to it.
            GitHubApiError: the token cannot read the repository.
        """
        full_name = repository_full_name.strip().strip("/")
        await self._ensure_no_live_connection(project_id, full_name)

        repository = await self.github.get_repository(access_token, full_name)
        full_name = repository.get("full_name", full_name)
        webhook_secret = secrets.token_hex(20)

        connection = Connection(
            project_id=project_id,
            repository_full_name=full_name,
            repository_url=repository.get("html_url"),
            access_token_encrypted=self.cipher.encrypt(access_token),
            webhook_secret=webhook_secret,
            token_expires_at=token_expires_at,
            status=ConnectionStatus.ACTIVE,
            webhook_status=WebhookStatus.PENDING,
        )
        async with self.session_factory() as session:
            session.add(connection)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConnectionExistsError(
                    f"Project {project_id} is already connected to {full_name}"
                ) from e
            await session.refresh(connection)

        logger.info(
            "Connected project %s to %s (connection %s)",
            project_id,
            full_name,
            connection.id,
        )
        await self._register_webhook(connection, access_token, webhook_secret)
        await emit(
            self.publisher,
            ActivityEvent(
                type=ActivityType.CONNECTION_CREATED,
                connection_id=connection.id,
                description=f"Repository {full_name} connected",
            ),
        )
        return await self.get_connection(connection.id)

    async def _ensure_no_live_connection(self, project_id: int, full_name: str) -> None:
        async with self.session_factory() as session:
            result = await session.exec(
                select(Connection.id).where(
                    Connection.project_id == project_id,
                    func.lower(Connection.repository_full_name) == full_name.lower(),
                    Connection.status != ConnectionStatus.DISCONNECTED,
                )
            )
            if result.first() is not None:
                raise ConnectionExistsError(
                    f"Project {project_id} is already connected to {full_name}"
                )

    async def _register_webhook(
        self, connection: Connection, access_token: str, webhook_secret: str
    ) -> None:
        if not self.callback_url:
            logger.info(
                "No webhook callback URL configured; connection %s webhook stays PENDING",
                connection.id,
            )
            return
        try:
            hook = await self.github.create_webhook(
                access_token,
                connection.repository_full_name,
                self.callback_url,
                webhook_secret,
                settings.WEBHOOK_EVENTS,
            )
        except GitHubApiError as e:
            await self.health.update_webhook(connection.id, WebhookStatus.ERROR)
            await self.health.record_failure(connection.id, f"Webhook creation failed: {e}")
            return
        await self.health.update_webhook(
            connection.id, WebhookStatus.ACTIVE, (hook or {}).get("id")
        )

    async def disconnect_connection(self, connection_id: int) -> Connection:
        """Soft-delete: the row stays for its task links, the webhook is removed."""
        connection = await self.get_connection(connection_id)
        if connection.status == ConnectionStatus.DISCONNECTED:
            return connection

        if connection.webhook_id is not None:
            try:
                await self.github.delete_webhook(
                    self.access_token_for(connection),
                    connection.repository_full_name,
                    connection.webhook_id,
                )
            except GitHubApiError as e:
                logger.warning(
                    "Could not delete webhook %s of connection %s: %s",
                    connection.webhook_id,
                    connection_id,
                    e,
                )

        connection = await self.health.disconnect(connection_id)
        await emit(
            self.publisher,
            ActivityEvent(
                type=ActivityType.CONNECTION_DISCONNECTED,
                connection_id=connection_id,
                description=f"Repository {connection.repository_full_name} disconnected",
            ),
        )
        return connection

    # ------------------------------------------------------------------
    # Manual sync
    # ------------------------------------------------------------------
    async def sync_connection(self, connection_id: int) -> SyncResults:
        """
        Catch up on anything webhooks may have missed.

        1. Fetch every non-closed PR from the API (picks up missed merges).
        2. On the connection's dispatcher worker, ingest the fetched PRs and
           re-link commits and PRs stored since the last sync.
        3. Stamp ``last_sync_at`` if no API call failed.

        API calls happen before the job is queued, so the worker never waits
        on GitHub while webhook jobs for the same connection queue behind it.
        """
        connection = await self.get_connection(connection_id)
        if connection.status == ConnectionStatus.DISCONNECTED:
            raise ConnectionUnavailableError(f"Connection {connection_id} is disconnected")

        token = self.access_token_for(connection)
        since = connection.last_sync_at
        results = SyncResults(connection_id=connection_id)
        api_failures = 0

        async with self.session_factory() as session:
            open_prs = (
                await session.exec(
                    select(PullRequest).where(
                        PullRequest.connection_id == connection_id,
                        PullRequest.status != PullRequestStatus.CLOSED,
                    )
                )
            ).all()

        fetched: List[Tuple[int, PullRequestPayload]] = []
        for pull_request in open_prs:
            try:
                data = await self.github.get_pull_request(
                    token,
                    connection.repository_full_name,
                    pull_request.number,
                    connection_id=connection_id,
                )
            except GitHubApiError as e:
                api_failures += 1
                results.errors.append(f"PR #{pull_request.number}: {e}")
                continue
            fetched.append((pull_request.id, PullRequestPayload.model_validate(data)))

        future = await self.dispatcher.submit(
            connection_id, lambda: self._apply_sync(connection_id, since, fetched, results)
        )
        await future

        if api_failures == 0:
            await self.health.record_success(connection_id, synced=True)

        logger.info(
            "Synced connection %s: %d commits, %d PRs, %d links, %d task updates, %d errors",
            connection_id,
            results.commits_processed,
            results.pull_requests_processed,
            results.task_links_created,
            results.tasks_updated,
            len(results.errors),
        )
        return results

    async def _apply_sync(
        self,
        connection_id: int,
        since: Optional[datetime],
        fetched: List[Tuple[int, PullRequestPayload]],
        results: SyncResults,
    ) -> None:
        refreshed = set()
        for pull_request_id, payload in fetched:
            outcome = await self.engine.ingest_pull_request(connection_id, payload)
            refreshed.add(pull_request_id)
            results.pull_requests_processed += 1
            results.absorb(outcome)

        async with self.session_factory() as session:
            commit_query = select(Commit).where(Commit.connection_id == connection_id)
            pr_query = select(PullRequest).where(
                PullRequest.connection_id == connection_id
            )
            if since is not None:
                commit_query = commit_query.where(Commit.created_at >= since)
                pr_query = pr_query.where(PullRequest.updated_at >= since)
            commits = (await session.exec(commit_query.order_by(Commit.id))).all()
            pull_requests = [
                pr
                for pr in (await session.exec(pr_query.order_by(PullRequest.id))).all()
                if pr.id not in refreshed
            ]

        results.absorb(await self.engine.relink_commits(connection_id, commits))
        results.commits_processed += len(commits)
        results.absorb(await self.engine.relink_pull_requests(connection_id, pull_requests))
        results.pull_requests_processed += len(pull_requests)

    # ------------------------------------------------------------------
    # Repository search
    # ------------------------------------------------------------------
    async def search_repositories(
        self, access_token: str, query: str, page: int = 1, per_page: int = 30
    ) -> RepositorySearchResult:
        per_page = max(1, min(per_page, 100))
        data = await self.github.search_repositories(access_token, query, page, per_page)
        return RepositorySearchResult(
            total_count=data.get("total_count", 0),
            page=page,
            per_page=per_page,
            items=[RepositorySummary.from_api(item) for item in data.get("items", [])],
        )
