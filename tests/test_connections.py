"""
Unit tests for the connection service.
"""

import asyncio
import json

import httpx
import pytest

from tasklink.core.crypto import get_token_cipher
from tasklink.db.models.connection import ConnectionStatus, WebhookStatus
from tasklink.integrations.github.client import GitHubClient
from tasklink.integrations.github.errors import NotFound
from tasklink.services.github.connections import ConnectionService
from tasklink.services.github.exceptions import (
    ConnectionExistsError,
    ConnectionNotFoundError,
    ConnectionUnavailableError,
)
from tasklink.services.tasks import TaskStatus
from tests.conftest import ACCESS_TOKEN, make_commit, make_pull_request


class FakeGitHub:
    """Routes requests by (method, path) to canned responses and records them."""

    def __init__(self):
        self.routes = {
            ("GET", "/repos/acme/widgets"): httpx.Response(
                200,
                json={
                    "id": 1,
                    "full_name": "acme/widgets",
                    "html_url": "https://github.com/acme/widgets",
                },
            ),
            ("POST", "/repos/acme/widgets/hooks"): httpx.Response(201, json={"id": 555}),
            ("DELETE", "/repos/acme/widgets/hooks/555"): httpx.Response(204),
            ("DELETE", "/repos/acme/widgets/hooks/77"): httpx.Response(204),
        }
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.routes.get((request.method, request.url.path))
        if response is None:
            return httpx.Response(404, json={"message": "Not Found"})
        return response

    def calls(self, method, path):
        return [r for r in self.requests if r.method == method and r.url.path == path]


@pytest.fixture
def github():
    return FakeGitHub()


@pytest.fixture
def service(github, health, sync_engine, session_factory, publisher, dispatcher):
    client = GitHubClient(
        "https://api.github.test",
        transport=httpx.MockTransport(github),
        health=health,
        max_retries=0,
    )
    return ConnectionService(
        client,
        health,
        sync_engine,
        session_factory=session_factory,
        publisher=publisher,
        callback_url="https://tasklink.test/api/v1/github/webhook",
        dispatcher=dispatcher,
    )


class TestCreateConnection:
    """Tests for create_connection."""

    async def test_creates_connection_and_webhook(self, service, github, publisher):
        connection = await service.create_connection(1, "acme/widgets", ACCESS_TOKEN)

        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.webhook_status == WebhookStatus.ACTIVE
        assert connection.webhook_id == 555
        assert connection.repository_url == "https://github.com/acme/widgets"
        assert connection.access_token_encrypted != ACCESS_TOKEN
        assert get_token_cipher().decrypt(connection.access_token_encrypted) == ACCESS_TOKEN

        (hook_request,) = github.calls("POST", "/repos/acme/widgets/hooks")
        hook = json.loads(hook_request.content)
        assert hook["config"]["secret"] == connection.webhook_secret
        assert hook["config"]["url"] == "https://tasklink.test/api/v1/github/webhook"
        assert "CONNECTION_CREATED" in publisher.types()

    async def test_public_view_has_no_secrets(self, service):
        connection = await service.create_connection(1, "acme/widgets", ACCESS_TOKEN)
        public = connection.to_public().model_dump()
        assert "access_token_encrypted" not in public
        assert "webhook_secret" not in public

    async def test_duplicate_live_connection_is_refused(self, service):
        await service.create_connection(1, "acme/widgets", ACCESS_TOKEN)
        with pytest.raises(ConnectionExistsError):
            await service.create_connection(1, "ACME/widgets", ACCESS_TOKEN)

    async def test_reconnect_after_disconnect(self, service):
        first = await service.create_connection(1, "acme/widgets", ACCESS_TOKEN)
        await service.disconnect_connection(first.id)

        second = await service.create_connection(1, "acme/widgets", ACCESS_TOKEN)

        assert second.id != first.id
        assert second.status == ConnectionStatus.ACTIVE

    async def test_webhook_failure_leaves_connection_usable(self, service, github):
        github.routes[("POST", "/repos/acme/widgets/hooks")] = httpx.Response(
            422, json={"message": "Hook already exists"}
        )

        connection = await service.create_connection(1, "acme/widgets", ACCESS_TOKEN)

        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.webhook_status == WebhookStatus.ERROR
        assert connection.error_count == 1
        assert "Webhook creation failed" in connection.last_error

    async def test_inaccessible_repository(self, service):
        with pytest.raises(NotFound):
            await service.create_connection(1, "acme/private", ACCESS_TOKEN)
        assert await service.list_connections(1) == []


class TestDisconnect:
    """Tests for disconnect_connection."""

    async def test_disconnect_deletes_hook_and_is_terminal(
        self, service, github, publisher
    ):
        connection = await service.create_connection(1, "acme/widgets", ACCESS_TOKEN)

        disconnected = await service.disconnect_connection(connection.id)

        assert disconnected.status == ConnectionStatus.DISCONNECTED
        assert disconnected.webhook_status == WebhookStatus.INACTIVE
        assert len(github.calls("DELETE", "/repos/acme/widgets/hooks/555")) == 1
        assert "CONNECTION_DISCONNECTED" in publisher.types()

        # Second call is a no-op
        await service.disconnect_connection(connection.id)
        assert len(github.calls("DELETE", "/repos/acme/widgets/hooks/555")) == 1

    async def test_hook_delete_failure_does_not_block(self, service, github):
        connection = await service.create_connection(1, "acme/widgets", ACCESS_TOKEN)
        github.routes[("DELETE", "/repos/acme/widgets/hooks/555")] = httpx.Response(
            500, json={"message": "oops"}
        )

        disconnected = await service.disconnect_connection(connection.id)

        assert disconnected.status == ConnectionStatus.DISCONNECTED

    async def test_unknown_connection(self, service):
        with pytest.raises(ConnectionNotFoundError):
            await service.disconnect_connection(404)


class TestListAndGet:
    async def test_list_hides_disconnected_by_default(self, service):
        connection = await service.create_connection(1, "acme/widgets", ACCESS_TOKEN)
        await service.disconnect_connection(connection.id)

        assert await service.list_connections(1) == []
        assert len(await service.list_connections(1, include_disconnected=True)) == 1


class TestSyncConnection:
    """Tests for sync_connection."""

    async def test_refreshes_open_pull_requests_and_relinks(
        self, service, github, sync_engine, tasks, connection, session_factory
    ):
        tasks.add(10, TaskStatus.REVIEW)
        await sync_engine.ingest_pull_request(
            connection.id, make_pull_request(number=5, body="Closes #10")
        )
        await sync_engine.ingest_commit(
            connection.id, make_commit(message="Prep for #11"), "main"
        )
        tasks.add(11, TaskStatus.TODO)

        github.routes[("GET", "/repos/acme/widgets/pulls/5")] = httpx.Response(
            200,
            json={
                "number": 5,
                "title": "Feature",
                "body": "Closes #10",
                "state": "closed",
                "merged": True,
                "merged_at": "2026-10-03T10:00:00Z",
            },
        )

        results = await service.sync_connection(connection.id)

        assert results.pull_requests_processed == 1
        assert results.commits_processed == 1
        assert results.task_links_created == 1
        assert tasks.completed == [10]
        assert (11, TaskStatus.IN_PROGRESS) in tasks.transitions
        assert results.errors == []

        refreshed = await service.get_connection(connection.id)
        assert refreshed.last_sync_at is not None

    async def test_api_failure_is_reported_and_sync_not_stamped(
        self, service, sync_engine, connection
    ):
        await sync_engine.ingest_pull_request(connection.id, make_pull_request(number=9))

        results = await service.sync_connection(connection.id)

        assert len(results.errors) == 1
        assert "PR #9" in results.errors[0]
        refreshed = await service.get_connection(connection.id)
        assert refreshed.last_sync_at is None
        assert refreshed.error_count == 1

    async def test_sync_runs_behind_queued_work_for_the_connection(
        self, service, dispatcher, sync_engine, tasks, connection
    ):
        await sync_engine.ingest_commit(
            connection.id, make_commit(message="Prep for #11"), "main"
        )
        tasks.add(11, TaskStatus.TODO)
        gate = asyncio.Event()

        async def webhook_job():
            await gate.wait()

        await dispatcher.submit(connection.id, webhook_job)
        sync = asyncio.create_task(service.sync_connection(connection.id))
        await asyncio.sleep(0.05)

        assert not sync.done()
        assert tasks.transitions == []

        gate.set()
        results = await asyncio.wait_for(sync, 1)
        assert results.commits_processed == 1
        assert tasks.transitions == [(11, TaskStatus.IN_PROGRESS)]

    async def test_disconnected_connection_cannot_sync(self, service, health, connection):
        await health.disconnect(connection.id)
        with pytest.raises(ConnectionUnavailableError):
            await service.sync_connection(connection.id)


class TestSearchRepositories:
    async def test_maps_items(self, service, github):
        github.routes[("GET", "/search/repositories")] = httpx.Response(
            200,
            json={
                "total_count": 1,
                "items": [
                    {
                        "id": 3,
                        "full_name": "acme/widgets",
                        "name": "widgets",
                        "owner": {"login": "acme"},
                        "private": True,
                        "default_branch": "main",
                    }
                ],
            },
        )

        result = await service.search_repositories(ACCESS_TOKEN, "widg", per_page=250)

        assert result.total_count == 1
        assert result.per_page == 100
        assert result.items[0].owner == "acme"
        assert result.items[0].private
