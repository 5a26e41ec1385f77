"""
Service providers for FastAPI routes.

Stateful collaborators (health monitor, GitHub client, dispatcher) are process
singletons; the rest are cheap and built per request.
"""

from typing import Annotated, Optional

import redis.asyncio as redis
from fastapi import Depends

from tasklink.core.dispatcher import KeyedDispatcher, get_dispatcher
from tasklink.core.valkey import get_valkey_client
from tasklink.integrations.github.client import GitHubClient
from tasklink.integrations.github.oauth import OAuthBroker
from tasklink.services.activity import ActivityPublisher, ValkeyActivityPublisher
from tasklink.services.github.connections import ConnectionService
from tasklink.services.github.health import ConnectionHealthMonitor
from tasklink.services.github.sync_engine import SyncEngine
from tasklink.services.github.webhook_service import WebhookProcessor
from tasklink.services.tasks import HttpTaskRepository, TaskRepository

_health_monitor: Optional[ConnectionHealthMonitor] = None
_github_client: Optional[GitHubClient] = None


def get_health_monitor() -> ConnectionHealthMonitor:
    global _health_monitor
    if _health_monitor is None:
        _health_monitor = ConnectionHealthMonitor()
    return _health_monitor


def get_github_client() -> GitHubClient:
    """The API client shares quota state across requests and reports to health."""
    global _github_client
    if _github_client is None:
        _github_client = GitHubClient(health=get_health_monitor())
    return _github_client


def get_task_repository() -> TaskRepository:
    return HttpTaskRepository()


async def get_valkey() -> redis.Redis:
    return await get_valkey_client()


def get_activity_publisher(
    client: Annotated[redis.Redis, Depends(get_valkey)],
) -> ActivityPublisher:
    return ValkeyActivityPublisher(client)


def get_sync_engine(
    tasks: Annotated[TaskRepository, Depends(get_task_repository)],
    publisher: Annotated[ActivityPublisher, Depends(get_activity_publisher)],
) -> SyncEngine:
    return SyncEngine(tasks, publisher=publisher)


def get_webhook_dispatcher() -> KeyedDispatcher:
    return get_dispatcher()


def get_webhook_processor(
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
    health: Annotated[ConnectionHealthMonitor, Depends(get_health_monitor)],
    client: Annotated[redis.Redis, Depends(get_valkey)],
    dispatcher: Annotated[KeyedDispatcher, Depends(get_webhook_dispatcher)],
) -> WebhookProcessor:
    return WebhookProcessor(engine, health, client, dispatcher)


def get_oauth_broker(
    client: Annotated[redis.Redis, Depends(get_valkey)],
    github: Annotated[GitHubClient, Depends(get_github_client)],
) -> OAuthBroker:
    return OAuthBroker(client, github)


def get_connection_service(
    github: Annotated[GitHubClient, Depends(get_github_client)],
    health: Annotated[ConnectionHealthMonitor, Depends(get_health_monitor)],
    engine: Annotated[SyncEngine, Depends(get_sync_engine)],
    publisher: Annotated[ActivityPublisher, Depends(get_activity_publisher)],
    dispatcher: Annotated[KeyedDispatcher, Depends(get_webhook_dispatcher)],
) -> ConnectionService:
    return ConnectionService(
        github, health, engine, publisher=publisher, dispatcher=dispatcher
    )


HealthMonitorDep = Annotated[ConnectionHealthMonitor, Depends(get_health_monitor)]
SyncEngineDep = Annotated[SyncEngine, Depends(get_sync_engine)]
WebhookProcessorDep = Annotated[WebhookProcessor, Depends(get_webhook_processor)]
OAuthBrokerDep = Annotated[OAuthBroker, Depends(get_oauth_broker)]
ConnectionServiceDep = Annotated[ConnectionService, Depends(get_connection_service)]
