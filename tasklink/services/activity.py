"""
Activity events emitted after links are created or task status changes.

Publishing is fire-and-forget: callers go through :func:`emit`, which logs and
drops any publisher failure.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

import redis.asyncio as redis
from pydantic import BaseModel, Field

from tasklink.core.config import settings
from tasklink.core.logging import get_logger
from tasklink.core.valkey import get_valkey_client

logger = get_logger(__name__)


class ActivityType(str, Enum):
    TASK_LINKED = "TASK_LINKED"
    TASK_STATUS_CHANGED = "TASK_STATUS_CHANGED"
    TASK_COMPLETED = "TASK_COMPLETED"
    CONNECTION_CREATED = "CONNECTION_CREATED"
    CONNECTION_DISCONNECTED = "CONNECTION_DISCONNECTED"


class ActivityEvent(BaseModel):
    type: ActivityType
    connection_id: int
    task_id: Optional[int] = None
    description: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ActivityPublisher(Protocol):
    async def publish(self, event: ActivityEvent) -> None: ...


class ValkeyActivityPublisher:
    """Publishes activity events as JSON on a Valkey pub/sub channel."""

    def __init__(self, client: Optional[redis.Redis] = None, channel: Optional[str] = None):
        self._client = client
        self.channel = channel or settings.ACTIVITY_CHANNEL

    async def publish(self, event: ActivityEvent) -> None:
        client = self._client or await get_valkey_client()
        await client.publish(self.channel, event.model_dump_json())
        logger.debug("Published %s to %s", event.type.value, self.channel)


async def emit(publisher: Optional[ActivityPublisher], event: ActivityEvent) -> None:
    if publisher is None:
        return
    try:
        await publisher.publish(event)
    except Exception as e:
        logger.warning("Activity publish failed for %s: %s", event.type.value, e)
