"""
Shared fixtures: in-memory SQLite database, fake Valkey, fake task service.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault(
    "CREDENTIAL_ENCRYPTION_KEY", "ZmVybmV0LXRlc3Qta2V5LTMyLWJ5dGVzLWxvbmchISE="
)
os.environ.setdefault(
    "OAUTH_STATE_SECRET", "test-oauth-state-secret-with-enough-entropy-0123456789"
)
os.environ.setdefault("GITHUB_CLIENT_ID", "client-123")
os.environ.setdefault("GITHUB_CLIENT_SECRET", "client-secret-456")

from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, List, Optional, Set, Tuple

import fakeredis
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from tasklink.core.crypto import get_token_cipher
from tasklink.core.dispatcher import KeyedDispatcher
from tasklink.db import models  # noqa: F401
from tasklink.db.models.connection import Connection, ConnectionStatus, WebhookStatus
from tasklink.db.session import build_session_factory
from tasklink.integrations.github.payloads import PullRequestPayload, PushCommit
from tasklink.services.activity import ActivityEvent
from tasklink.services.github.health import ConnectionHealthMonitor
from tasklink.services.github.sync_engine import SyncEngine
from tasklink.services.tasks import TaskInfo, TaskServiceError, TaskStatus

WEBHOOK_SECRET = "s3cret-webhook"
ACCESS_TOKEN = "gho_test_token"


class FakeTaskRepository:
    """In-memory task service that records every status call."""

    def __init__(self):
        self.tasks: Dict[int, TaskInfo] = {}
        self.completed: List[int] = []
        self.transitions: List[Tuple[int, TaskStatus]] = []
        self.failing: Set[int] = set()

    def add(
        self,
        task_id: int,
        status: TaskStatus = TaskStatus.TODO,
        project_id: Optional[int] = 1,
    ) -> TaskInfo:
        task = TaskInfo(id=task_id, status=status, project_id=project_id)
        self.tasks[task_id] = task
        return task

    async def find_task(self, task_id: int) -> Optional[TaskInfo]:
        if task_id in self.failing:
            raise TaskServiceError(f"task service unavailable for {task_id}")
        task = self.tasks.get(task_id)
        return task.model_copy() if task else None

    async def complete_task(self, task_id: int) -> None:
        self.completed.append(task_id)
        self.tasks[task_id] = self.tasks[task_id].model_copy(
            update={"status": TaskStatus.DONE}
        )

    async def transition_status(self, task_id: int, status: TaskStatus) -> None:
        self.transitions.append((task_id, status))
        self.tasks[task_id] = self.tasks[task_id].model_copy(update={"status": status})


class RecordingPublisher:
    def __init__(self):
        self.events: List[ActivityEvent] = []

    async def publish(self, event: ActivityEvent) -> None:
        self.events.append(event)

    def types(self) -> List[str]:
        return [event.type.value for event in self.events]


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
async def redis_client() -> AsyncGenerator[fakeredis.FakeAsyncRedis, None]:
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushdb()
    await client.aclose()


@pytest.fixture
def tasks() -> FakeTaskRepository:
    return FakeTaskRepository()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def health(session_factory) -> ConnectionHealthMonitor:
    return ConnectionHealthMonitor(session_factory, error_threshold=5)


@pytest.fixture
def sync_engine(tasks, session_factory, publisher) -> SyncEngine:
    return SyncEngine(tasks, session_factory, publisher)


@pytest.fixture
async def dispatcher() -> AsyncGenerator[KeyedDispatcher, None]:
    dispatcher = KeyedDispatcher(worker_count=2)
    yield dispatcher
    await dispatcher.stop()


@pytest.fixture
async def connection(session_factory) -> Connection:
    return await create_connection_row(session_factory)


async def create_connection_row(
    session_factory,
    project_id: int = 1,
    full_name: str = "acme/widgets",
    secret: str = WEBHOOK_SECRET,
    **overrides,
) -> Connection:
    values = dict(
        project_id=project_id,
        repository_full_name=full_name,
        repository_url=f"https://github.com/{full_name}",
        access_token_encrypted=get_token_cipher().encrypt(ACCESS_TOKEN),
        webhook_secret=secret,
        webhook_id=77,
        status=ConnectionStatus.ACTIVE,
        webhook_status=WebhookStatus.ACTIVE,
        last_webhook_at=datetime.now(timezone.utc),
    )
    values.update(overrides)
    row = Connection(**values)
    async with session_factory() as session:
        session.add(row)
        await session.commit()
        await session.refresh(row)
    return row


def make_commit(sha: str = "a1b2c3d4e5f6a7b8", message: str = "Update", **extra) -> PushCommit:
    data = {
        "id": sha,
        "message": message,
        "timestamp": "2026-10-01T12:00:00Z",
        "url": f"https://github.com/acme/widgets/commit/{sha}",
        "author": {"name": "Dana", "email": "dana@example.com", "username": "dana"},
    }
    data.update(extra)
    return PushCommit.model_validate(data)


def make_pull_request(
    number: int = 5,
    title: str = "Feature",
    body: Optional[str] = None,
    state: str = "open",
    merged: bool = False,
    draft: bool = False,
    **extra,
) -> PullRequestPayload:
    data = {
        "number": number,
        "title": title,
        "body": body,
        "state": state,
        "draft": draft,
        "merged": merged,
        "merged_at": "2026-10-02T08:30:00Z" if merged else None,
        "created_at": "2026-10-01T08:00:00Z",
        "html_url": f"https://github.com/acme/widgets/pull/{number}",
        "user": {"login": "dana"},
        "head": {"ref": "feature/widgets"},
        "base": {"ref": "main"},
    }
    data.update(extra)
    return PullRequestPayload.model_validate(data)
