"""
Task collaborator interface.

Tasks are owned by the task service. The engine only looks a task up, completes
it, or moves it to another status. ``HttpTaskRepository`` talks to the task
service over its REST API.
"""

from enum import Enum
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel

from tasklink.core.config import settings
from tasklink.core.logging import get_logger

logger = get_logger(__name__)


class TaskStatus(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    DONE = "DONE"


class TaskInfo(BaseModel):
    """The slice of a task the engine is allowed to see."""

    id: int
    status: TaskStatus
    project_id: Optional[int] = None
    title: Optional[str] = None


class TaskRepository(Protocol):
    async def find_task(self, task_id: int) -> Optional[TaskInfo]: ...

    async def complete_task(self, task_id: int) -> None: ...

    async def transition_status(self, task_id: int, status: TaskStatus) -> None: ...


class TaskServiceError(Exception):
    """The task service was unreachable or answered with an unexpected status."""


class HttpTaskRepository:
    """TaskRepository backed by the task service REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.TASK_SERVICE_URL).rstrip("/")
        self.headers = {"Accept": "application/json"}
        token = token or settings.TASK_SERVICE_TOKEN
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        self.transport = transport

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                timeout=settings.TASK_SERVICE_TIMEOUT_SECONDS, transport=self.transport
            ) as client:
                return await client.request(
                    method, f"{self.base_url}{path}", headers=self.headers, **kwargs
                )
        except httpx.HTTPError as e:
            logger.warning("Task service %s %s failed: %s", method, path, e)
            raise TaskServiceError(f"Task service unreachable: {e}") from e

    async def find_task(self, task_id: int) -> Optional[TaskInfo]:
        response = await self._send("GET", f"/tasks/{task_id}")
        if response.status_code == 404:
            return None
        if not response.is_success:
            raise TaskServiceError(
                f"Task lookup for {task_id} failed with {response.status_code}"
            )
        return TaskInfo.model_validate(response.json())

    async def complete_task(self, task_id: int) -> None:
        response = await self._send("POST", f"/tasks/{task_id}/complete")
        if not response.is_success:
            raise TaskServiceError(
                f"Completing task {task_id} failed with {response.status_code}"
            )

    async def transition_status(self, task_id: int, status: TaskStatus) -> None:
        response = await self._send(
            "PATCH", f"/tasks/{task_id}/status", json={"status": status.value}
        )
        if not response.is_success:
            raise TaskServiceError(
                f"Moving task {task_id} to {status.value} failed with {response.status_code}"
            )
