"""
Task service collaborator.
"""

from tasklink.services.tasks.repository import (
    HttpTaskRepository,
    TaskInfo,
    TaskRepository,
    TaskServiceError,
    TaskStatus,
)

__all__ = [
    "HttpTaskRepository",
    "TaskInfo",
    "TaskRepository",
    "TaskServiceError",
    "TaskStatus",
]
