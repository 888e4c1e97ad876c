"""Task lookup. The orchestrator reads task definitions, it never writes them."""

from typing import Protocol

import httpx
from pydantic import BaseModel, ValidationError
import structlog

from agent_orchestrator.config import get_settings
from agent_orchestrator.errors import NotFoundError, ResourceError

logger = structlog.get_logger()


class TaskInfo(BaseModel):
    """Task definition handed to the agent."""

    id: str
    title: str
    description: str = ""
    status: str = "unknown"
    priority: str = "unknown"


class TaskStore(Protocol):
    async def get_task(self, task_id: str) -> TaskInfo:
        """Raises NotFoundError when the task does not exist."""
        ...


class InMemoryTaskStore:
    def __init__(self, tasks: list[TaskInfo] | None = None):
        self._tasks = {task.id: task for task in tasks or []}

    def add(self, task: TaskInfo) -> None:
        self._tasks[task.id] = task

    async def get_task(self, task_id: str) -> TaskInfo:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError("Task", task_id)
        return task


class ApiTaskStore:
    """Reads tasks from the internal API at `GET {api_url}/tasks/{id}`."""

    def __init__(self, api_url: str | None = None, timeout: float = 10.0):
        self.api_url = (api_url or get_settings().api_url).rstrip("/")
        self.timeout = timeout

    async def get_task(self, task_id: str) -> TaskInfo:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(f"{self.api_url}/tasks/{task_id}")
        except httpx.HTTPError as e:
            logger.error("task_fetch_failed", task_id=task_id, error=str(e))
            raise ResourceError("task", task_id, "load", str(e)) from e

        if resp.status_code == 404:
            raise NotFoundError("Task", task_id)
        try:
            resp.raise_for_status()
            return TaskInfo.model_validate(resp.json())
        except (httpx.HTTPStatusError, ValidationError, ValueError) as e:
            logger.error("task_fetch_failed", task_id=task_id, status_code=resp.status_code, error=str(e))
            raise ResourceError("task", task_id, "load", str(e)) from e
