"""Data models for workers, workspaces, containers and executions."""

from datetime import UTC, datetime
from enum import Enum
import uuid

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


class WorkerStatus(str, Enum):
    """Worker slot states."""

    IDLE = "idle"
    WORKING = "working"
    PAUSED = "paused"
    ERROR = "error"
    TERMINATED = "terminated"


class WorkspaceStatus(str, Enum):
    """Workspace directory states."""

    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"
    CLEANING = "cleaning"


class ContainerStatus(str, Enum):
    """Sandbox container states.

    creating -> running -> stopped -> removing; error from anywhere, non-terminal.
    """

    CREATING = "creating"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVING = "removing"
    ERROR = "error"


class ExecutionStatus(str, Enum):
    """Execution attempt states."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.SUCCESS, ExecutionStatus.ERROR, ExecutionStatus.CANCELLED}
)


class Worker(BaseModel):
    """Logical execution slot running at most one task at a time."""

    id: str = Field(default_factory=new_id)
    status: WorkerStatus = WorkerStatus.IDLE
    current_task_id: str | None = None
    current_execution_id: str | None = None
    repo_id: str | None = None
    user_id: str | None = None
    spawned_at: datetime = Field(default_factory=utcnow)


class Workspace(BaseModel):
    """Ephemeral staging directory for one task's working copy."""

    id: str = Field(default_factory=new_id)
    path: str
    status: WorkspaceStatus = WorkspaceStatus.ACTIVE
    worker_id: str | None = None
    task_id: str | None = None
    repo_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class Container(BaseModel):
    """Sandbox container bound to a workspace."""

    id: str = Field(default_factory=new_id)
    runtime_id: str
    name: str
    image: str
    status: ContainerStatus = ContainerStatus.CREATING
    workspace_id: str | None = None
    execution_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    stopped_at: datetime | None = None


class ContainerCreateOptions(BaseModel):
    """Options for provisioning a sandbox container."""

    image: str
    name: str
    workspace_id: str | None = None
    execution_id: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    cpu_limit: float | None = Field(default=None, gt=0, description="CPU cores")
    memory_limit: int | None = Field(default=None, gt=0, description="Memory in bytes")


class Execution(BaseModel):
    """One recorded attempt to run a task, with accumulated metrics."""

    id: str = Field(default_factory=new_id)
    worker_id: str
    task_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    tokens_used: int = 0
    cost_usd: float = 0.0
    tool_calls_count: int = 0
    error: str | None = None
    output: dict | None = None
