"""Container manager - sandbox container lifecycle on top of a runtime."""

import asyncio
from collections.abc import AsyncGenerator, AsyncIterator
import math

import structlog

from agent_orchestrator.config import get_settings
from agent_orchestrator.errors import NotFoundError, ResourceError, StateConflictError
from agent_orchestrator.events import ContainerStatusChanged, EventHub
from agent_orchestrator.log_parser import LogEntry, parse_log_line
from agent_orchestrator.models import Container, ContainerCreateOptions, ContainerStatus, utcnow
from agent_orchestrator.runtime.base import ContainerRuntime, ContainerSpec, ExecResult
from agent_orchestrator.workspaces import WorkspaceManager

logger = structlog.get_logger()

WORKSPACE_MOUNT = "/workspace"
NANO_CPUS_PER_CORE = 1_000_000_000

START_FROM = frozenset({ContainerStatus.CREATING, ContainerStatus.STOPPED, ContainerStatus.ERROR})
STOP_FROM = frozenset({ContainerStatus.RUNNING, ContainerStatus.ERROR})
REMOVE_FROM = frozenset({ContainerStatus.STOPPED, ContainerStatus.ERROR, ContainerStatus.CREATING})


class ContainerManager:
    """Provisions and drives sandbox containers bound to workspaces.

    Every operation follows lookup -> state check -> runtime call -> status
    update, and every status change is published on the event hub.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        workspaces: WorkspaceManager,
        events: EventHub,
        stop_kill_grace_seconds: float | None = None,
    ):
        self.runtime = runtime
        self.workspaces = workspaces
        self.events = events
        self.stop_kill_grace_seconds = (
            stop_kill_grace_seconds
            if stop_kill_grace_seconds is not None
            else get_settings().stop_kill_grace_seconds
        )
        self._containers: dict[str, Container] = {}

    def _require(self, container_id: str) -> Container:
        container = self._containers.get(container_id)
        if container is None:
            raise NotFoundError("Container", container_id)
        return container

    async def _set_status(self, container: Container, status: ContainerStatus) -> None:
        old = container.status
        container.status = status
        await self.events.publish(
            ContainerStatusChanged(
                container_id=container.id,
                old_status=old.value,
                new_status=status.value,
                workspace_id=container.workspace_id,
                execution_id=container.execution_id,
            )
        )

    def _build_spec(self, options: ContainerCreateOptions, workspace_path: str | None) -> ContainerSpec:
        spec = ContainerSpec(
            image=options.image,
            name=options.name,
            env=dict(options.env),
            working_dir=WORKSPACE_MOUNT,
        )
        if workspace_path:
            spec.binds = [f"{workspace_path}:{WORKSPACE_MOUNT}"]
        if options.cpu_limit:
            spec.nano_cpus = math.floor(options.cpu_limit * NANO_CPUS_PER_CORE)
        if options.memory_limit:
            spec.memory = options.memory_limit
        return spec

    async def create_container(self, options: ContainerCreateOptions) -> Container:
        """Create a container in `creating` status.

        Raises:
            NotFoundError: workspace does not exist.
            StateConflictError: workspace already has a container.
            ResourceError: runtime refused to create it. No record is kept.
        """
        workspace_path = None
        if options.workspace_id:
            workspace_path = self.workspaces.get_workspace_path(options.workspace_id)
            existing = self.find_by_workspace_id(options.workspace_id)
            if existing is not None:
                raise StateConflictError(
                    "Workspace", options.workspace_id, f"bound to container {existing.id}", "bind"
                )

        spec = self._build_spec(options, workspace_path)
        try:
            runtime_id = await self.runtime.create(spec)
        except Exception as e:
            logger.error("container_create_failed", name=options.name, image=options.image, error=str(e))
            raise ResourceError("container", None, "create", str(e)) from e

        container = Container(
            runtime_id=runtime_id,
            name=options.name,
            image=options.image,
            workspace_id=options.workspace_id,
            execution_id=options.execution_id,
        )
        self._containers[container.id] = container
        logger.info(
            "container_created",
            container_id=container.id,
            runtime_id=runtime_id,
            image=options.image,
            workspace_id=options.workspace_id,
        )
        await self.events.publish(
            ContainerStatusChanged(
                container_id=container.id,
                old_status=None,
                new_status=container.status.value,
                workspace_id=container.workspace_id,
                execution_id=container.execution_id,
            )
        )
        return container

    async def start_container(self, container_id: str) -> Container:
        container = self._require(container_id)
        if container.status not in START_FROM:
            raise StateConflictError("Container", container_id, container.status.value, "start")

        try:
            await self.runtime.start(container.runtime_id)
        except Exception as e:
            logger.error("container_start_failed", container_id=container_id, error=str(e))
            await self._set_status(container, ContainerStatus.ERROR)
            raise ResourceError("container", container_id, "start", str(e)) from e

        container.started_at = utcnow()
        await self._set_status(container, ContainerStatus.RUNNING)
        logger.info("container_started", container_id=container_id)
        return container

    async def stop_container(self, container_id: str, timeout_seconds: int = 10) -> Container:
        """Stop gracefully, escalating to a single forced kill.

        The kill fires when the graceful stop fails or has not returned within
        `timeout_seconds` plus the kill grace period. A failed kill leaves the
        container in `error`; retrying is up to the caller.
        """
        container = self._require(container_id)
        if container.status not in STOP_FROM:
            raise StateConflictError("Container", container_id, container.status.value, "stop")

        try:
            await asyncio.wait_for(
                self.runtime.stop(container.runtime_id, timeout=timeout_seconds),
                timeout=timeout_seconds + self.stop_kill_grace_seconds,
            )
        except Exception as e:
            logger.warning(
                "container_stop_escalating_to_kill",
                container_id=container_id,
                error=str(e) or type(e).__name__,
            )
            try:
                await self.runtime.kill(container.runtime_id)
            except Exception as kill_error:
                logger.error("container_kill_failed", container_id=container_id, error=str(kill_error))
                await self._set_status(container, ContainerStatus.ERROR)
                raise ResourceError("container", container_id, "stop", str(kill_error)) from kill_error

        container.stopped_at = utcnow()
        await self._set_status(container, ContainerStatus.STOPPED)
        logger.info("container_stopped", container_id=container_id)
        return container

    async def remove_container(self, container_id: str, force: bool = False) -> None:
        container = self._require(container_id)
        if not force and container.status not in REMOVE_FROM:
            raise StateConflictError("Container", container_id, container.status.value, "remove")

        await self._set_status(container, ContainerStatus.REMOVING)
        try:
            await self.runtime.remove(container.runtime_id, force=force)
        except Exception as e:
            logger.error("container_remove_failed", container_id=container_id, error=str(e))
            await self._set_status(container, ContainerStatus.ERROR)
            raise ResourceError("container", container_id, "remove", str(e)) from e

        del self._containers[container_id]
        logger.info("container_removed", container_id=container_id)

    async def exec(self, container_id: str, command: list[str], tty: bool = False) -> ExecResult:
        container = self._require(container_id)
        if container.status != ContainerStatus.RUNNING:
            raise StateConflictError("Container", container_id, container.status.value, "exec in")

        try:
            result = await self.runtime.exec(container.runtime_id, command, tty=tty, workdir=WORKSPACE_MOUNT)
        except Exception as e:
            logger.error("container_exec_failed", container_id=container_id, command=command, error=str(e))
            raise ResourceError("container", container_id, "exec in", str(e)) from e

        logger.debug("container_exec_completed", container_id=container_id, exit_code=result.exit_code)
        return result

    def get_logs(
        self,
        container_id: str,
        follow: bool = False,
        tail: int | None = None,
        timestamps: bool = False,
    ) -> AsyncGenerator[bytes, None]:
        """Lazy stream of raw log bytes. `aclose()` closes the runtime stream.

        Raises:
            NotFoundError: unknown container, raised before streaming starts.
        """
        container = self._require(container_id)
        return self.runtime.logs(container.runtime_id, follow=follow, tail=tail, timestamps=timestamps)

    async def stream_log_entries(
        self,
        container_id: str,
        follow: bool = False,
        tail: int | None = None,
        timestamps: bool = True,
    ) -> AsyncIterator[LogEntry]:
        """Structured log entries, one per non-blank line."""
        buffer = ""
        logs = self.get_logs(container_id, follow=follow, tail=tail, timestamps=timestamps)
        try:
            async for chunk in logs:
                buffer += chunk.decode("utf-8", errors="replace")
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    entry = parse_log_line(line, timestamps)
                    if entry is not None:
                        yield entry
            entry = parse_log_line(buffer, timestamps)
            if entry is not None:
                yield entry
        finally:
            await logs.aclose()

    def get_container_status(self, container_id: str) -> Container | None:
        return self._containers.get(container_id)

    def list_containers(self) -> list[Container]:
        return list(self._containers.values())

    def find_by_workspace_id(self, workspace_id: str) -> Container | None:
        for container in self._containers.values():
            if container.workspace_id == workspace_id:
                return container
        return None

    def find_by_execution_id(self, execution_id: str) -> Container | None:
        for container in self._containers.values():
            if container.execution_id == execution_id:
                return container
        return None

    def find_by_status(self, status: ContainerStatus) -> list[Container]:
        return [c for c in self._containers.values() if c.status == status]
