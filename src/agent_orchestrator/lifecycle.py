"""Background reaper for stale workspaces and failed containers."""

import asyncio
from dataclasses import dataclass

import structlog

from agent_orchestrator.config import get_settings
from agent_orchestrator.containers import ContainerManager
from agent_orchestrator.models import ContainerStatus
from agent_orchestrator.workspaces import WorkspaceManager

logger = structlog.get_logger()


@dataclass
class ReapReport:
    workspaces_cleaned: int = 0
    containers_removed: int = 0


class LifecycleReaper:
    """Periodically reclaims resources that runs left behind."""

    def __init__(
        self,
        workspaces: WorkspaceManager,
        containers: ContainerManager,
        interval_seconds: float | None = None,
    ):
        self.workspaces = workspaces
        self.containers = containers
        self.interval_seconds = interval_seconds or get_settings().reaper_interval_seconds
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("lifecycle_reaper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("lifecycle_reaper_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("lifecycle_check_error", error=str(e))

            await asyncio.sleep(self.interval_seconds)

    async def run_once(self) -> ReapReport:
        report = ReapReport()
        report.workspaces_cleaned = await self.workspaces.cleanup_stale_workspaces()

        for container in self.containers.find_by_status(ContainerStatus.ERROR):
            try:
                await self.containers.remove_container(container.id, force=True)
                report.containers_removed += 1
            except Exception as e:
                logger.error("failed_container_reap_error", container_id=container.id, error=str(e))

        if report.workspaces_cleaned or report.containers_removed:
            logger.info(
                "lifecycle_reap_completed",
                workspaces_cleaned=report.workspaces_cleaned,
                containers_removed=report.containers_removed,
            )
        return report
