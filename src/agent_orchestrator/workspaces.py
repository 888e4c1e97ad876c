"""Workspace manager - ephemeral staging directories for task execution."""

import asyncio
from datetime import timedelta
import os
import shutil
import tempfile

import structlog

from agent_orchestrator.config import get_settings
from agent_orchestrator.errors import NotFoundError, ResourceError
from agent_orchestrator.models import Workspace, WorkspaceStatus, utcnow

logger = structlog.get_logger()

WORKSPACE_PREFIX = "agent-workspace-"


class WorkspaceManager:
    """Allocates, tracks and reclaims workspace directories."""

    def __init__(self, base_dir: str | None = None, max_age_seconds: int | None = None):
        settings = get_settings()
        self.base_dir = base_dir or settings.workspace_base_dir
        self.max_age_seconds = (
            max_age_seconds if max_age_seconds is not None else settings.workspace_max_age_seconds
        )
        self._workspaces: dict[str, Workspace] = {}

    def _allocate_dir(self) -> str:
        os.makedirs(self.base_dir, exist_ok=True)
        return tempfile.mkdtemp(prefix=WORKSPACE_PREFIX, dir=self.base_dir)

    async def create_workspace(
        self,
        worker_id: str | None = None,
        task_id: str | None = None,
        repo_id: str | None = None,
    ) -> Workspace:
        """Allocate a fresh directory and record it as active.

        Raises:
            ResourceError: directory could not be allocated. No record is kept.
        """
        try:
            path = await asyncio.to_thread(self._allocate_dir)
        except OSError as e:
            logger.error("workspace_allocation_failed", base_dir=self.base_dir, error=str(e))
            raise ResourceError("workspace", None, "allocate", str(e)) from e

        workspace = Workspace(path=path, worker_id=worker_id, task_id=task_id, repo_id=repo_id)
        self._workspaces[workspace.id] = workspace

        logger.info(
            "workspace_created",
            workspace_id=workspace.id,
            path=path,
            worker_id=worker_id,
            task_id=task_id,
        )
        return workspace

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        return self._workspaces.get(workspace_id)

    def _require(self, workspace_id: str) -> Workspace:
        workspace = self._workspaces.get(workspace_id)
        if workspace is None:
            raise NotFoundError("Workspace", workspace_id)
        return workspace

    def get_workspace_path(self, workspace_id: str) -> str:
        return self._require(workspace_id).path

    async def cleanup_workspace(self, workspace_id: str) -> None:
        """Remove the workspace directory and mark the record as cleaning.

        A directory that is already gone counts as success, so repeated
        cleanups of the same workspace are safe.

        Raises:
            NotFoundError: unknown workspace.
            ResourceError: directory removal failed; status becomes error.
        """
        workspace = self._require(workspace_id)
        workspace.status = WorkspaceStatus.CLEANING

        try:
            await asyncio.to_thread(shutil.rmtree, workspace.path)
        except FileNotFoundError:
            logger.debug("workspace_already_removed", workspace_id=workspace_id, path=workspace.path)
        except OSError as e:
            workspace.status = WorkspaceStatus.ERROR
            logger.error(
                "workspace_cleanup_failed",
                workspace_id=workspace_id,
                path=workspace.path,
                error=str(e),
            )
            raise ResourceError("workspace", workspace_id, "clean up", str(e)) from e

        logger.info("workspace_cleaned", workspace_id=workspace_id, path=workspace.path)

    def list_active_workspaces(self) -> list[Workspace]:
        return [w for w in self._workspaces.values() if w.status == WorkspaceStatus.ACTIVE]

    async def cleanup_stale_workspaces(self, max_age_ms: int | None = None) -> int:
        """Clean active workspaces older than `max_age_ms`.

        Failures are logged per workspace and do not stop the scan.

        Returns:
            Number of workspaces cleaned successfully.
        """
        max_age = (
            timedelta(milliseconds=max_age_ms)
            if max_age_ms is not None
            else timedelta(seconds=self.max_age_seconds)
        )
        cutoff = utcnow() - max_age

        cleaned = 0
        for workspace in self.list_active_workspaces():
            if workspace.created_at >= cutoff:
                continue
            try:
                await self.cleanup_workspace(workspace.id)
                cleaned += 1
            except Exception as e:
                logger.warning("stale_workspace_cleanup_failed", workspace_id=workspace.id, error=str(e))

        if cleaned:
            logger.info("stale_workspaces_cleaned", count=cleaned)
        return cleaned

    def update_status(self, workspace_id: str, status: WorkspaceStatus) -> Workspace:
        workspace = self._require(workspace_id)
        workspace.status = status
        logger.debug("workspace_status_updated", workspace_id=workspace_id, status=status.value)
        return workspace

    def mark_completed(self, workspace_id: str) -> Workspace:
        return self.update_status(workspace_id, WorkspaceStatus.COMPLETED)

    def find_by_worker_id(self, worker_id: str) -> list[Workspace]:
        return [w for w in self._workspaces.values() if w.worker_id == worker_id]
