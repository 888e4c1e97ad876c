"""Output collection - what a finished run changed in its workspace."""

from dataclasses import dataclass, field
from typing import Any

import structlog

from agent_orchestrator.containers import ContainerManager
from agent_orchestrator.errors import OrchestratorError

logger = structlog.get_logger()

DIFF_COMMAND = ["git", "diff", "HEAD"]
CHANGED_FILES_COMMAND = ["git", "diff", "--name-only", "HEAD"]


@dataclass
class CollectedOutput:
    summary: str | None = None
    diff: str | None = None
    files_changed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        output: dict[str, Any] = {}
        if self.summary is not None:
            output["summary"] = self.summary
        if self.diff is not None:
            output["diff"] = self.diff
        if self.files_changed:
            output["files_changed"] = self.files_changed
        return output


class OutputCollector:
    """Reads the git state of a sandbox before it is torn down.

    A workspace that is not a git repository, or a failed exec, yields no diff
    and no changed files rather than an error.
    """

    def __init__(self, containers: ContainerManager):
        self.containers = containers

    async def _git(self, container_id: str, command: list[str]) -> str | None:
        try:
            result = await self.containers.exec(container_id, command)
        except OrchestratorError as e:
            logger.warning("output_collection_failed", container_id=container_id, command=command, error=str(e))
            return None
        if not result.success:
            logger.warning(
                "output_collection_failed",
                container_id=container_id,
                command=command,
                exit_code=result.exit_code,
                stderr=result.stderr.strip(),
            )
            return None
        return result.stdout

    async def collect_diff(self, container_id: str) -> str | None:
        stdout = await self._git(container_id, DIFF_COMMAND)
        if stdout is None:
            return None
        return stdout.strip() or None

    async def collect_changed_files(self, container_id: str) -> list[str]:
        stdout = await self._git(container_id, CHANGED_FILES_COMMAND)
        if stdout is None:
            return []
        return [line.strip() for line in stdout.splitlines() if line.strip()]

    async def collect(self, container_id: str, summary: str | None = None) -> CollectedOutput:
        output = CollectedOutput(
            summary=summary,
            diff=await self.collect_diff(container_id),
            files_changed=await self.collect_changed_files(container_id),
        )
        logger.info("output_collected", container_id=container_id, files_changed=len(output.files_changed))
        return output
