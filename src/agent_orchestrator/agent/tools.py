"""Agent tools - the closed set of actions the model may request.

Tool inputs are parsed into a discriminated union, so dispatch is exhaustive.
File paths are confined to the workspace root. Shell-like tools run inside the
bound sandbox container, or as a local subprocess in the workspace when no
container is bound.
"""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Literal, assert_never

from pydantic import BaseModel, Field, TypeAdapter, ValidationError
import structlog

from agent_orchestrator.containers import WORKSPACE_MOUNT, ContainerManager
from agent_orchestrator.errors import NotFoundError, ResourceError, StateConflictError, ToolExecutionError
from agent_orchestrator.llm.base import Tool

logger = structlog.get_logger()

MAX_OUTPUT_CHARS = 50_000
GREP_NO_MATCH_EXIT_CODE = 1


class ReadFile(BaseModel):
    """Read the contents of a file from the workspace"""

    tool: Literal["read_file"] = "read_file"
    path: str = Field(description="Path to the file to read (relative to workspace root)")


class WriteFile(BaseModel):
    """Write or create a file in the workspace"""

    tool: Literal["write_file"] = "write_file"
    path: str = Field(description="Path to the file to write (relative to workspace root)")
    content: str = Field(description="Content to write to the file")


class EditFile(BaseModel):
    """Edit a file by replacing the first occurrence of a text"""

    tool: Literal["edit_file"] = "edit_file"
    path: str = Field(description="Path to the file to edit (relative to workspace root)")
    old: str = Field(description="Text to search for and replace")
    new: str = Field(description="Text to replace with")


class RunCommand(BaseModel):
    """Execute a shell command in the workspace"""

    tool: Literal["run_command"] = "run_command"
    cmd: str = Field(description="Shell command to execute")


class SearchFiles(BaseModel):
    """Search for files matching a glob pattern"""

    tool: Literal["search_files"] = "search_files"
    pattern: str = Field(description="Glob pattern relative to the workspace root, e.g. src/**/*.py")


class Grep(BaseModel):
    """Search for text patterns in files"""

    tool: Literal["grep"] = "grep"
    pattern: str = Field(description="Text pattern to search for (supports regex)")
    path: str | None = Field(default=None, description="Optional path to search in (defaults to workspace root)")


ToolInput = Annotated[
    ReadFile | WriteFile | EditFile | RunCommand | SearchFiles | Grep,
    Field(discriminator="tool"),
]

TOOL_MODELS: tuple[type[BaseModel], ...] = (ReadFile, WriteFile, EditFile, RunCommand, SearchFiles, Grep)
TOOL_NAMES = frozenset(model.model_fields["tool"].default for model in TOOL_MODELS)

_tool_adapter: TypeAdapter[ToolInput] = TypeAdapter(ToolInput)


def parse_tool_input(name: str, data: dict[str, Any]) -> ToolInput:
    """Parse a model-issued tool call into its typed input."""
    return _tool_adapter.validate_python({**data, "tool": name})


def _definition(model: type[BaseModel]) -> Tool:
    schema = model.model_json_schema()
    schema.pop("title", None)
    schema.pop("description", None)
    schema["properties"].pop("tool", None)
    for prop in schema["properties"].values():
        prop.pop("title", None)
    return Tool(
        name=model.model_fields["tool"].default,
        description=(model.__doc__ or "").strip(),
        input_schema=schema,
    )


AGENT_TOOLS: list[Tool] = [_definition(model) for model in TOOL_MODELS]


@dataclass
class ToolOutput:
    success: bool
    output: str = ""
    error: str | None = None

    def to_message(self, tool_name: str) -> str:
        if self.success:
            return f"Tool {tool_name} succeeded:\n{self.output}"
        return f"Tool {tool_name} failed:\n{self.error}"


class PathOutsideWorkspaceError(ValueError):
    pass


def _truncate(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"\n... [truncated {len(text) - MAX_OUTPUT_CHARS} chars]"


class AgentToolExecutor:
    """Executes tool calls against one workspace and optional container."""

    def __init__(
        self,
        workspace_path: str,
        containers: ContainerManager | None = None,
        container_id: str | None = None,
        command_timeout_seconds: float = 300,
    ):
        self.root = Path(workspace_path).resolve()
        self.containers = containers
        self.container_id = container_id
        self.command_timeout_seconds = command_timeout_seconds

    @property
    def in_container(self) -> bool:
        return self.containers is not None and self.container_id is not None

    def resolve_path(self, relative: str) -> Path:
        """Resolve `relative` under the workspace root, rejecting escapes."""
        candidate = (self.root / relative).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise PathOutsideWorkspaceError(f"Path escapes the workspace: {relative}")
        return candidate

    async def execute(self, name: str, data: dict[str, Any]) -> ToolOutput:
        """Run one tool call.

        Bad input, unknown tools and ordinary failures come back as a failed
        ToolOutput for the model to react to.

        Raises:
            ToolExecutionError: the sandbox itself failed (container gone,
                not running, or the runtime errored).
        """
        if name not in TOOL_NAMES:
            return ToolOutput(success=False, error=f"Unknown tool: {name}")

        try:
            call = parse_tool_input(name, data)
        except ValidationError as e:
            return ToolOutput(success=False, error=f"Invalid input for {name}: {e}")

        try:
            return await self._dispatch(call)
        except (ResourceError, NotFoundError, StateConflictError) as e:
            logger.error("tool_sandbox_failed", tool=name, error=str(e))
            raise ToolExecutionError(f"Tool {name} could not run in the sandbox: {e}") from e
        except (OSError, ValueError) as e:
            logger.debug("tool_failed", tool=name, error=str(e))
            return ToolOutput(success=False, error=str(e))

    async def _dispatch(self, call: ToolInput) -> ToolOutput:
        match call:
            case ReadFile():
                return await self._read_file(call)
            case WriteFile():
                return await self._write_file(call)
            case EditFile():
                return await self._edit_file(call)
            case RunCommand():
                return await self._run_command(call)
            case SearchFiles():
                return await self._search_files(call)
            case Grep():
                return await self._grep(call)
            case _:
                assert_never(call)

    async def _read_file(self, call: ReadFile) -> ToolOutput:
        path = self.resolve_path(call.path)
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        return ToolOutput(success=True, output=_truncate(content))

    async def _write_file(self, call: WriteFile) -> ToolOutput:
        path = self.resolve_path(call.path)

        def write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(call.content, encoding="utf-8")

        await asyncio.to_thread(write)
        return ToolOutput(success=True, output=f"File written: {call.path}")

    async def _edit_file(self, call: EditFile) -> ToolOutput:
        path = self.resolve_path(call.path)
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        if call.old not in content:
            return ToolOutput(success=False, error=f"Text not found in file: {call.old}")

        updated = content.replace(call.old, call.new, 1)
        await asyncio.to_thread(path.write_text, updated, encoding="utf-8")
        return ToolOutput(success=True, output=f"File edited: {call.path}")

    async def _run_command(self, call: RunCommand) -> ToolOutput:
        exit_code, stdout, stderr = await self._run(["/bin/sh", "-c", call.cmd])
        if exit_code is None:
            return ToolOutput(
                success=False,
                error=f"Command timed out after {self.command_timeout_seconds}s: {call.cmd}",
            )
        if exit_code != 0:
            return ToolOutput(
                success=False,
                error=_truncate(f"Command exited with code {exit_code}:\n{stderr or stdout}"),
            )
        return ToolOutput(success=True, output=_truncate(stdout or stderr or "Command completed"))

    async def _search_files(self, call: SearchFiles) -> ToolOutput:
        if Path(call.pattern).is_absolute() or ".." in Path(call.pattern).parts:
            raise PathOutsideWorkspaceError(f"Pattern must stay inside the workspace: {call.pattern}")

        def search() -> list[str]:
            return sorted(str(p.relative_to(self.root)) for p in self.root.glob(call.pattern) if p.is_file())

        files = await asyncio.to_thread(search)
        return ToolOutput(success=True, output=_truncate("\n".join(files)) if files else "No files found")

    async def _grep(self, call: Grep) -> ToolOutput:
        target = self.resolve_path(call.path or ".")
        if self.in_container:
            relative = target.relative_to(self.root)
            search_path = str(Path(WORKSPACE_MOUNT) / relative)
        else:
            search_path = str(target)

        exit_code, stdout, stderr = await self._run(["grep", "-rn", "--", call.pattern, search_path])
        if exit_code is None:
            return ToolOutput(success=False, error=f"grep timed out after {self.command_timeout_seconds}s")
        if exit_code == GREP_NO_MATCH_EXIT_CODE:
            return ToolOutput(success=True, output="No matches found")
        if exit_code != 0:
            return ToolOutput(success=False, error=stderr or f"grep exited with code {exit_code}")
        return ToolOutput(success=True, output=_truncate(stdout))

    async def _run(self, argv: list[str]) -> tuple[int | None, str, str]:
        """Run argv in the sandbox. Exit code is None on timeout."""
        if self.in_container:
            try:
                result = await asyncio.wait_for(
                    self.containers.exec(self.container_id, argv),
                    timeout=self.command_timeout_seconds,
                )
            except TimeoutError:
                return None, "", ""
            return result.exit_code, result.stdout, result.stderr

        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(self.root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.command_timeout_seconds)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            return None, "", ""
        except asyncio.CancelledError:
            proc.kill()
            raise

        return (
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
