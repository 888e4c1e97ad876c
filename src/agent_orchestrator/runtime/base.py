"""Container runtime interface.

The orchestrator talks to the container engine only through this protocol.
The Container Manager and the Terminal Relay share one injected runtime.
"""

from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Protocol


@dataclass
class ContainerSpec:
    """Engine-level container creation request."""

    image: str
    name: str
    env: dict[str, str] = field(default_factory=dict)
    binds: list[str] = field(default_factory=list)
    working_dir: str | None = None
    nano_cpus: int | None = None
    memory: int | None = None
    command: list[str] | None = None


@dataclass
class ExecResult:
    """Result of a command executed inside a container."""

    exit_code: int
    stdout: str
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass
class RuntimeContainerInfo:
    id: str
    name: str
    image: str
    state: str
    running: bool
    exit_code: int | None = None


class TerminalStream(Protocol):
    """Bidirectional byte stream of an interactive TTY exec."""

    exec_id: str

    async def read(self) -> bytes:
        """Next chunk of output. Empty bytes means the stream ended."""
        ...

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


class ContainerRuntime(Protocol):
    async def create(self, spec: ContainerSpec) -> str:
        """Create a container and return its engine id."""
        ...

    async def start(self, runtime_id: str) -> None: ...

    async def stop(self, runtime_id: str, timeout: int = 10) -> None: ...

    async def kill(self, runtime_id: str) -> None: ...

    async def remove(self, runtime_id: str, force: bool = False) -> None: ...

    async def inspect(self, runtime_id: str) -> RuntimeContainerInfo: ...

    async def list_containers(self, all: bool = False) -> list[RuntimeContainerInfo]: ...

    async def exec(
        self,
        runtime_id: str,
        command: list[str],
        tty: bool = False,
        workdir: str | None = None,
    ) -> ExecResult: ...

    async def open_terminal(self, runtime_id: str, command: list[str]) -> TerminalStream:
        """Create and start a TTY exec with stdin attached."""
        ...

    async def resize_terminal(self, exec_id: str, cols: int, rows: int) -> None: ...

    def logs(
        self,
        runtime_id: str,
        follow: bool = False,
        tail: int | None = None,
        timestamps: bool = False,
    ) -> AsyncGenerator[bytes, None]:
        """Lazy log stream. Closing the iterator closes the engine stream."""
        ...
