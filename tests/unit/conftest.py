import asyncio
from collections.abc import Callable

import pytest

from agent_orchestrator.containers import ContainerManager
from agent_orchestrator.events import EventHub, OrchestratorEvent
from agent_orchestrator.executions import ExecutionTracker
from agent_orchestrator.runtime.base import ContainerSpec, ExecResult, RuntimeContainerInfo
from agent_orchestrator.workers import WorkerPool
from agent_orchestrator.workspaces import WorkspaceManager


class FakeTerminalStream:
    def __init__(self, exec_id: str):
        self.exec_id = exec_id
        self.written: list[bytes] = []
        self.closed = False
        self._output: asyncio.Queue[bytes] = asyncio.Queue()

    def feed(self, data: bytes) -> None:
        self._output.put_nowait(data)

    def end(self) -> None:
        self._output.put_nowait(b"")

    async def read(self) -> bytes:
        return await self._output.get()

    async def write(self, data: bytes) -> None:
        self.written.append(data)

    async def close(self) -> None:
        self.closed = True
        self._output.put_nowait(b"")


class FakeRuntime:
    """In-memory container runtime with injectable failures."""

    def __init__(self):
        self.specs: list[ContainerSpec] = []
        self.calls: list[tuple[str, str]] = []
        self.running: set[str] = set()
        self.start_error: Exception | None = None
        self.start_gate: asyncio.Event | None = None
        self.start_entered = asyncio.Event()
        self.stop_error: Exception | None = None
        self.stop_delay: float = 0
        self.kill_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.create_error: Exception | None = None
        self.resize_error: Exception | None = None
        self.exec_handler: Callable[[list[str]], ExecResult] = lambda argv: ExecResult(0, "", "")
        self.exec_calls: list[list[str]] = []
        self.log_chunks: list[bytes] = []
        self.logs_closed = False
        self.terminals: list[FakeTerminalStream] = []
        self.resizes: list[tuple[str, int, int]] = []

    async def create(self, spec: ContainerSpec) -> str:
        if self.create_error:
            raise self.create_error
        self.specs.append(spec)
        runtime_id = f"rt-{len(self.specs)}"
        self.calls.append(("create", runtime_id))
        return runtime_id

    async def start(self, runtime_id: str) -> None:
        self.calls.append(("start", runtime_id))
        self.start_entered.set()
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.start_error:
            raise self.start_error
        self.running.add(runtime_id)

    async def stop(self, runtime_id: str, timeout: int = 10) -> None:
        self.calls.append(("stop", runtime_id))
        if self.stop_delay:
            await asyncio.sleep(self.stop_delay)
        if self.stop_error:
            raise self.stop_error
        self.running.discard(runtime_id)

    async def kill(self, runtime_id: str) -> None:
        self.calls.append(("kill", runtime_id))
        if self.kill_error:
            raise self.kill_error
        self.running.discard(runtime_id)

    async def remove(self, runtime_id: str, force: bool = False) -> None:
        self.calls.append(("remove", runtime_id))
        if self.remove_error:
            raise self.remove_error

    async def inspect(self, runtime_id: str) -> RuntimeContainerInfo:
        return RuntimeContainerInfo(
            id=runtime_id, name=runtime_id, image="img", state="running", running=runtime_id in self.running
        )

    async def list_containers(self, all: bool = False) -> list[RuntimeContainerInfo]:
        return [await self.inspect(r) for r in self.running]

    async def exec(self, runtime_id: str, command: list[str], tty: bool = False, workdir: str | None = None):
        self.exec_calls.append(command)
        return self.exec_handler(command)

    async def open_terminal(self, runtime_id: str, command: list[str]) -> FakeTerminalStream:
        stream = FakeTerminalStream(f"exec-{len(self.terminals) + 1}")
        self.terminals.append(stream)
        return stream

    async def resize_terminal(self, exec_id: str, cols: int, rows: int) -> None:
        if self.resize_error:
            raise self.resize_error
        self.resizes.append((exec_id, cols, rows))

    async def logs(self, runtime_id: str, follow: bool = False, tail: int | None = None, timestamps: bool = False):
        try:
            for chunk in self.log_chunks:
                yield chunk
            while follow:
                await asyncio.sleep(3600)
        finally:
            self.logs_closed = True


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def published():
    return []


@pytest.fixture
def hub(published):
    hub = EventHub()

    def collect(event: OrchestratorEvent) -> None:
        published.append(event)

    hub.subscribe(collect)
    return hub


@pytest.fixture
def workspaces(tmp_path):
    return WorkspaceManager(base_dir=str(tmp_path / "workspaces"), max_age_seconds=3600)


@pytest.fixture
def containers(runtime, workspaces, hub):
    return ContainerManager(runtime, workspaces, hub, stop_kill_grace_seconds=0.05)


@pytest.fixture
def executions(hub):
    return ExecutionTracker(hub)


@pytest.fixture
def workers(hub):
    return WorkerPool(hub)
